#!/usr/bin/env python3

import json
import re
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import gitpr.errors
import gitpr.github
import gitpr.github_utils
import gitpr.shell
import gitpr.trailers
from gitpr.types import GitCommitHash, GitHubNumber

DEFAULT_REPO: gitpr.github_utils.GitHubRepoNameWithOwner = {
    "github_url": "github.com",
    "owner": "pytorch",
    "name": "pytorch",
}

# What gh prints when auto-merge is off for a repository
AUTO_MERGE_NOT_ALLOWED = (
    "GraphQL: Pull request Auto merge is not allowed for this repository "
    "(enablePullRequestAutoMerge)"
)


def fake_hash(n: int) -> GitCommitHash:
    return GitCommitHash("{:040x}".format(0xC0FFEE0000 + n))


@dataclass
class PullRequest:
    number: GitHubNumber
    title: str
    head: str
    base: str
    head_oid: GitCommitHash
    body: str = ""
    state: str = "OPEN"
    draft: bool = False
    mergeable: str = "MERGEABLE"
    merge_status: str = "CLEAN"
    labels: List[str] = field(default_factory=list)
    review_decision: str = ""
    reviews: List[str] = field(default_factory=list)

    # gh pr checks --json name,state,bucket,link,required entries.  If
    # check_rounds is non-empty, each call to gh pr checks consumes one
    # round (the last one sticks); otherwise checks is returned.
    checks: List[Dict[str, Any]] = field(default_factory=list)
    check_rounds: List[List[Dict[str, Any]]] = field(default_factory=list)

    # Each mergeability query consumes one (mergeStateStatus, mergeable)
    # pair, the last one sticks; then mergeable/merge_status apply
    mergeability: List[Tuple[str, str]] = field(default_factory=list)

    # Retargeting the PR leaves it conflicting until its branch is pushed
    conflict_after_retarget: bool = False
    # ... and pushing does not help
    conflict_persists: bool = False

    # Number of polls a queued auto-merge takes to complete
    auto_merge_polls: int = 1
    auto_merge: bool = False
    # If set, the queued merge ends with the PR closed instead
    auto_merge_closes: bool = False

    # Set when merged
    merge_subject: Optional[str] = None
    merge_body: Optional[str] = None


def check(
    name: str, bucket: str = "pass", *, required: bool = True, link: str = ""
) -> Dict[str, Any]:
    state = {
        "pass": "SUCCESS",
        "fail": "FAILURE",
        "pending": "IN_PROGRESS",
        "skipping": "SKIPPED",
        "cancel": "CANCELLED",
    }.get(bucket, bucket.upper())
    return {
        "name": name,
        "state": state,
        "bucket": bucket,
        "link": link,
        "required": required,
    }


def _rollup_node(c: Dict[str, Any]) -> Dict[str, Any]:
    bucket = c["bucket"]
    if bucket == "pending":
        return {
            "__typename": "CheckRun",
            "name": c["name"],
            "status": "IN_PROGRESS",
            "conclusion": "",
        }
    conclusion = {"pass": "SUCCESS", "fail": "FAILURE", "skipping": "SKIPPED"}.get(
        bucket, bucket.upper()
    )
    return {
        "__typename": "CheckRun",
        "name": c["name"],
        "status": "COMPLETED",
        "conclusion": conclusion,
    }


class FakeGitHub(object):
    """
    In-memory GitHub: pull requests and remote branches of a single
    repository.  Answers the gh CLI invocations we make, and the REST
    calls of FakeGitHubEndpoint.
    """

    repo: gitpr.github_utils.GitHubRepoNameWithOwner
    prs: Dict[int, PullRequest]
    # Branch name to head commit
    branches: Dict[str, GitCommitHash]
    # Every gh invocation, in order
    calls: List[Tuple[str, ...]]
    reruns: List[str]

    auto_merge_enabled: bool
    graphql_fails: bool
    # PR number to the error gh pr merge prints for it
    merge_errors: Dict[int, str]
    # PR number to the error gh pr edit --base prints for it
    edit_errors: Dict[int, str]

    def __init__(
        self, repo: Optional[gitpr.github_utils.GitHubRepoNameWithOwner] = None
    ) -> None:
        self.repo = repo if repo is not None else DEFAULT_REPO
        self.prs = {}
        self.branches = {}
        self.calls = []
        self.reruns = []
        self.auto_merge_enabled = True
        self.graphql_fails = False
        self.merge_errors = {}
        self.edit_errors = {}
        self._next_number = 500
        self._next_oid = 1000

    def next_oid(self) -> GitCommitHash:
        self._next_oid += 1
        return fake_hash(self._next_oid)

    def url(self, number: int) -> str:
        return gitpr.github_utils.pr_url(self.repo, number)

    def create_pr(
        self,
        *,
        title: str,
        head: str,
        base: str,
        body: str = "",
        draft: bool = False,
        head_oid: Optional[GitCommitHash] = None,
    ) -> PullRequest:
        number = GitHubNumber(self._next_number)
        self._next_number += 1
        if head_oid is None:
            head_oid = self.branches.get(head) or self.next_oid()
        self.branches.setdefault(head, head_oid)
        pr = PullRequest(
            number=number,
            title=title,
            head=head,
            base=base,
            head_oid=head_oid,
            body=body,
            draft=draft,
        )
        self.prs[number] = pr
        return pr

    def pr_for_branch(self, branch: str) -> Optional[PullRequest]:
        for pr in self.prs.values():
            if pr.head == branch and pr.state == "OPEN":
                return pr
        return None

    def push(self, branch: str, oid: GitCommitHash) -> None:
        self.branches[branch] = oid
        pr = self.pr_for_branch(branch)
        if pr is None:
            return
        pr.head_oid = oid
        if pr.mergeable == "CONFLICTING" and not pr.conflict_persists:
            pr.mergeable = "MERGEABLE"
            pr.merge_status = "CLEAN"

    # ------------------------------------------------------------------
    # gh

    def gh(self, *args: str) -> str:
        self.calls.append(tuple(args))
        if args[:2] == ("pr", "list"):
            return self._pr_list(args)
        if args[:2] == ("pr", "view"):
            return self._pr_view(args)
        if args[:2] == ("pr", "checks"):
            return self._pr_checks(args)
        if args[:2] == ("pr", "merge"):
            return self._pr_merge(args)
        if args[:2] == ("pr", "edit"):
            return self._pr_edit(args)
        if args[:2] == ("pr", "ready"):
            pr = self._pr(args[2])
            pr.draft = "--undo" in args
            return ""
        if args[:2] == ("api", "graphql"):
            return self._graphql(args)
        if args[:2] == ("run", "rerun"):
            self.reruns.append(args[2])
            return ""
        if args[:2] == ("auth", "token"):
            return "fake-token"
        raise self._error(args, "unknown command {}".format(" ".join(args)))

    def _error(
        self, args: Sequence[str], stderr: str, returncode: int = 1, stdout: str = ""
    ) -> gitpr.errors.ForgeError:
        return gitpr.errors.ForgeError(("gh",) + tuple(args), returncode, stdout, stderr)

    def _pr(self, number: str) -> PullRequest:
        pr = self.prs.get(int(number))
        if pr is None:
            raise self._error(
                ("pr", "view", number),
                "GraphQL: Could not resolve to a PullRequest with the number of {}.".format(
                    number
                ),
            )
        return pr

    def _opt(self, args: Sequence[str], name: str) -> Optional[str]:
        if name in args:
            return args[list(args).index(name) + 1]
        return None

    def _pr_list(self, args: Sequence[str]) -> str:
        head = self._opt(args, "--head")
        state = (self._opt(args, "--state") or "open").upper()
        r = [
            {"number": pr.number}
            for pr in self.prs.values()
            if pr.head == head and pr.state == state
        ]
        return json.dumps(r)

    def _mergeability(self, pr: PullRequest) -> Tuple[str, str]:
        if pr.mergeability:
            status, mergeable = pr.mergeability[0]
            if len(pr.mergeability) > 1:
                pr.mergeability.pop(0)
            else:
                # The scripted answers are used up; settle on the last one
                pr.mergeability = []
                pr.merge_status, pr.mergeable = status, mergeable
            return status, mergeable
        return pr.merge_status, pr.mergeable

    def _pr_view(self, args: Sequence[str]) -> str:
        pr = self._pr(args[2])
        fields = (self._opt(args, "--json") or "").split(",")
        if pr.auto_merge and "state" in fields:
            pr.auto_merge_polls -= 1
            if pr.auto_merge_polls <= 0:
                pr.auto_merge = False
                pr.state = "CLOSED" if pr.auto_merge_closes else "MERGED"
        status, mergeable = (pr.merge_status, pr.mergeable)
        if "mergeable" in fields or "mergeStateStatus" in fields:
            status, mergeable = self._mergeability(pr)
        data: Dict[str, Any] = {
            "number": pr.number,
            "title": pr.title,
            "url": self.url(pr.number),
            "state": pr.state,
            "headRefName": pr.head,
            "headRefOid": pr.head_oid,
            "baseRefName": pr.base,
            "body": pr.body,
            "mergeable": mergeable,
            "mergeStateStatus": status,
            "reviewDecision": pr.review_decision,
            "reviews": [{"state": s} for s in pr.reviews],
            "statusCheckRollup": [_rollup_node(c) for c in self._checks(pr, False)],
        }
        return json.dumps({k: v for k, v in data.items() if k in fields})

    def _checks(self, pr: PullRequest, consume: bool) -> List[Dict[str, Any]]:
        if not pr.check_rounds:
            return pr.checks
        checks = pr.check_rounds[0]
        if consume and len(pr.check_rounds) > 1:
            pr.check_rounds.pop(0)
        return checks

    def _pr_checks(self, args: Sequence[str]) -> str:
        pr = self._pr(args[2])
        checks = self._checks(pr, True)
        if "--required" in args:
            checks = [c for c in checks if c.get("required")]
        if not checks:
            raise self._error(
                args,
                "no {}checks reported on the '{}' branch".format(
                    "required " if "--required" in args else "", pr.head
                ),
            )
        fields = (self._opt(args, "--json") or "name,bucket").split(",")
        out = json.dumps([{k: c.get(k, "") for k in fields} for c in checks])
        buckets = {c["bucket"] for c in checks}
        # gh pr checks signals failing and pending checks in its exit code
        if "fail" in buckets or "cancel" in buckets:
            raise self._error(args, "", 1, out)
        if "pending" in buckets:
            raise self._error(args, "", 8, out)
        return out

    def _pr_merge(self, args: Sequence[str]) -> str:
        pr = self._pr(args[2])
        if pr.number in self.merge_errors:
            raise self._error(args, self.merge_errors[pr.number])
        if pr.state != "OPEN":
            raise self._error(
                args, "Pull request #{} is not open".format(pr.number)
            )
        head = self._opt(args, "--match-head-commit")
        if head is not None and head != pr.head_oid:
            raise self._error(
                args,
                "GraphQL: Head branch was modified. Review and try the merge again.",
            )
        auto = "--auto" in args
        if auto and not self.auto_merge_enabled:
            raise self._error(args, AUTO_MERGE_NOT_ALLOWED)
        pr.merge_subject = self._opt(args, "--subject")
        pr.merge_body = self._opt(args, "--body")
        if auto:
            pr.auto_merge = True
        else:
            pr.state = "MERGED"
        return ""

    def _pr_edit(self, args: Sequence[str]) -> str:
        pr = self._pr(args[2])
        if pr.number in self.edit_errors:
            raise self._error(args, self.edit_errors[pr.number])
        base = self._opt(args, "--base")
        if base is not None:
            if pr.state == "CLOSED":
                raise self._error(
                    args,
                    "GraphQL: Cannot change the base branch of a closed pull request.",
                )
            pr.base = base
            if pr.conflict_after_retarget:
                pr.mergeable = "CONFLICTING"
                pr.merge_status = "DIRTY"
        labels = self._opt(args, "--add-label")
        if labels is not None:
            for label in labels.split(","):
                if label not in pr.labels:
                    pr.labels.append(label)
        return ""

    def _graphql(self, args: Sequence[str]) -> str:
        if self.graphql_fails:
            raise self._error(args, "HTTP 502: Bad Gateway (https://api.github.com/graphql)")
        query = next(a for a in args if a.startswith("query="))
        repository: Dict[str, Any] = {}
        for m in re.finditer(r"(pr\d+): pullRequest\(number: (\d+)\)", query):
            pr = self.prs.get(int(m.group(2)))
            if pr is None:
                repository[m.group(1)] = None
                continue
            status, mergeable = self._mergeability(pr)
            repository[m.group(1)] = {
                "number": pr.number,
                "state": pr.state,
                "mergeable": mergeable,
                "mergeStateStatus": status,
                "reviewDecision": pr.review_decision,
                "reviews": {"nodes": [{"state": s} for s in pr.reviews]},
                "statusCheckRollup": {
                    "contexts": {
                        "nodes": [_rollup_node(c) for c in self._checks(pr, False)]
                    }
                },
            }
        return json.dumps({"data": {"repository": repository}})

    # ------------------------------------------------------------------
    # REST

    def rest(self, method: str, path: str, **kwargs: Any) -> Any:
        prefix = gitpr.github_utils.repo_path(self.repo) + "/pulls"
        url = urllib.parse.urlparse(path)
        if not url.path.startswith(prefix):
            raise gitpr.github.NotFoundError(path)
        rest = url.path[len(prefix) :].strip("/")
        query = urllib.parse.parse_qs(url.query)

        if method == "get" and not rest:
            head = query.get("head", [""])[0].split(":", 1)[-1]
            state = query.get("state", ["open"])[0].upper()
            return [
                self._rest_pr(pr)
                for pr in self.prs.values()
                if pr.head == head and pr.state == state
            ]
        if method == "post" and not rest:
            if kwargs["head"] not in self.branches:
                raise RuntimeError("no such branch {}".format(kwargs["head"]))
            pr = self.create_pr(
                title=kwargs["title"],
                head=kwargs["head"],
                base=kwargs["base"],
                body=kwargs.get("body", ""),
                draft=kwargs.get("draft", False),
            )
            return self._rest_pr(pr)
        if rest.isdigit():
            pr = self.prs.get(int(rest))
            if pr is None:
                raise gitpr.github.NotFoundError(path)
            if method == "patch":
                for k in ("title", "body", "base"):
                    if k in kwargs:
                        setattr(pr, k, kwargs[k])
            return self._rest_pr(pr)
        raise NotImplementedError("{} {}".format(method, path))

    def _rest_pr(self, pr: PullRequest) -> Dict[str, Any]:
        return {
            "number": pr.number,
            "title": pr.title,
            "body": pr.body,
            "state": pr.state.lower(),
            "draft": pr.draft,
            "html_url": self.url(pr.number),
            "head": {"ref": pr.head, "sha": pr.head_oid},
            "base": {"ref": pr.base},
        }


class FakeGitHubEndpoint(gitpr.github.GitHubEndpoint):
    state: FakeGitHub

    def __init__(self, state: FakeGitHub) -> None:
        self.state = state

    def rest(self, method: str, path: str, **kwargs: Any) -> Any:
        return self.state.rest(method, path, **kwargs)


@dataclass
class LocalCommit:
    hash: GitCommitHash
    title: str
    body: str = ""
    trailers: List[gitpr.trailers.Trailer] = field(default_factory=list)
    author_name: str = "A U Thor"
    author_email: str = "author@example.com"
    empty: bool = False

    @property
    def remote_ref(self) -> str:
        return gitpr.trailers.get_trailer(self.trailers, gitpr.trailers.KEY_REMOTE_REF)

    def header(self, parent: str) -> str:
        msg = gitpr.trailers.format_message(self.title, self.body, self.trailers)
        lines = [
            self.hash,
            "tree {}".format(self.hash[::-1]),
            "parent {}".format(parent),
            "author {} <{}> 1112911993 -0700".format(self.author_name, self.author_email),
            "committer C O Mitter <committer@example.com> 1112911993 -0700",
            "",
        ]
        lines.extend("    " + line for line in msg.split("\n"))
        return "\n".join(lines) + "\n"


class FakeRepo(object):
    """
    In-memory local clone: a trunk and a linear stack of commits on top
    of it.  Rebasing drops the commits whose pull request has been
    merged and gives the rest new hashes.
    """

    github: FakeGitHub
    remote: str
    trunk: str
    trunk_head: GitCommitHash
    commits: List[LocalCommit]
    branch: str
    dirty: bool
    # Branches whose rebase stops with a conflict
    rebase_conflicts: Set[str]
    # Every git invocation, in order
    calls: List[Tuple[str, ...]]

    def __init__(self, github: FakeGitHub, remote: str = "origin", trunk: str = "main"):
        self.github = github
        self.remote = remote
        self.trunk = trunk
        self.trunk_head = github.next_oid()
        self.commits = []
        self.branch = "feature"
        self.dirty = False
        self.rebase_conflicts = set()
        self.calls = []

    def commit(self, title: str, *, remote_ref: str = "", **kwargs: Any) -> LocalCommit:
        trailers: List[gitpr.trailers.Trailer] = []
        if remote_ref:
            trailers = [(gitpr.trailers.KEY_REMOTE_REF, remote_ref)]
        c = LocalCommit(
            hash=self.github.next_oid(), title=title, trailers=trailers, **kwargs
        )
        self.commits.append(c)
        return c

    def _error(self, args: Sequence[str], stderr: str) -> gitpr.errors.VcsError:
        return gitpr.errors.VcsError(("git",) + tuple(args), 1, "", stderr)

    def git(self, *args: str, **kwargs: Any) -> gitpr.shell._SHELL_RET:
        self.calls.append(tuple(args))
        exitcode = kwargs.get("exitcode", False)
        try:
            r = self._git(args)
        except gitpr.errors.VcsError:
            if exitcode:
                return False
            raise
        return True if exitcode else r

    def _git(self, args: Sequence[str]) -> str:
        cmd = args[0]
        if cmd == "status":
            return " M file.txt" if self.dirty else ""
        if cmd == "remote":
            return "git@{}:{}/{}.git".format(
                self.github.repo["github_url"],
                self.github.repo["owner"],
                self.github.repo["name"],
            )
        if cmd == "config":
            return "author@example.com"
        if cmd == "rev-list":
            return self._rev_list(args)
        if cmd == "diff-tree":
            c = self._find(args[-1])
            return "" if c is not None and c.empty else "file.txt"
        if cmd == "checkout":
            self.branch = args[2] if args[1] == "-B" else args[1]
            return ""
        if cmd == "rebase":
            return self._rebase(args)
        if cmd == "push":
            return self._push(args)
        if cmd in ("fetch", "pull"):
            return ""
        raise self._error(args, "fatal: unsupported command {}".format(cmd))

    def _find(self, rev: str) -> Optional[LocalCommit]:
        for c in self.commits:
            if c.hash == rev:
                return c
        return None

    def _rev_list(self, args: Sequence[str]) -> str:
        base, target = args[-1].split("..")
        if target.startswith(self.remote + "/"):
            head = self.github.branches.get(target[len(self.remote) + 1 :])
            if head is None:
                raise self._error(args, "fatal: bad revision '{}'".format(args[-1]))
            return head
        if "--header" not in args:
            return "\n".join(c.hash for c in self.commits)
        parent = self.trunk_head
        headers = []
        for c in self.commits:
            headers.append(c.header(parent))
            parent = c.hash
        return "\0".join(headers)

    def _rebase(self, args: Sequence[str]) -> str:
        if args[1] == "--abort":
            return ""
        if self.branch in self.rebase_conflicts:
            raise self._error(
                args,
                "CONFLICT (content): Merge conflict in file.txt\n"
                "error: could not apply 1234567... {}".format(self.branch),
            )
        if args[1] != self.trunk:
            # Rebasing a branch we do not have locally; nothing to replay
            return ""
        merged = {pr.head for pr in self.github.prs.values() if pr.state == "MERGED"}
        commits = []
        for c in self.commits:
            if c.remote_ref in merged:
                continue
            c.hash = self.github.next_oid()
            commits.append(c)
        self.commits = commits
        return ""

    def _push(self, args: Sequence[str]) -> str:
        if "--delete" in args:
            branch = args[-1]
            if branch not in self.github.branches:
                raise self._error(
                    args,
                    "error: unable to delete '{}': remote ref does not exist".format(
                        branch
                    ),
                )
            del self.github.branches[branch]
            return ""
        refspec = args[-1]
        if ":" in refspec:
            oid, ref = refspec.split(":", 1)
            self.github.push(ref[len("refs/heads/") :], GitCommitHash(oid))
        else:
            self.github.push(refspec, self.github.next_oid())
        return ""


class FakeShell(gitpr.shell.Shell):
    """
    A shell whose gh talks to a FakeGitHub.  If a FakeRepo is given, git
    talks to it as well; otherwise git is run for real.
    """

    github: FakeGitHub
    repo: Optional[FakeRepo]

    def __init__(
        self,
        github: FakeGitHub,
        repo: Optional[FakeRepo] = None,
        cwd: Optional[str] = None,
        testing: bool = True,
    ) -> None:
        super().__init__(cwd=cwd, testing=testing)
        self.github = github
        self.repo = repo

    def git(self, *args: str, **kwargs: Any) -> Any:
        if self.repo is None:
            r = super().git(*args, **kwargs)
            if args[:2] == ("push", "-f") and ":refs/heads/" in args[-1]:
                # The upstream repository stands in for GitHub's copy
                oid, ref = args[-1].split(":refs/heads/", 1)
                self.github.push(ref, GitCommitHash(oid))
            return r
        gitpr.shell.log_command(("git",) + args)
        return self.repo.git(*args, **kwargs)

    def gh(self, *args: str, **kwargs: Any) -> Any:
        gitpr.shell.log_command(("gh",) + args)
        try:
            return self.github.gh(*args)
        except gitpr.errors.ForgeError:
            if kwargs.get("exitcode"):
                return False
            raise


def make_stack(
    titles: Sequence[str], *, user: str = "ezyang"
) -> Tuple[FakeGitHub, FakeRepo]:
    """
    A submitted stack: one local commit per title, each pushed to its
    own branch with an open PR based on the branch below it.
    """
    github = FakeGitHub()
    repo = FakeRepo(github)
    base = repo.trunk
    for i, title in enumerate(titles):
        ref = "{}/{:08x}".format(user, i + 1)
        c = repo.commit(title, remote_ref=ref)
        github.branches[ref] = c.hash
        github.create_pr(title=title, head=ref, base=base, head_oid=c.hash)
        base = ref
    return github, repo
