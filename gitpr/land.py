#!/usr/bin/env python3

import contextlib
import json
import logging
from typing import Any, Callable, Iterator, List, Optional, Set

import click

import gitpr.body
import gitpr.errors
import gitpr.github_utils
import gitpr.poll
import gitpr.shell
import gitpr.stack
import gitpr.status
from gitpr.config import Config, LandConfig, MergeStrategy
from gitpr.stack import Commit, Stack
from gitpr.status import LandingPlan, PRInfo
from gitpr.types import GitCommitHash, GitHubNumber

# Retries when GitHub has not computed mergeability yet
UNKNOWN_RETRIES = 3
UNKNOWN_RETRY_DELAY = 2.0

# GitHub recomputes mergeability asynchronously after a base change or a
# push; give it a moment before asking
BASE_UPDATE_SETTLE = 2.0
REBASE_SETTLE = 5.0

# Merge states that GitHub will only merge through the auto-merge queue
DEFERRED_MERGE_STATES = ("BLOCKED", "UNSTABLE", "BEHIND")

# gh reports these when auto-merge is disabled for the repository
AUTO_MERGE_DISABLED = (
    "enablePullRequestAutoMerge",
    "auto-merge is not allowed",
    "auto merge is not allowed",
)

# git reports these when the branch we delete is already gone
BRANCH_GONE = ("remote ref does not exist", "unable to delete")


def echo(msg: str) -> None:
    click.echo(msg)


@contextlib.contextmanager
def step(doing: str, done: str) -> Iterator[None]:
    echo("  ⠼ {}...".format(doing))
    try:
        yield
    except Exception:
        echo("  ❌ {} failed".format(doing))
        raise
    echo("  ✓ {}".format(done))


def default_confirm(question: str) -> bool:
    return click.confirm(question, default=False)


class Lander(object):
    """
    Lands a stack of pull requests, bottom first.

    For each PR we check that GitHub considers it mergeable, wait for its
    checks, squash-merge it, point the next PR at trunk, rebase the rest
    of the stack if that left a conflict, delete the merged branch, and
    bring the local checkout up to date.  Only one PR is ever in flight:
    each step relies on the previous one having happened on GitHub.
    """

    sh: gitpr.shell.Shell
    config: Config
    land_config: LandConfig
    clock: gitpr.poll.Clock

    # Things that went wrong but did not stop the run; repeated at the end
    warnings: List[str]

    def __init__(
        self,
        *,
        sh: gitpr.shell.Shell,
        config: Config,
        land_config: LandConfig,
        clock: Optional[gitpr.poll.Clock] = None,
        confirm: Callable[[str], bool] = default_confirm,
        submit: Optional[Callable[[], None]] = None,
    ):
        self.sh = sh
        self.config = config
        self.land_config = land_config
        self.clock = clock if clock is not None else gitpr.poll.Clock()
        self._confirm = confirm
        self._submit = submit
        self.warnings = []

    @property
    def trunk(self) -> str:
        return self.config.trunk

    @property
    def remote(self) -> str:
        return self.config.remote_name

    def confirm(self, question: str) -> bool:
        if self.land_config.assume_yes:
            echo("{} [y/N]: y".format(question))
            return True
        return self._confirm(question)

    def warn(self, msg: str) -> None:
        echo("  ⚠ {}".format(msg))
        self.warnings.append(msg)

    def dry_run(self, msg: str) -> None:
        echo("  [DRY-RUN] Would {}".format(msg))

    def gh_json(self, *args: str) -> Any:
        return json.loads(self.sh.gh(*args))

    # ------------------------------------------------------------------
    # Planning

    def preflight(self) -> Optional[Stack]:
        """
        Make sure we can land: the working tree is clean and the stack
        has been submitted.  Returns None when there is nothing to do in
        this run.
        """
        if self.sh.git("status", "--porcelain"):
            raise gitpr.errors.DirtyWorkingTreeError()

        stack = self.read_stack()
        if not stack:
            echo("no commits to land")
            return None

        lead = stack[0]
        if not lead.pr_number:
            lead.pr_number = self.find_pr_number(lead)
        if not lead.pr_number:
            echo("⚠️  No PR found for first commit {}".format(lead.short_hash))
            echo("   This appears to be a new stack that hasn't been pushed yet.")
            echo("\n   Local commits to push:")
            for i, commit in enumerate(stack):
                echo("   {}. {} {}".format(i + 1, commit.short_hash, commit.title))
            if not self.confirm("Would you like to push these commits and create PRs?"):
                raise gitpr.errors.CancelledError("landing cancelled by user")
            self.run_submit()
            echo(
                "✅ Commits pushed and PRs created. "
                "Please run 'git pr land' again to continue."
            )
            return None

        if not self.lead_in_sync(lead):
            echo("\n  ⚠ Commit mismatch detected for PR #{}".format(lead.pr_number))
            echo("    This PR needs to be synced with your local changes.")
            if not self.confirm("Would you like to push your local stack first?"):
                raise gitpr.errors.CancelledError("landing cancelled by user")
            self.run_submit()
            stack = self.read_stack()
        return stack

    def run_submit(self) -> None:
        if self._submit is None:
            raise gitpr.errors.ValidationError(
                "the stack has to be submitted first; run 'git pr'"
            )
        echo("\n📤 Pushing commits and creating PRs...")
        self._submit()

    def read_stack(self) -> Stack:
        return [
            c
            for c in gitpr.stack.stacked_commits(self.sh, self.config.base, "HEAD")
            if not c.skip
        ]

    def find_pr_number(self, commit: Commit) -> GitHubNumber:
        """
        The open PR whose head is the commit's remote branch, or 0.
        """
        if commit.pr_number:
            return commit.pr_number
        if not commit.remote_ref:
            return GitHubNumber(0)
        prs = self.gh_json(
            "pr",
            "list",
            "--head",
            commit.remote_ref,
            "--state",
            "open",
            "--json",
            "number",
        )
        if not prs:
            return GitHubNumber(0)
        return GitHubNumber(prs[0]["number"])

    def lead_in_sync(self, lead: Commit) -> bool:
        """
        Whether the first commit on the lead PR's branch is our local lead
        commit.  If we cannot tell, we assume it is.
        """
        remote_branch = "{}/{}".format(self.remote, lead.remote_ref)
        try:
            self.sh.git("fetch", self.remote, lead.remote_ref)
            remote_commits = self.sh.git(
                "rev-list", "--reverse", "{}..{}".format(self.config.base, remote_branch)
            ).split()
        except gitpr.errors.VcsError as e:
            logging.debug("could not compare with %s: %s", remote_branch, e)
            return True
        if not remote_commits:
            return True
        remote_sha = remote_commits[0]
        logging.debug(
            "comparing first commit - local: %s, remote: %s", lead.hash[:8], remote_sha[:8]
        )
        return remote_sha.startswith(lead.hash[:8]) or lead.hash.startswith(
            remote_sha[:8]
        )

    def build_plan(self, stack: Stack) -> LandingPlan:
        plan: LandingPlan = []
        for commit in stack:
            number = self.find_pr_number(commit)
            if not number:
                raise gitpr.errors.ValidationError(
                    "no PR found for commit {}".format(commit.short_hash)
                )
            commit.pr_number = number
            data = self.gh_json(
                "pr",
                "view",
                str(number),
                "--json",
                "number,title,url,state,headRefName,headRefOid,baseRefName",
            )
            logging.debug("found PR #%d for commit %s", number, commit.short_hash)
            plan.append(
                PRInfo(
                    number=number,
                    title=commit.title,
                    url=data.get("url")
                    or gitpr.github_utils.pr_url(self.config.repo, number),
                    head_sha=commit.hash,
                    head_branch=data.get("headRefName") or commit.remote_ref,
                    base_branch=data.get("baseRefName") or self.trunk,
                    commit=commit,
                    state=data.get("state") or "OPEN",
                )
            )
        return plan

    # ------------------------------------------------------------------
    # Landing

    def land(self, plan: LandingPlan) -> int:
        """
        Land every PR of the plan that is not merged yet, in order.

        Returns: the number of PRs landed (or that would have been, in a
        dry run)
        """
        landed = 0
        for i, pr in enumerate(plan):
            prefix = "\n[{}/{}]".format(i + 1, len(plan))
            if pr.state == "MERGED":
                echo("{} PR #{} already merged".format(prefix, pr.number))
                continue
            echo("{} Landing PR #{}: {}".format(prefix, pr.number, pr.title))
            echo("  URL: {}".format(pr.url))
            self.land_one(plan, i)
            landed += 1

        if self.land_config.dry_run:
            echo("\n[DRY-RUN] Would land {} PRs".format(landed))
        else:
            echo("\n✓ Successfully landed {} PRs".format(landed))
        if self.warnings:
            echo("\n⚠ Finished with warnings; the stack may need attention:")
            for w in self.warnings:
                echo("  - {}".format(w))
        return landed

    def land_one(self, plan: LandingPlan, i: int) -> None:
        pr = plan[i]
        use_auto = self.check_mergeability(pr)

        if self.land_config.require_checks:
            if self.land_config.dry_run:
                self.report_checks(pr)
            else:
                with step("Waiting for checks", "All checks passed"):
                    self.wait_for_checks(pr)

        self.detect_drift(pr)

        if self.land_config.dry_run:
            self.dry_run(
                "squash-merge PR #{}{}".format(pr.number, " with --auto" if use_auto else "")
            )
            return

        if self.land_config.merge_strategy is MergeStrategy.MANUAL:
            if not self.confirm("Merge PR #{} ({})?".format(pr.number, pr.title)):
                raise gitpr.errors.CancelledError(
                    "landing cancelled before PR #{}".format(pr.number)
                )

        with step("Merging PR", "Merged to {}".format(self.trunk)):
            deferred = self.merge(pr, use_auto)
            if deferred:
                echo("  ✓ Merge queued with --auto")
                self.wait_for_merge(pr)
        pr.state = "MERGED"

        if i + 1 < len(plan):
            self.update_next_base(plan, i)

        if self.land_config.delete_branch and pr.head_branch:
            self.delete_branch(pr.head_branch)

        self.sync_local(plan[i + 1 :])
        echo("  ✓ PR #{} successfully landed".format(pr.number))

    def check_mergeability(self, pr: PRInfo) -> bool:
        """
        Returns: whether the merge has to go through the auto-merge queue
        """

        def on_retry(_: gitpr.status.Mergeability) -> None:
            echo("  ⠼ Merge status unknown, retrying...")

        with step("Checking merge status", "Merge status checked"):
            m = gitpr.poll.retry(
                lambda: gitpr.status.check_mergeability(self.sh, pr.number),
                attempts=UNKNOWN_RETRIES,
                delay=UNKNOWN_RETRY_DELAY,
                clock=self.clock,
                until=lambda m: m.status != "UNKNOWN",
                on_retry=on_retry,
            )
            pr.mergeable = m.mergeable
            pr.merge_status = m.status
            if m.conflicting:
                raise gitpr.errors.ConflictError(
                    "PR #{} has merge conflicts that must be resolved".format(pr.number),
                    urls=[pr.url],
                )

        if m.status in DEFERRED_MERGE_STATES:
            echo("  ⚠ PR {}".format(m.reason))
            echo("  ⚠ Check status at: {}".format(pr.url))
            echo("  ⚠ Will attempt merge with --auto")
            return True
        if m.status == "UNKNOWN":
            echo("  ⚠ Merge status still unknown; trying anyway")
        else:
            echo("  ✓ PR is mergeable")
        return self.land_config.auto_mode

    def wanted_checks(self, pr: PRInfo) -> List[gitpr.status.CheckResult]:
        return gitpr.status.fetch_checks(
            self.sh,
            pr.number,
            self.land_config.merge_strategy,
            self.land_config.custom_checks,
        )

    def report_checks(self, pr: PRInfo) -> None:
        checks = self.wanted_checks(pr)
        buckets = [c.bucket for c in checks]
        echo(
            "  Checks: {} passing, {} pending, {} failing".format(
                buckets.count("pass"), buckets.count("pending"), buckets.count("fail")
            )
        )

    def wait_for_checks(self, pr: PRInfo) -> None:
        """
        Block until every check we care about has passed.

        Raises:
            ChecksFailedError: a check failed (and was not retried)
            TimeoutError: checks were still pending at the deadline
        """
        rerun: Set[str] = set()

        def probe() -> Optional[bool]:
            checks = self.wanted_checks(pr)
            failed = [c for c in checks if c.bucket == "fail"]
            if failed:
                if self.land_config.auto_retry and self.rerun_failed(failed, rerun):
                    return None
                raise gitpr.errors.ChecksFailedError(pr.number, [c.name for c in failed])
            pending = [c.name for c in checks if c.bucket == "pending"]
            if pending:
                echo(
                    "    Pending checks ({}): {}".format(len(pending), ", ".join(pending))
                )
                return None
            return True

        while True:
            try:
                gitpr.poll.poll(
                    probe,
                    interval=self.land_config.poll_interval,
                    timeout=self.land_config.timeout,
                    clock=self.clock,
                    describe="checks on PR #{}".format(pr.number),
                )
                return
            except gitpr.errors.ChecksFailedError as e:
                if self.land_config.pause_on_fail and self.confirm(
                    "{}. Rerun them on GitHub and keep waiting?".format(e)
                ):
                    continue
                raise

    def rerun_failed(
        self, failed: List[gitpr.status.CheckResult], rerun: Set[str]
    ) -> bool:
        """
        Rerun the failed jobs of each workflow run that has not been rerun
        yet.  Returns False if there was nothing left to rerun.
        """
        run_ids = {gitpr.github_utils.parse_run_id(c.link) for c in failed}
        run_ids -= rerun
        run_ids.discard("")
        for run_id in sorted(run_ids):
            echo("    Rerunning failed jobs of workflow run {}".format(run_id))
            self.sh.gh("run", "rerun", run_id, "--failed")
            rerun.add(run_id)
        return bool(run_ids)

    def detect_drift(self, pr: PRInfo) -> None:
        data = self.gh_json("pr", "view", str(pr.number), "--json", "headRefOid")
        current = data.get("headRefOid") or ""
        if current and current != pr.head_sha:
            echo(
                "  ⚠ CI added commits, head SHA changed: {} -> {}".format(
                    pr.head_sha[:8], current[:8]
                )
            )
            pr.head_sha = GitCommitHash(current)

    def merge_args(self, pr: PRInfo, body: str, auto: bool) -> List[str]:
        args = [
            "pr",
            "merge",
            str(pr.number),
            "--squash",
            "--subject",
            pr.title,
            "--body",
            body,
        ]
        if pr.head_sha:
            args.extend(["--match-head-commit", pr.head_sha])
        if auto:
            args.append("--auto")
        return args

    def merge(self, pr: PRInfo, auto: bool) -> bool:
        """
        Squash-merge the PR.  Returns whether the merge was only queued
        (auto-merge), in which case the caller has to wait for it.

        Raises:
            MergeError: GitHub refused to merge
        """
        data = self.gh_json("pr", "view", str(pr.number), "--json", "body")
        raw_body = data.get("body") or ""
        body = gitpr.body.cleanup_body(raw_body)
        logging.debug(
            "cleaned PR body (removed footer/template): %d -> %d chars",
            len(raw_body),
            len(body),
        )
        try:
            self.sh.gh(*self.merge_args(pr, body, auto))
            return auto
        except gitpr.errors.ForgeError as e:
            if not (auto and any(m in e.output for m in AUTO_MERGE_DISABLED)):
                raise gitpr.errors.MergeError(
                    "failed to merge PR #{}: {}".format(pr.number, e.output)
                ) from e
            logging.debug("auto-merge not enabled for repo, falling back to merge")
        echo("  ⚠ Auto-merge is not enabled for this repository; merging directly")
        try:
            self.sh.gh(*self.merge_args(pr, body, False))
        except gitpr.errors.ForgeError as e:
            raise gitpr.errors.MergeError(
                "failed to merge PR #{}: {}".format(pr.number, e.output)
            ) from e
        return False

    def wait_for_merge(self, pr: PRInfo) -> None:
        def probe() -> Optional[bool]:
            data = self.gh_json(
                "pr", "view", str(pr.number), "--json", "state,mergeStateStatus"
            )
            state = data.get("state")
            if state == "MERGED":
                return True
            if state == "CLOSED":
                raise gitpr.errors.MergeError(
                    "PR #{} was closed without merging\n  Check PR at: {}".format(
                        pr.number, pr.url
                    )
                )
            echo(
                "    Waiting for merge... Status: {}, Merge: {}".format(
                    state, data.get("mergeStateStatus")
                )
            )
            return None

        gitpr.poll.poll(
            probe,
            interval=self.land_config.poll_interval,
            timeout=self.land_config.timeout,
            clock=self.clock,
            describe="PR #{} to merge\n  Check PR at: {}".format(pr.number, pr.url),
        )

    def update_next_base(self, plan: LandingPlan, i: int) -> None:
        next_pr = plan[i + 1]
        echo("  ⠼ Updating next PR #{} base to {}...".format(next_pr.number, self.trunk))
        try:
            self.sh.gh("pr", "edit", str(next_pr.number), "--base", self.trunk)
        except gitpr.errors.ForgeError as e:
            if "closed" in e.output.lower():
                echo("  ❌ PR #{} was closed, cannot update base".format(next_pr.number))
                raise gitpr.errors.ClosedDependentError(
                    "PR #{} was closed, cannot update its base\n  Check PR at: {}".format(
                        next_pr.number, next_pr.url
                    )
                ) from e
            self.warn(
                "Could not update PR #{} base: {}".format(next_pr.number, e.output)
            )
            return
        next_pr.base_branch = self.trunk
        echo("  ✓ Updated PR #{} base".format(next_pr.number))

        self.clock.sleep(BASE_UPDATE_SETTLE)
        try:
            conflicting = gitpr.status.check_conflicts(self.sh, next_pr.number)
        except gitpr.errors.ForgeError as e:
            self.warn(
                "Could not check conflicts for PR #{}: {}".format(next_pr.number, e.output)
            )
            return
        if not conflicting:
            return

        echo("  ⚠ PR #{} has conflicts after base update".format(next_pr.number))
        self.rebase_remaining(plan[i + 1 :])
        if gitpr.status.check_conflicts(self.sh, next_pr.number):
            raise gitpr.errors.ConflictError(
                "PR #{} still has conflicts after rebase".format(next_pr.number),
                urls=[next_pr.url],
            )
        echo("  ✓ Conflicts resolved for remaining PRs")

    def recovery_commands(self, pr: PRInfo) -> List[str]:
        return [
            "git checkout {}".format(pr.head_branch),
            "git rebase {}".format(self.config.base),
            "# resolve conflicts",
            "git push -f {} {}".format(self.remote, pr.head_branch),
        ]

    def rebase_remaining(self, remaining: LandingPlan) -> None:
        """
        Rebase the branch of every remaining PR onto the new trunk and
        force-push it.  We rebase all of them, not just the one that
        conflicts: they all contain the commit that was just merged.

        Raises:
            ConflictError: a rebase needs a human; nothing after it was
                touched
        """
        echo("\n  🔄 Rebasing remaining PRs onto {}...".format(self.trunk))
        self.sh.git("fetch", self.remote)
        for n, pr in enumerate(remaining):
            remote_branch = "{}/{}".format(self.remote, pr.head_branch)
            self.sh.git("checkout", "-B", pr.head_branch, remote_branch)
            try:
                self.sh.git("rebase", self.config.base)
            except gitpr.errors.VcsError as e:
                self.sh.git("rebase", "--abort", exitcode=True)
                if "conflict" not in e.output.lower():
                    raise
                echo("    ❌ Rebase conflicts for PR #{}".format(pr.number))
                raise gitpr.errors.ConflictError(
                    "rebase conflicts detected for PR #{}, manual intervention required".format(
                        pr.number
                    ),
                    urls=["PR #{}: {}".format(p.number, p.url) for p in remaining],
                    commands=self.recovery_commands(pr),
                ) from e
            self.sh.git("push", "-f", self.remote, pr.head_branch)
            echo(
                "    ✓ Rebased PR #{} ({}/{})".format(pr.number, n + 1, len(remaining))
            )
        echo("    ✓ Successfully rebased {} PRs".format(len(remaining)))
        echo("    ⠼ Waiting for GitHub to process updates...")
        self.clock.sleep(REBASE_SETTLE)

    def delete_branch(self, branch: str) -> None:
        echo("  ⠼ Deleting branch {}...".format(branch))
        if delete_remote_branch(self.sh, self.remote, branch):
            echo("  ✓ Deleted branch {}".format(branch))
        else:
            self.warn("Could not delete branch {}".format(branch))

    def sync_local(self, remaining: LandingPlan) -> None:
        """
        Bring local trunk up to date and, if PRs remain, replay the rest
        of the local stack on top of it, push every remaining branch, and
        leave the newest one checked out.  Needed even without conflicts:
        retargeting a PR on GitHub does not move our local history.
        """
        with step(
            "Pulling latest {}".format(self.trunk),
            "Pulled latest {}".format(self.trunk),
        ):
            self.sh.git("fetch", self.remote)
            self.sh.git("checkout", self.trunk)
            self.sh.git("pull", "--ff-only", self.remote, self.trunk)

        if not remaining:
            return

        newest = remaining[-1]
        tip = newest.commit.hash if newest.commit is not None else newest.head_sha
        echo("  ⠼ Rebasing remaining commits onto {}...".format(self.trunk))
        self.sh.git("checkout", "-B", newest.head_branch, tip)
        try:
            self.sh.git("rebase", self.trunk)
        except gitpr.errors.VcsError as e:
            self.sh.git("rebase", "--abort", exitcode=True)
            raise gitpr.errors.ConflictError(
                "failed to rebase remaining commits onto {}; "
                "please resolve conflicts manually and run 'git pr land' again".format(
                    self.trunk
                ),
                commands=[
                    "git checkout {}".format(newest.head_branch),
                    "git rebase {}".format(self.trunk),
                    "# resolve conflicts",
                    "git pr land",
                ],
            ) from e
        echo("  ✓ Rebased remaining commits onto {}".format(self.trunk))

        stack = self.read_stack()
        with step("Pushing rebased commits", "Pushed rebased commits"):
            for pr in remaining:
                commit = gitpr.stack.find_by_remote_ref(stack, pr.head_branch)
                if commit is None:
                    self.warn(
                        "No local commit found for PR #{} ({})".format(
                            pr.number, pr.head_branch
                        )
                    )
                    continue
                self.sh.git(
                    "push",
                    "--force-with-lease",
                    self.remote,
                    "{}:refs/heads/{}".format(commit.hash, pr.head_branch),
                )
                pr.commit = commit
                pr.head_sha = commit.hash
        echo("  ✓ Checked out {}".format(newest.head_branch))


def delete_remote_branch(sh: gitpr.shell.Shell, remote: str, branch: str) -> bool:
    """
    Delete a branch on the remote.  A branch that is already gone counts
    as deleted.  Returns False if the branch could not be deleted.
    """
    try:
        sh.git("push", remote, "--delete", branch)
    except gitpr.errors.VcsError as e:
        if any(m in e.output for m in BRANCH_GONE):
            logging.debug("branch %s was already deleted", branch)
            return True
        logging.warning("could not delete branch %s: %s", branch, e.output)
        return False
    return True


def plan_landing(lander: Lander) -> Optional[LandingPlan]:
    stack = lander.preflight()
    if not stack:
        return None
    return lander.build_plan(stack)


def main(
    *,
    sh: gitpr.shell.Shell,
    config: Config,
    land_config: LandConfig,
    clock: Optional[gitpr.poll.Clock] = None,
    confirm: Callable[[str], bool] = default_confirm,
    submit: Optional[Callable[[], None]] = None,
) -> int:
    """
    Land the stack between <remote>/<trunk> and HEAD.  Returns the
    number of PRs landed.
    """
    lander = Lander(
        sh=sh,
        config=config,
        land_config=land_config,
        clock=clock,
        confirm=confirm,
        submit=submit,
    )
    plan = plan_landing(lander)
    if plan is None:
        return 0
    return lander.land(plan)
