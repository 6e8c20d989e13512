#!/usr/bin/env python3

import asyncio
import logging
import textwrap
from typing import Any, Callable, Dict, List, Set

import click

import gitpr.body
import gitpr.errors
import gitpr.github
import gitpr.github_utils
import gitpr.shell
import gitpr.stack
import gitpr.trailers
from gitpr.config import Config
from gitpr.stack import Commit, Stack
from gitpr.types import GitCommitHash, GitHubNumber, RemoteRef


def shorten_title(title: str, width: int = 40) -> str:
    return textwrap.shorten(title, width=width, placeholder="...")


class Submitter(object):
    """
    Pushes each commit of the stack to its own branch and keeps one pull
    request per branch, each based on the branch of the commit below it.
    """

    sh: gitpr.shell.Shell
    github: gitpr.github.GitHubEndpoint
    config: Config
    dry_run: bool

    def __init__(
        self,
        *,
        sh: gitpr.shell.Shell,
        github: gitpr.github.GitHubEndpoint,
        config: Config,
        dry_run: bool = False,
    ):
        self.sh = sh
        self.github = github
        self.config = config
        self.dry_run = dry_run

    @property
    def repo_path(self) -> str:
        return gitpr.github_utils.repo_path(self.config.repo)

    def run(self) -> Stack:
        if self.sh.git("status", "--porcelain"):
            raise gitpr.errors.DirtyWorkingTreeError()

        stack = gitpr.stack.stacked_commits(self.sh, self.config.base, "HEAD")
        if not stack:
            raise gitpr.errors.ValidationError("no commits to submit")
        for commit in stack:
            click.echo(str(commit))
        click.echo()

        self.skip_other_authors(stack)
        stack = self.assign_remote_refs(stack)

        submitted = [c for c in stack if not c.skip]
        for i, commit in enumerate(submitted):
            base = submitted[i - 1].remote_ref if i else self.config.trunk
            self.push(commit, base)

        if self.dry_run:
            click.echo("[DRY-RUN] Would update PR descriptions for:")
            for commit in submitted:
                click.echo("  - {}: {}".format(commit.short_hash, commit.title))
            return stack

        drafts = asyncio.run(self.update_descriptions(stack, submitted))
        for commit, draft in zip(submitted, drafts):
            self.update_flags(commit, draft)
        return stack

    def skip_other_authors(self, stack: Stack) -> None:
        if self.config.include_other_authors:
            return
        for commit in stack:
            if commit.skip or commit.author_email == self.config.email:
                continue
            commit.skip = True
            click.echo(
                'skip "{}" ({})'.format(
                    shorten_title(commit.title), commit.author_email or "@unknown"
                )
            )

    def assign_remote_refs(self, stack: Stack) -> Stack:
        """
        Give every commit that has never been pushed a branch name, and
        record it in the commit message.
        """
        updated: Set[str] = set()
        for commit in stack:
            if commit.skip or commit.remote_ref:
                continue
            remote_ref = RemoteRef(
                "{}/{}".format(self.config.github_username, commit.short_hash)
            )
            logging.debug("creating remote ref %s for %s", remote_ref, commit.title)
            commit.set_trailer(gitpr.trailers.KEY_REMOTE_REF, remote_ref)
            updated.add(commit.hash)
        if not updated:
            return stack
        if self.dry_run:
            click.echo("[DRY-RUN] Would rewrite commits:")
            for commit in stack:
                if commit.hash in updated:
                    click.echo(
                        "  - {}: add Remote-Ref: {}".format(
                            commit.short_hash, commit.remote_ref
                        )
                    )
            return stack
        return self.rewrite(stack, updated)

    def rewrite(self, stack: Stack, updated: Set[str]) -> Stack:
        """
        Recreate the stack from the first commit whose message changed,
        then move the current branch to the new tip.  The working tree
        is untouched.
        """
        first = next(i for i, c in enumerate(stack) if c.hash in updated)
        head = GitCommitHash(self.sh.git("rev-parse", stack[first].hash + "^"))
        old_head = stack[-1].hash
        for commit in stack[first:]:
            # Preserve authorship of original commit
            env = {
                "GIT_AUTHOR_NAME": commit.author_name,
                "GIT_AUTHOR_EMAIL": commit.author_email,
            }
            head = GitCommitHash(
                self.sh.git(
                    "commit-tree",
                    "-p",
                    head,
                    commit.tree,
                    input=commit.full_message(),
                    env=env,
                )
            )
            commit.hash = head
        self.sh.git("reset", "--soft", head)
        logging.info(
            """
Commit messages updated with Remote-Ref trailers.

To undo this operation, run:

    git reset --soft %s
""",
            old_head,
        )
        return stack

    def push(self, commit: Commit, base: str) -> None:
        refspec = "{}:refs/heads/{}".format(commit.hash, commit.remote_ref)
        msg = "push -f {} {}".format(self.config.remote_name, refspec)
        if self.dry_run:
            click.echo("[DRY-RUN] " + msg)
            return
        click.echo(msg)
        self.sh.git("push", "-f", self.config.remote_name, refspec)
        commit.pr_number = self.find_pr(commit)
        if not commit.pr_number:
            commit.pr_number = self.create_pr(commit, base)

    def find_pr(self, commit: Commit) -> GitHubNumber:
        r = self.github.get(
            "{}/pulls?state=open&head={}:{}".format(
                self.repo_path, self.config.repo_owner, commit.remote_ref
            )
        )
        if not r:
            return GitHubNumber(0)
        return GitHubNumber(r[0]["number"])

    def create_pr(self, commit: Commit, base: str) -> GitHubNumber:
        r = self.github.post(
            "{}/pulls".format(self.repo_path),
            title=commit.title,
            head=commit.remote_ref,
            base=base,
            body="",
            maintainer_can_modify=True,
            draft=gitpr.body.is_draft(commit.title),
        )
        number = GitHubNumber(r["number"])
        click.echo(
            "create pull request {}".format(
                gitpr.github_utils.pr_url(self.config.repo, number)
            )
        )
        return number

    async def update_description(
        self, commit: Commit, base: str, stack: Stack
    ) -> bool:
        path = "{}/pulls/{}".format(self.repo_path, commit.pr_number)
        pr: Dict[str, Any] = await self.github.arest("get", path)
        body = gitpr.body.generate_body(
            commit, stack, self.config.repo, existing_body=pr.get("body") or ""
        )
        await self.github.arest(
            "patch", path, title=commit.title, body=body, base=base
        )
        click.echo(
            "update pull request {}".format(
                gitpr.github_utils.pr_url(self.config.repo, commit.pr_number)
            )
        )
        return bool(pr.get("draft"))

    async def update_descriptions(
        self, stack: Stack, submitted: List[Commit]
    ) -> List[bool]:
        """
        Rewrite the title, body and base of every PR, concurrently.

        Returns: whether each PR is currently a draft
        """
        return list(
            await asyncio.gather(
                *(
                    self.update_description(
                        commit,
                        submitted[i - 1].remote_ref if i else self.config.trunk,
                        stack,
                    )
                    for i, commit in enumerate(submitted)
                )
            )
        )

    def update_flags(self, commit: Commit, is_draft: bool) -> None:
        number = str(commit.pr_number)
        want_draft = gitpr.body.is_draft(commit.title)
        if want_draft and not is_draft:
            self.sh.gh("pr", "ready", number, "--undo")
        elif is_draft and not want_draft:
            self.sh.gh("pr", "ready", number)
        tags = commit.tags(self.config.default_tags)
        if tags:
            self.sh.gh("pr", "edit", number, "--add-label", ",".join(tags))


def main(
    *,
    sh: gitpr.shell.Shell,
    github: gitpr.github.GitHubEndpoint,
    config: Config,
    dry_run: bool = False,
) -> Stack:
    """
    Submit the stack between <remote>/<trunk> and HEAD: one branch and
    one pull request per commit.
    """
    return Submitter(sh=sh, github=github, config=config, dry_run=dry_run).run()


def submit_callback(
    *,
    sh: gitpr.shell.Shell,
    github: gitpr.github.GitHubEndpoint,
    config: Config,
    dry_run: bool = False,
) -> Callable[[], None]:
    def run() -> None:
        main(sh=sh, github=github, config=config, dry_run=dry_run)

    return run
