#!/usr/bin/env python3

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import gitpr.errors
import gitpr.git
import gitpr.shell
import gitpr.trailers
from gitpr.trailers import Trailer
from gitpr.types import GitCommitHash, GitHubNumber, RemoteRef

# We never look further back than this; a stack this tall is almost
# certainly a mistake in the base ref.
MAX_STACK_SIZE = 100


@dataclass
class Commit:
    """
    One entry of a stack: a local commit, and the metadata linking it to
    a remote branch and pull request.
    """

    hash: GitCommitHash
    author_name: str
    author_email: str
    title: str

    # Free-text body of the commit message, without title and trailers
    message: str

    # Lower-cased keys, unique
    trailers: List[Trailer] = field(default_factory=list)

    # 0 if we don't know yet
    pr_number: GitHubNumber = GitHubNumber(0)

    # Do not push or land this commit (empty, or owned by someone else)
    skip: bool = False

    # Tree object of the commit; used to rewrite it
    tree: str = ""

    def __str__(self) -> str:
        remote_ref = self.remote_ref
        if remote_ref:
            return "{} ({}) {}".format(self.short_hash, remote_ref, self.title)
        return "{} {}".format(self.short_hash, self.title)

    @property
    def short_hash(self) -> str:
        return self.hash[:8]

    @property
    def remote_ref(self) -> RemoteRef:
        return RemoteRef(self.get_trailer(gitpr.trailers.KEY_REMOTE_REF))

    def get_trailer(self, key: str) -> str:
        return gitpr.trailers.get_trailer(self.trailers, key)

    def set_trailer(self, key: str, value: str) -> None:
        self.trailers = gitpr.trailers.set_trailer(self.trailers, key, value)

    def tags(self, default_tags: Sequence[str] = ()) -> List[str]:
        tags: List[str] = []
        for tag in list(default_tags) + self.get_trailer(gitpr.trailers.KEY_TAGS).split(
            ","
        ):
            tag = tag.strip()
            if tag and tag not in tags:
                tags.append(tag)
        return tags

    def full_message(self) -> str:
        return gitpr.trailers.format_message(self.title, self.message, self.trailers)


Stack = List[Commit]


def parse_commit(header: gitpr.git.CommitHeader) -> Commit:
    _, body, raw_trailers = gitpr.trailers.parse_message(header.commit_msg)
    commit = Commit(
        hash=header.commit_id,
        author_name=header.author_name,
        author_email=header.author_email,
        title=header.title,
        message=body,
        trailers=gitpr.trailers.parse_trailers(raw_trailers),
        tree=header.tree,
    )
    if not commit.title:
        raise gitpr.errors.ValidationError(
            "commit {} has an empty title".format(commit.short_hash)
        )
    pr = commit.get_trailer(gitpr.trailers.KEY_PR)
    if pr.lstrip("#").isdigit():
        commit.pr_number = GitHubNumber(int(pr.lstrip("#")))
    return commit


def is_empty(sh: gitpr.shell.Shell, commit: Commit) -> bool:
    """
    True if the commit changes no files.
    """
    return not sh.git(
        "diff-tree", "--no-commit-id", "--name-only", "-r", "--root", commit.hash
    )


def stacked_commits(sh: gitpr.shell.Shell, base: str, target: str = "HEAD") -> Stack:
    """
    Return the commits between base and target, oldest first.  Empty
    commits are marked skip.

    Raises:
        VcsError: the history could not be read (e.g., unknown base)
        ValidationError: two commits claim the same remote branch
    """
    raw = sh.git(
        "rev-list",
        "--reverse",
        "--header",
        "--max-count={}".format(MAX_STACK_SIZE),
        "{}..{}".format(base, target),
    )
    stack = [parse_commit(h) for h in gitpr.git.split_header(raw)]
    for commit in stack:
        if is_empty(sh, commit):
            logging.debug("skipping empty commit %s", commit.short_hash)
            commit.skip = True
    validate_remote_refs(stack)
    return stack


def validate_remote_refs(stack: Stack) -> None:
    seen: Dict[str, Commit] = {}
    for commit in stack:
        remote_ref = commit.remote_ref
        if commit.skip or not remote_ref:
            continue
        if remote_ref in seen:
            raise gitpr.errors.ValidationError(
                "duplicated remote ref {!r} found for {} and {}".format(
                    remote_ref, seen[remote_ref].short_hash, commit.short_hash
                )
            )
        seen[remote_ref] = commit


def find_by_remote_ref(stack: Stack, remote_ref: str) -> Optional[Commit]:
    for commit in stack:
        if commit.remote_ref == remote_ref:
            return commit
    return None
