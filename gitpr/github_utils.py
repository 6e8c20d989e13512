#!/usr/bin/env python3

import re

from typing_extensions import TypedDict

import gitpr.errors
import gitpr.shell

GitHubRepoNameWithOwner = TypedDict(
    "GitHubRepoNameWithOwner",
    {
        "github_url": str,
        "owner": str,
        "name": str,
    },
)

RE_SSH_REMOTE = re.compile(
    r"^(?:ssh://)?git@(?P<host>[^:/]+)[:/](?P<owner>[^/]+)/(?P<name>.+?)(?:\.git)?/?$"
)
RE_HTTPS_REMOTE = re.compile(
    r"^https?://(?:[^@/]+@)?(?P<host>[^/]+)/(?P<owner>[^/]+)/(?P<name>.+?)(?:\.git)?/?$"
)


def parse_remote_url(remote_url: str) -> GitHubRepoNameWithOwner:
    """
    >>> parse_remote_url("git@github.com:pytorch/pytorch.git")["name"]
    'pytorch'
    """
    for regex in (RE_SSH_REMOTE, RE_HTTPS_REMOTE):
        m = regex.match(remote_url.strip())
        if m:
            return {
                "github_url": m.group("host"),
                "owner": m.group("owner"),
                "name": m.group("name"),
            }
    raise gitpr.errors.ValidationError(
        "Couldn't determine repo owner and name from url: {}".format(remote_url)
    )


def get_github_repo_name_with_owner(
    *,
    sh: gitpr.shell.Shell,
    remote_name: str,
) -> GitHubRepoNameWithOwner:
    # Grovel in remotes to figure it out
    remote_url = sh.git("remote", "get-url", remote_name)
    return parse_remote_url(remote_url)


def pr_url(repo: GitHubRepoNameWithOwner, number: int) -> str:
    return "https://{}/{}/{}/pull/{}".format(
        repo["github_url"], repo["owner"], repo["name"], number
    )


def repo_path(repo: GitHubRepoNameWithOwner) -> str:
    """
    The REST path prefix of a repository, e.g. repos/pytorch/pytorch
    """
    return "repos/{}/{}".format(repo["owner"], repo["name"])


RE_RUN_ID = re.compile(r"/actions/runs/(?P<run_id>[0-9]+)")


def parse_run_id(check_link: str) -> str:
    """
    Extract the workflow run id from the link of a GitHub Actions check,
    or "" if the check did not come from Actions.

    >>> parse_run_id("https://github.com/o/n/actions/runs/42/job/7")
    '42'
    """
    m = RE_RUN_ID.search(check_link)
    return m.group("run_id") if m else ""
