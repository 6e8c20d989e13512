#!/usr/bin/env python3

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, NamedTuple, Optional, Tuple

import yaml

import gitpr.errors
import gitpr.github_utils
import gitpr.shell

DEFAULT_GH_HOSTS = "~/.config/gh/hosts.yml"


class Config(NamedTuple):
    # Name of the remote we push to and land on
    remote_name: str
    # Trunk branch on that remote; stacks are based on <remote>/<trunk>
    trunk: str
    # Host of the remote, e.g. github.com
    github_url: str
    # Repository owner and name, parsed from the remote URL
    repo_owner: str
    repo_name: str
    # GitHub username; used to namespace branches we create
    github_username: str
    # OAuth token to authenticate to GitHub with
    github_oauth: str
    # git config user.email; commits by anyone else are skipped
    email: str
    # Submit commits by other authors too
    include_other_authors: bool = False
    # Labels added to every PR we submit
    default_tags: Tuple[str, ...] = ()
    # Proxy to use when making connections to GitHub
    proxy: Optional[str] = None

    @property
    def repo(self) -> gitpr.github_utils.GitHubRepoNameWithOwner:
        return {
            "github_url": self.github_url,
            "owner": self.repo_owner,
            "name": self.repo_name,
        }

    @property
    def base(self) -> str:
        return "{}/{}".format(self.remote_name, self.trunk)


class MergeStrategy(enum.Enum):
    # Wait for the checks branch protection marks as required
    REQUIRED_ONLY = "required"
    # Wait for every check
    ALL_CHECKS = "all"
    # Wait for a named set of checks
    CUSTOM = "custom"
    # Wait for required checks, then ask before each merge
    MANUAL = "manual"


@dataclass(frozen=True)
class LandConfig:
    """
    Policy for one run of `git pr land`.  Fixed once the run starts.
    """

    # Seconds to wait for checks, and for a deferred merge to complete
    timeout: float = 600.0
    poll_interval: float = 10.0
    delete_branch: bool = True
    require_checks: bool = True
    # Merge with --auto so GitHub completes the merge once it is allowed
    auto_mode: bool = False
    dry_run: bool = False
    interactive: bool = False
    merge_strategy: MergeStrategy = MergeStrategy.REQUIRED_ONLY
    # Only meaningful with MergeStrategy.CUSTOM
    custom_checks: FrozenSet[str] = field(default_factory=frozenset)
    # Rerun failed workflow runs once before giving up
    auto_retry: bool = False
    # Ask whether to keep waiting instead of failing on a failed check
    pause_on_fail: bool = False
    # Answer yes to every question; for scripts
    assume_yes: bool = False


def load_gh_hosts(path: str) -> Dict[str, Any]:
    """
    Read the hosts file of the gh CLI, which maps a host name to the
    user and token gh is logged in with.
    """
    path = os.path.expanduser(path)
    try:
        with open(path, "r") as f:
            hosts = yaml.safe_load(f)
    except FileNotFoundError:
        raise gitpr.errors.ValidationError(
            """\
failed to load GitHub config at {}

Hint: Install the GitHub CLI and log in with your account
      https://cli.github.com/manual/installation""".format(
                path
            )
        )
    except yaml.YAMLError as e:
        raise gitpr.errors.ValidationError(
            "failed to parse GitHub config at {}: {}".format(path, e)
        )
    return hosts or {}


def read_config(
    *,
    sh: gitpr.shell.Shell,
    remote_name: str = "origin",
    trunk: str = "main",
    gh_hosts: str = DEFAULT_GH_HOSTS,
    include_other_authors: bool = False,
    default_tags: Tuple[str, ...] = (),
) -> Config:
    repo = gitpr.github_utils.get_github_repo_name_with_owner(
        sh=sh, remote_name=remote_name
    )
    github_url = repo["github_url"]

    # Environment variables override the gh config, same as gh itself
    github_oauth = os.getenv("GH_TOKEN") or os.getenv("GITHUB_TOKEN")
    github_username = os.getenv("GITHUB_USER")
    host: Dict[str, Any] = {}
    if not (github_oauth and github_username):
        hosts = load_gh_hosts(gh_hosts)
        host = hosts.get(github_url) or {}
        if not host:
            raise gitpr.errors.ValidationError(
                """\
no GitHub config for host {}

Hint: Run "gh auth login --hostname {}\"""".format(
                    github_url, github_url
                )
            )

    if not github_username:
        github_username = host.get("user", "")
    if not github_oauth:
        github_oauth = host.get("oauth_token", "")
    if not github_oauth:
        # Newer gh keeps the token in the system keyring
        github_oauth = sh.gh("auth", "token", "--hostname", github_url)

    try:
        email = sh.git("config", "--get", "user.email")
    except gitpr.errors.VcsError:
        email = ""
    proxy = os.getenv("HTTPS_PROXY") or os.getenv("https_proxy")

    for name, value in (
        ("user", github_username),
        ("token", github_oauth),
        ("email", email),
    ):
        if not value:
            raise gitpr.errors.ValidationError("missing config {!r}".format(name))

    logging.debug(
        "repository %s/%s on %s, user %s",
        repo["owner"],
        repo["name"],
        github_url,
        github_username,
    )

    return Config(
        remote_name=remote_name,
        trunk=trunk,
        github_url=github_url,
        repo_owner=repo["owner"],
        repo_name=repo["name"],
        github_username=github_username,
        github_oauth=github_oauth,
        email=email,
        include_other_authors=include_other_authors,
        default_tags=default_tags,
        proxy=proxy,
    )
