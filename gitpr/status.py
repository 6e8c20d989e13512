#!/usr/bin/env python3

import datetime
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Union

from typing_extensions import Literal

import gitpr.errors
import gitpr.github_utils
import gitpr.shell
from gitpr.config import MergeStrategy
from gitpr.stack import Commit
from gitpr.types import GitCommitHash, GitHubNumber

Bucket = Literal["pass", "fail", "pending"]

PASSING = "PASSING"
PENDING = "PENDING"
FAILING = "FAILING"
NONE = "NONE"


@dataclass(frozen=True)
class CheckRun:
    """A GitHub Checks API run, e.g. a GitHub Actions job."""

    name: str
    status: str
    conclusion: str


@dataclass(frozen=True)
class StatusContext:
    """A legacy commit status, as posted by older CI integrations."""

    context: str
    state: str


Check = Union[CheckRun, StatusContext]

FAILED_CONCLUSIONS = {"FAILURE", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED"}


def parse_check(node: Dict[str, Any]) -> Optional[Check]:
    typename = node.get("__typename")
    if typename == "CheckRun":
        return CheckRun(
            name=node.get("name") or "",
            status=(node.get("status") or "").upper(),
            conclusion=(node.get("conclusion") or "").upper(),
        )
    if typename == "StatusContext":
        return StatusContext(
            context=node.get("context") or "",
            state=(node.get("state") or "").upper(),
        )
    logging.debug("ignoring check of unknown type %r", typename)
    return None


def check_name(check: Check) -> str:
    if isinstance(check, CheckRun):
        return check.name
    return check.context


def classify_check(check: Check) -> Bucket:
    if isinstance(check, CheckRun):
        if check.conclusion == "SUCCESS":
            return "pass"
        if check.conclusion in FAILED_CONCLUSIONS:
            return "fail"
        if check.status == "COMPLETED":
            return "pass"
        return "pending"
    if check.state == "SUCCESS":
        return "pass"
    if check.state in ("FAILURE", "ERROR"):
        return "fail"
    return "pending"


def aggregate_checks(buckets: Iterable[str]) -> str:
    """
    >>> aggregate_checks(["pass", "pending"])
    'PENDING'
    """
    seen = set(buckets)
    if "fail" in seen:
        return FAILING
    if "pending" in seen:
        return PENDING
    if "pass" in seen:
        return PASSING
    return NONE


def review_summary(reviews: Sequence[str], decision: str) -> str:
    """
    One line about reviews, given the states of the most recent reviews
    and the overall review decision.
    """
    changes_requested = reviews.count("CHANGES_REQUESTED")
    approved = reviews.count("APPROVED")
    commented = reviews.count("COMMENTED")
    if changes_requested:
        return "{} changes requested".format(changes_requested)
    if approved:
        return "{} approved".format(approved)
    if decision == "REVIEW_REQUIRED":
        return "Review required"
    if commented:
        return "{} comments".format(commented)
    return ""


class CheckResult(NamedTuple):
    name: str
    # pass, fail, pending, skipping or cancel
    bucket: str
    # Details URL; for GitHub Actions it contains the run id
    link: str = ""


@dataclass
class PRInfo:
    """
    Working record for one pull request of a landing plan.
    """

    number: GitHubNumber
    title: str
    url: str
    # The head commit we expect to merge; guards against concurrent pushes
    head_sha: GitCommitHash
    head_branch: str
    base_branch: str
    commit: Optional[Commit] = None

    # Live status; refreshed by update_all_status
    state: str = "OPEN"
    mergeable: str = "UNKNOWN"
    merge_status: str = "UNKNOWN"
    checks_status: str = NONE
    checks: List[CheckResult] = field(default_factory=list)
    review_decision: str = ""
    review_status: str = ""
    last_updated: Optional[datetime.datetime] = None

    def apply(self, data: Dict[str, Any]) -> None:
        """
        Update the status snapshot from a pull request object, as
        returned by either the GraphQL API or gh pr view --json.
        """
        self.state = data.get("state") or self.state
        self.mergeable = data.get("mergeable") or "UNKNOWN"
        self.merge_status = data.get("mergeStateStatus") or "UNKNOWN"
        self.review_decision = data.get("reviewDecision") or ""

        reviews = data.get("reviews") or []
        if isinstance(reviews, dict):
            reviews = reviews.get("nodes") or []
        self.review_status = review_summary(
            [r.get("state", "") for r in reviews], self.review_decision
        )

        rollup = data.get("statusCheckRollup") or []
        if isinstance(rollup, dict):
            rollup = (rollup.get("contexts") or {}).get("nodes") or []
        self.checks = []
        for node in rollup:
            check = parse_check(node)
            if check is not None:
                self.checks.append(
                    CheckResult(check_name(check), classify_check(check))
                )
        self.checks_status = aggregate_checks(c.bucket for c in self.checks)
        self.last_updated = datetime.datetime.now()


LandingPlan = List[PRInfo]

PR_FIELDS = """
                number
                state
                mergeable
                mergeStateStatus
                reviewDecision
                reviews(last: 10) {
                    nodes {
                        state
                        author {
                            login
                        }
                    }
                }
                statusCheckRollup {
                    contexts(first: 100) {
                        nodes {
                            __typename
                            ... on CheckRun {
                                name
                                status
                                conclusion
                            }
                            ... on StatusContext {
                                context
                                state
                            }
                        }
                    }
                }"""


def batch_query(
    repo: gitpr.github_utils.GitHubRepoNameWithOwner, plan: LandingPlan
) -> str:
    """
    A single GraphQL query asking about every PR of the plan; PR i is
    aliased pr<i>.
    """
    parts = [
        'query {{\n    repository(owner: "{}", name: "{}") {{'.format(
            repo["owner"], repo["name"]
        )
    ]
    for i, pr in enumerate(plan):
        parts.append(
            "        pr{}: pullRequest(number: {}) {{{}\n        }}".format(
                i, pr.number, PR_FIELDS
            )
        )
    parts.append("    }\n}")
    return "\n".join(parts)


def update_status_batch(
    sh: gitpr.shell.Shell,
    repo: gitpr.github_utils.GitHubRepoNameWithOwner,
    plan: LandingPlan,
) -> None:
    if not plan:
        return
    out = sh.gh("api", "graphql", "-f", "query={}".format(batch_query(repo, plan)))
    r = json.loads(out)
    if r.get("errors"):
        raise gitpr.errors.ValidationError(
            "GraphQL query failed: {}".format(json.dumps(r["errors"]))
        )
    repository = (r.get("data") or {}).get("repository")
    if not isinstance(repository, dict):
        raise gitpr.errors.ValidationError(
            "GraphQL query returned no repository: {}".format(out.strip())
        )
    for i, pr in enumerate(plan):
        data = repository.get("pr{}".format(i))
        if data:
            pr.apply(data)


def update_status(sh: gitpr.shell.Shell, pr: PRInfo) -> None:
    out = sh.gh(
        "pr",
        "view",
        str(pr.number),
        "--json",
        "state,mergeable,mergeStateStatus,statusCheckRollup,reviewDecision,reviews",
    )
    pr.apply(json.loads(out))


def update_all_status(
    sh: gitpr.shell.Shell,
    repo: gitpr.github_utils.GitHubRepoNameWithOwner,
    plan: LandingPlan,
) -> Optional[Exception]:
    """
    Refresh the status of every PR of the plan, in one round trip if we
    can.  Status is advisory, so failures never propagate: if the batch
    query fails we ask about each PR in turn, and a PR we cannot ask
    about keeps its old status.

    Returns: the error of the batch query, if it failed
    """
    try:
        update_status_batch(sh, repo, plan)
        return None
    except (gitpr.errors.GitPrError, ValueError, KeyError, TypeError) as e:
        logging.debug("batch status query failed: %s", e)
        batch_error: Exception = e

    for pr in plan:
        try:
            update_status(sh, pr)
        except (gitpr.errors.GitPrError, ValueError) as e:
            logging.warning("could not refresh status of PR #%d: %s", pr.number, e)
    return batch_error


class Mergeability(NamedTuple):
    # mergeStateStatus, e.g. CLEAN or BLOCKED
    status: str
    # mergeable: MERGEABLE, CONFLICTING or UNKNOWN
    mergeable: str
    # What is in the way, for humans; "" if nothing is
    reason: str

    @property
    def conflicting(self) -> bool:
        return self.mergeable == "CONFLICTING" or self.status in (
            "CONFLICTING",
            "DIRTY",
        )


MERGE_STATE_REASONS = {
    "CONFLICTING": "has merge conflicts that must be resolved",
    "DIRTY": "has merge conflicts that must be resolved",
    "BLOCKED": "is blocked by branch protection rules or missing required reviews",
    "UNSTABLE": "has failing or pending CI checks",
    "BEHIND": "needs to be updated with the base branch",
    "UNKNOWN": "merge status is being computed, please retry",
    "DRAFT": "is a draft",
}


def check_mergeability(sh: gitpr.shell.Shell, number: int) -> Mergeability:
    """
    Raises:
        ForgeError: gh could not tell us
    """
    out = sh.gh("pr", "view", str(number), "--json", "mergeable,mergeStateStatus")
    data = json.loads(out)
    status = data.get("mergeStateStatus") or "UNKNOWN"
    mergeable = data.get("mergeable") or "UNKNOWN"
    if mergeable == "CONFLICTING" and status not in ("CONFLICTING", "DIRTY"):
        reason = MERGE_STATE_REASONS["CONFLICTING"]
    else:
        reason = MERGE_STATE_REASONS.get(status, "")
    logging.debug(
        "PR #%d mergeability: mergeable=%s, status=%s", number, mergeable, status
    )
    return Mergeability(status, mergeable, reason)


def check_conflicts(sh: gitpr.shell.Shell, number: int) -> bool:
    return check_mergeability(sh, number).conflicting


NO_CHECKS_MESSAGES = ("no checks reported", "no required checks")


def _normalize_bucket(bucket: str) -> str:
    bucket = bucket.lower()
    if bucket in ("skipping", "neutral", "success"):
        return "pass"
    if bucket in ("cancel", "failure"):
        return "fail"
    return bucket


def fetch_checks(
    sh: gitpr.shell.Shell,
    number: int,
    strategy: MergeStrategy,
    custom: Iterable[str] = (),
) -> List[CheckResult]:
    """
    The checks we have to wait for before merging, per strategy.  A PR
    without checks gets an empty list, not an error.
    """
    args = ["pr", "checks", str(number)]
    if strategy in (MergeStrategy.REQUIRED_ONLY, MergeStrategy.MANUAL):
        args.append("--required")
    args.extend(["--json", "name,state,bucket,link"])
    try:
        out = sh.gh(*args)
    except gitpr.errors.ForgeError as e:
        # gh pr checks exits non-zero while checks are pending or failing,
        # but still prints them
        if e.stdout.strip().startswith("["):
            out = e.stdout
        elif any(m in e.output.lower() for m in NO_CHECKS_MESSAGES):
            return []
        else:
            raise
    checks = [
        CheckResult(
            name=c.get("name", ""),
            bucket=_normalize_bucket(c.get("bucket") or "pending"),
            link=c.get("link") or "",
        )
        for c in json.loads(out or "[]")
    ]
    if strategy is MergeStrategy.CUSTOM:
        wanted = set(custom)
        checks = [c for c in checks if c.name in wanted]
    return checks
