#!/usr/bin/env python3

import json
import unittest
import unittest.mock

import gitpr.errors
import gitpr.github_fake
import gitpr.status
from gitpr.config import MergeStrategy
from gitpr.github_fake import check
from gitpr.status import CheckRun, StatusContext


class TestClassify(unittest.TestCase):
    def test_check_run(self) -> None:
        classify = gitpr.status.classify_check
        self.assertEqual(classify(CheckRun("lint", "COMPLETED", "SUCCESS")), "pass")
        self.assertEqual(classify(CheckRun("lint", "COMPLETED", "FAILURE")), "fail")
        self.assertEqual(classify(CheckRun("lint", "COMPLETED", "CANCELLED")), "fail")
        self.assertEqual(classify(CheckRun("lint", "COMPLETED", "TIMED_OUT")), "fail")
        self.assertEqual(classify(CheckRun("lint", "COMPLETED", "SKIPPED")), "pass")
        self.assertEqual(classify(CheckRun("lint", "COMPLETED", "NEUTRAL")), "pass")
        self.assertEqual(classify(CheckRun("lint", "IN_PROGRESS", "")), "pending")
        self.assertEqual(classify(CheckRun("lint", "QUEUED", "")), "pending")

    def test_status_context(self) -> None:
        classify = gitpr.status.classify_check
        self.assertEqual(classify(StatusContext("ci/x", "SUCCESS")), "pass")
        self.assertEqual(classify(StatusContext("ci/x", "FAILURE")), "fail")
        self.assertEqual(classify(StatusContext("ci/x", "ERROR")), "fail")
        self.assertEqual(classify(StatusContext("ci/x", "PENDING")), "pending")
        self.assertEqual(classify(StatusContext("ci/x", "EXPECTED")), "pending")

    def test_parse_check(self) -> None:
        self.assertEqual(
            gitpr.status.parse_check(
                {"__typename": "CheckRun", "name": "a", "status": "completed", "conclusion": "success"}
            ),
            CheckRun("a", "COMPLETED", "SUCCESS"),
        )
        self.assertEqual(
            gitpr.status.parse_check(
                {"__typename": "StatusContext", "context": "ci/b", "state": "pending"}
            ),
            StatusContext("ci/b", "PENDING"),
        )
        self.assertIsNone(gitpr.status.parse_check({"__typename": "Mystery"}))

    def test_aggregate(self) -> None:
        aggregate = gitpr.status.aggregate_checks
        self.assertEqual(aggregate([]), gitpr.status.NONE)
        self.assertEqual(aggregate(["pass", "pass"]), gitpr.status.PASSING)
        self.assertEqual(aggregate(["pass", "pending"]), gitpr.status.PENDING)
        self.assertEqual(aggregate(["pending", "fail", "pass"]), gitpr.status.FAILING)

    def test_review_summary(self) -> None:
        summary = gitpr.status.review_summary
        self.assertEqual(summary(["APPROVED", "CHANGES_REQUESTED"], ""), "1 changes requested")
        self.assertEqual(summary(["APPROVED", "APPROVED"], "APPROVED"), "2 approved")
        self.assertEqual(summary([], "REVIEW_REQUIRED"), "Review required")
        self.assertEqual(summary(["COMMENTED"], ""), "1 comments")
        self.assertEqual(summary([], ""), "")


class TestTracker(unittest.TestCase):
    def setUp(self) -> None:
        self.github, self.repo = gitpr.github_fake.make_stack(["A", "B"])
        self.sh = gitpr.github_fake.FakeShell(self.github, self.repo)
        self.a, self.b = self.github.prs.values()
        self.plan = [
            gitpr.status.PRInfo(
                number=pr.number,
                title=pr.title,
                url=self.github.url(pr.number),
                head_sha=pr.head_oid,
                head_branch=pr.head,
                base_branch=pr.base,
            )
            for pr in (self.a, self.b)
        ]

    def test_batch_query(self) -> None:
        query = gitpr.status.batch_query(self.github.repo, self.plan)
        self.assertIn('repository(owner: "pytorch", name: "pytorch")', query)
        self.assertIn("pr0: pullRequest(number: {})".format(self.a.number), query)
        self.assertIn("pr1: pullRequest(number: {})".format(self.b.number), query)

    def test_update_all_in_one_round_trip(self) -> None:
        self.a.checks = [check("lint"), check("test", "pending")]
        self.a.reviews = ["APPROVED"]
        self.b.mergeable, self.b.merge_status = "CONFLICTING", "DIRTY"
        error = gitpr.status.update_all_status(self.sh, self.github.repo, self.plan)
        self.assertIsNone(error)
        self.assertEqual(
            [c[:2] for c in self.github.calls], [("api", "graphql")]
        )
        a, b = self.plan
        self.assertEqual(a.checks_status, gitpr.status.PENDING)
        self.assertEqual([c.bucket for c in a.checks], ["pass", "pending"])
        self.assertEqual(a.review_status, "1 approved")
        self.assertEqual(a.merge_status, "CLEAN")
        self.assertEqual(b.mergeable, "CONFLICTING")
        self.assertEqual(b.checks_status, gitpr.status.NONE)
        self.assertIsNotNone(b.last_updated)

    def test_falls_back_per_pr(self) -> None:
        self.github.graphql_fails = True
        self.b.state = "MERGED"
        error = gitpr.status.update_all_status(self.sh, self.github.repo, self.plan)
        self.assertIsInstance(error, gitpr.errors.ForgeError)
        self.assertEqual(
            [c[:2] for c in self.github.calls],
            [("api", "graphql"), ("pr", "view"), ("pr", "view")],
        )
        self.assertEqual(self.plan[1].state, "MERGED")

    def test_null_repository_falls_back_per_pr(self) -> None:
        reply = json.dumps({"data": {"repository": None}})
        with unittest.mock.patch.object(self.github, "_graphql", return_value=reply):
            error = gitpr.status.update_all_status(
                self.sh, self.github.repo, self.plan
            )
        self.assertIsInstance(error, gitpr.errors.ValidationError)
        self.assertIn("no repository", str(error))
        self.assertEqual(
            [c[:2] for c in self.github.calls],
            [("api", "graphql"), ("pr", "view"), ("pr", "view")],
        )

    def test_unreachable_pr_keeps_old_status(self) -> None:
        self.github.graphql_fails = True
        del self.github.prs[self.b.number]
        self.plan[1].merge_status = "BLOCKED"
        with self.assertLogs(level="WARNING"):
            gitpr.status.update_all_status(self.sh, self.github.repo, self.plan)
        self.assertEqual(self.plan[1].merge_status, "BLOCKED")

    def test_mergeability(self) -> None:
        self.a.mergeable, self.a.merge_status = "MERGEABLE", "BLOCKED"
        m = gitpr.status.check_mergeability(self.sh, self.a.number)
        self.assertEqual(m.status, "BLOCKED")
        self.assertFalse(m.conflicting)
        self.assertIn("branch protection", m.reason)

        self.a.mergeable, self.a.merge_status = "CONFLICTING", "UNKNOWN"
        m = gitpr.status.check_mergeability(self.sh, self.a.number)
        self.assertTrue(m.conflicting)
        self.assertIn("conflicts", m.reason)
        self.assertTrue(gitpr.status.check_conflicts(self.sh, self.a.number))


class TestFetchChecks(unittest.TestCase):
    def setUp(self) -> None:
        self.github, self.repo = gitpr.github_fake.make_stack(["A"])
        self.sh = gitpr.github_fake.FakeShell(self.github, self.repo)
        (self.pr,) = self.github.prs.values()

    def fetch(self, strategy: MergeStrategy, custom=()):  # type: ignore[no-untyped-def]
        return gitpr.status.fetch_checks(self.sh, self.pr.number, strategy, custom)

    def test_required_only(self) -> None:
        self.pr.checks = [check("build"), check("flaky", "fail", required=False)]
        checks = self.fetch(MergeStrategy.REQUIRED_ONLY)
        self.assertEqual([c.name for c in checks], ["build"])
        self.assertIn("--required", self.github.calls[-1])

    def test_all_checks_while_failing(self) -> None:
        # gh exits non-zero but still prints the checks
        self.pr.checks = [
            check("build"),
            check("flaky", "fail", required=False, link="https://x/actions/runs/7/job/1"),
            check("docs", "skipping"),
            check("lint", "cancel"),
        ]
        checks = self.fetch(MergeStrategy.ALL_CHECKS)
        self.assertNotIn("--required", self.github.calls[-1])
        self.assertEqual(
            [(c.name, c.bucket) for c in checks],
            [("build", "pass"), ("flaky", "fail"), ("docs", "pass"), ("lint", "fail")],
        )
        self.assertEqual(checks[1].link, "https://x/actions/runs/7/job/1")

    def test_custom(self) -> None:
        self.pr.checks = [check("build"), check("test", "pending"), check("lint")]
        checks = self.fetch(MergeStrategy.CUSTOM, {"test", "lint"})
        self.assertEqual([(c.name, c.bucket) for c in checks], [("test", "pending"), ("lint", "pass")])

    def test_no_checks(self) -> None:
        self.assertEqual(self.fetch(MergeStrategy.REQUIRED_ONLY), [])
        self.assertEqual(self.fetch(MergeStrategy.ALL_CHECKS), [])

    def test_other_errors_propagate(self) -> None:
        del self.github.prs[self.pr.number]
        with self.assertRaises(gitpr.errors.ForgeError):
            self.fetch(MergeStrategy.ALL_CHECKS)


class TestApply(unittest.TestCase):
    def test_gh_view_shape(self) -> None:
        pr = gitpr.status.PRInfo(
            number=1, title="t", url="u", head_sha="abc", head_branch="h", base_branch="main"  # type: ignore[arg-type]
        )
        pr.apply(
            json.loads(
                """{
                "state": "OPEN",
                "mergeable": "MERGEABLE",
                "mergeStateStatus": "UNSTABLE",
                "reviewDecision": "REVIEW_REQUIRED",
                "reviews": [],
                "statusCheckRollup": [
                    {"__typename": "StatusContext", "context": "ci/a", "state": "FAILURE"},
                    {"__typename": "CheckRun", "name": "b", "status": "COMPLETED", "conclusion": "SUCCESS"}
                ]
            }"""
            )
        )
        self.assertEqual(pr.merge_status, "UNSTABLE")
        self.assertEqual(pr.checks_status, gitpr.status.FAILING)
        self.assertEqual([c.name for c in pr.checks], ["ci/a", "b"])
        self.assertEqual(pr.review_status, "Review required")


if __name__ == "__main__":
    unittest.main()
