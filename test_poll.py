#!/usr/bin/env python3

import unittest
from typing import List, Optional

import gitpr.errors
import gitpr.poll


class TestPoll(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = gitpr.poll.FakeClock()

    def test_returns_first_answer(self) -> None:
        answers: List[Optional[str]] = [None, None, "done"]
        r = gitpr.poll.poll(
            lambda: answers.pop(0),
            interval=5,
            timeout=60,
            clock=self.clock,
            describe="answers",
        )
        self.assertEqual(r, "done")
        self.assertEqual(self.clock.sleeps, [5, 5])

    def test_timeout(self) -> None:
        calls = []

        def probe() -> Optional[bool]:
            calls.append(self.clock.monotonic())
            return None

        with self.assertRaisesRegex(
            gitpr.errors.TimeoutError, "timed out after 30s waiting for checks"
        ):
            gitpr.poll.poll(
                probe, interval=10, timeout=30, clock=self.clock, describe="checks"
            )
        self.assertEqual(calls, [1000.0, 1010.0, 1020.0, 1030.0])
        self.assertEqual(self.clock.sleeps, [10, 10, 10])

    def test_timeout_is_builtin_timeout(self) -> None:
        with self.assertRaises(TimeoutError):
            gitpr.poll.poll(
                lambda: None, interval=1, timeout=0, clock=self.clock, describe="x"
            )

    def test_probe_error_propagates(self) -> None:
        def probe() -> Optional[bool]:
            raise gitpr.errors.MergeError("closed")

        with self.assertRaises(gitpr.errors.MergeError):
            gitpr.poll.poll(probe, interval=1, timeout=10, clock=self.clock, describe="x")
        self.assertEqual(self.clock.sleeps, [])


class TestRetry(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = gitpr.poll.FakeClock()

    def test_succeeds_eventually(self) -> None:
        answers = ["UNKNOWN", "UNKNOWN", "CLEAN"]
        retried = []
        r = gitpr.poll.retry(
            lambda: answers.pop(0),
            attempts=3,
            delay=2.0,
            clock=self.clock,
            until=lambda s: s != "UNKNOWN",
            on_retry=retried.append,
        )
        self.assertEqual(r, "CLEAN")
        self.assertEqual(retried, ["UNKNOWN", "UNKNOWN"])
        self.assertEqual(self.clock.sleeps, [2.0, 2.0])

    def test_gives_up_with_last_result(self) -> None:
        calls = []

        def probe() -> str:
            calls.append(1)
            return "UNKNOWN"

        r = gitpr.poll.retry(
            probe,
            attempts=3,
            delay=2.0,
            clock=self.clock,
            until=lambda s: s != "UNKNOWN",
        )
        self.assertEqual(r, "UNKNOWN")
        self.assertEqual(len(calls), 4)
        self.assertEqual(self.clock.sleeps, [2.0, 2.0, 2.0])


if __name__ == "__main__":
    unittest.main()
