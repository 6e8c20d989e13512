#!/usr/bin/env python3

import os
import shutil
import tempfile
import unittest

import expecttest

import gitpr.errors
import gitpr.shell
import gitpr.stack

GH_KEEP_TMP = os.getenv("GH_KEEP_TMP")


class TestStack(expecttest.TestCase):
    sh: gitpr.shell.Shell

    def setUp(self) -> None:
        upstream_dir = tempfile.mkdtemp()
        local_dir = tempfile.mkdtemp()
        if not GH_KEEP_TMP:
            self.addCleanup(lambda: shutil.rmtree(upstream_dir))
            self.addCleanup(lambda: shutil.rmtree(local_dir))

        upstream_sh = gitpr.shell.Shell(cwd=upstream_dir, testing=True)
        upstream_sh.git("init", "--bare", "-q")

        self.sh = gitpr.shell.Shell(cwd=local_dir, testing=True)
        self.sh.git("init", "-q")
        self.sh.git("symbolic-ref", "HEAD", "refs/heads/main")
        self.sh.git("remote", "add", "origin", upstream_dir)
        self.commit("Initial commit", "README", "hello\n")
        self.sh.git("push", "-q", "origin", "main")
        self.sh.git("fetch", "-q", "origin")

    def commit(self, msg: str, fn: str = "", contents: str = "", **env: str) -> None:
        if fn:
            with self.sh.open(fn, "w") as f:
                f.write(contents)
            self.sh.git("add", fn)
            self.sh.git("commit", "-q", "-m", msg, env=env)
        else:
            self.sh.git("commit", "-q", "--allow-empty", "-m", msg, env=env)
        self.sh.test_tick()

    def test_empty_stack(self) -> None:
        self.assertEqual(gitpr.stack.stacked_commits(self.sh, "origin/main"), [])

    def test_oldest_first(self) -> None:
        self.commit("Commit A", "a.txt", "A\n")
        self.commit("Commit B\n\nB has a body.\n\nRemote-Ref: ezyang/bbbb", "b.txt", "B\n")
        stack = gitpr.stack.stacked_commits(self.sh, "origin/main")
        self.assertEqual([c.title for c in stack], ["Commit A", "Commit B"])
        a, b = stack
        self.assertEqual(a.remote_ref, "")
        self.assertEqual(a.author_email, "author@example.com")
        self.assertEqual(a.author_name, "A U Thor")
        self.assertEqual(b.message, "B has a body.")
        self.assertEqual(b.remote_ref, "ezyang/bbbb")
        self.assertEqual(len(b.tree), 40)
        self.assertEqual(b.hash, self.sh.git("rev-parse", "HEAD"))
        self.assertEqual(str(b), "{} (ezyang/bbbb) Commit B".format(b.hash[:8]))

    def test_empty_commit_is_skipped(self) -> None:
        self.commit("Commit A", "a.txt", "A\n")
        self.commit("Nothing here")
        stack = gitpr.stack.stacked_commits(self.sh, "origin/main")
        self.assertEqual([c.skip for c in stack], [False, True])

    def test_pr_trailer(self) -> None:
        self.commit("Commit A\n\nPR: #42\nRemote-Ref: ezyang/aaaa", "a.txt", "A\n")
        (a,) = gitpr.stack.stacked_commits(self.sh, "origin/main")
        self.assertEqual(a.pr_number, 42)

    def test_duplicate_remote_ref(self) -> None:
        self.commit("Commit A\n\nRemote-Ref: ezyang/same", "a.txt", "A\n")
        self.commit("Commit B\n\nRemote-Ref: ezyang/same", "b.txt", "B\n")
        with self.assertRaisesRegex(gitpr.errors.ValidationError, "ezyang/same"):
            gitpr.stack.stacked_commits(self.sh, "origin/main")

    def test_unknown_base(self) -> None:
        with self.assertRaises(gitpr.errors.VcsError):
            gitpr.stack.stacked_commits(self.sh, "origin/no-such-branch")

    def test_tags(self) -> None:
        self.commit("Commit A\n\nTags: ui, backend,ui", "a.txt", "A\n")
        (a,) = gitpr.stack.stacked_commits(self.sh, "origin/main")
        self.assertEqual(a.tags(("ci", "ui")), ["ci", "ui", "backend"])

    def test_full_message_round_trips(self) -> None:
        self.commit(
            "Commit A\n\nBody text.\n\nTags: ui\nRemote-Ref: ezyang/aaaa", "a.txt", "A\n"
        )
        (a,) = gitpr.stack.stacked_commits(self.sh, "origin/main")
        self.assertExpectedInline(
            a.full_message(),
            """\
Commit A

Body text.

Tags: ui
Remote-Ref: ezyang/aaaa""",
        )

    def test_find_by_remote_ref(self) -> None:
        self.commit("Commit A\n\nRemote-Ref: ezyang/aaaa", "a.txt", "A\n")
        self.commit("Commit B\n\nRemote-Ref: ezyang/bbbb", "b.txt", "B\n")
        stack = gitpr.stack.stacked_commits(self.sh, "origin/main")
        found = gitpr.stack.find_by_remote_ref(stack, "ezyang/bbbb")
        assert found is not None
        self.assertEqual(found.title, "Commit B")
        self.assertIsNone(gitpr.stack.find_by_remote_ref(stack, "ezyang/cccc"))


if __name__ == "__main__":
    unittest.main()
