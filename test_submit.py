#!/usr/bin/env python3

import contextlib
import io
import os
import shutil
import sys
import tempfile
import unittest
from typing import Iterator, Tuple

import expecttest

import gitpr.body
import gitpr.errors
import gitpr.github_fake
import gitpr.shell
import gitpr.stack
import gitpr.submit
from gitpr.config import Config
from gitpr.stack import Stack

GH_KEEP_TMP = os.getenv("GH_KEEP_TMP")


@contextlib.contextmanager
def captured_output() -> Iterator[Tuple[io.StringIO, io.StringIO]]:
    new_out, new_err = io.StringIO(), io.StringIO()
    old_out, old_err = sys.stdout, sys.stderr
    try:
        sys.stdout, sys.stderr = new_out, new_err
        yield sys.stdout, sys.stderr
    finally:
        sys.stdout, sys.stderr = old_out, old_err


class TestSubmit(expecttest.TestCase):
    github: gitpr.github_fake.FakeGitHub
    sh: gitpr.github_fake.FakeShell
    config: Config
    output: str

    def setUp(self) -> None:
        upstream_dir = tempfile.mkdtemp()
        local_dir = tempfile.mkdtemp()
        if not GH_KEEP_TMP:
            self.addCleanup(lambda: shutil.rmtree(upstream_dir))
            self.addCleanup(lambda: shutil.rmtree(local_dir))

        upstream_sh = gitpr.shell.Shell(cwd=upstream_dir, testing=True)
        upstream_sh.git("init", "--bare", "-q")

        self.github = gitpr.github_fake.FakeGitHub()
        self.sh = gitpr.github_fake.FakeShell(self.github, cwd=local_dir)
        self.sh.git("init", "-q")
        self.sh.git("symbolic-ref", "HEAD", "refs/heads/main")
        self.sh.git("remote", "add", "origin", upstream_dir)
        self.commit("Initial commit", "README", "hello\n")
        self.sh.git("push", "-q", "origin", "main")
        self.sh.git("fetch", "-q", "origin")

        self.config = Config(
            remote_name="origin",
            trunk="main",
            github_url="github.com",
            repo_owner="pytorch",
            repo_name="pytorch",
            github_username="ezyang",
            github_oauth="token",
            email="author@example.com",
        )
        self.output = ""

    def commit(self, msg: str, fn: str, contents: str, **env: str) -> None:
        with self.sh.open(fn, "w") as f:
            f.write(contents)
        self.sh.git("add", fn)
        self.sh.git("commit", "-q", "-m", msg, env=env)
        self.sh.test_tick()

    def submit(self, dry_run: bool = False) -> Stack:
        with captured_output() as (out, _):
            try:
                return gitpr.submit.main(
                    sh=self.sh,
                    github=gitpr.github_fake.FakeGitHubEndpoint(self.github),
                    config=self.config,
                    dry_run=dry_run,
                )
            finally:
                self.output = out.getvalue()

    def head_message(self) -> str:
        return self.sh.git("log", "-1", "--format=%B")

    # ------------------------------------------------------------------

    def test_new_stack(self) -> None:
        self.commit("Commit A\n\nA does things.", "a.txt", "A\n")
        self.commit("Commit B", "b.txt", "B\n")
        a, b = self.submit()

        # Every commit now names its branch
        self.assertTrue(a.remote_ref.startswith("ezyang/"))
        self.assertTrue(b.remote_ref.startswith("ezyang/"))
        self.assertNotEqual(a.remote_ref, b.remote_ref)
        self.assertIn("Remote-Ref: {}".format(b.remote_ref), self.head_message())
        self.assertEqual(b.hash, self.sh.git("rev-parse", "HEAD"))
        # Rewriting the messages keeps the commit below it in place
        self.assertEqual(self.sh.git("rev-parse", "HEAD^"), a.hash)
        self.assertEqual(
            self.sh.git("rev-parse", "HEAD~2"), self.sh.git("rev-parse", "origin/main")
        )

        pr_a, pr_b = self.github.prs.values()
        self.assertEqual((pr_a.head, pr_a.base), (a.remote_ref, "main"))
        self.assertEqual((pr_b.head, pr_b.base), (b.remote_ref, a.remote_ref))
        self.assertEqual((a.pr_number, b.pr_number), (pr_a.number, pr_b.number))
        self.assertEqual(self.github.branches[a.remote_ref], a.hash)
        self.assertEqual(self.github.branches[b.remote_ref], b.hash)
        # The upstream repository got the branches too
        self.assertTrue(
            self.sh.git("ls-remote", "origin", "refs/heads/" + b.remote_ref).startswith(
                b.hash
            )
        )

        self.assertIn("A does things.", pr_a.body)
        self.assertIn(gitpr.body.DELIMITER, pr_a.body)
        self.assertIn("* 🍀 #{} (👉[{}]".format(pr_a.number, a.short_hash), pr_a.body)
        self.assertIn("* ◻️ #{}".format(pr_b.number), pr_a.body)
        # No body in the commit message, so the author gets the template
        self.assertTrue(pr_b.body.startswith("# Summary"))
        self.assertIn(
            "create pull request {}".format(self.github.url(pr_a.number)), self.output
        )

    def test_resubmit_keeps_user_text(self) -> None:
        self.commit("Commit A", "a.txt", "A\n")
        self.commit("Commit B", "b.txt", "B\n")
        a, b = self.submit()
        head = self.sh.git("rev-parse", "HEAD")

        pr_a = self.github.prs[a.pr_number]
        pr_a.body = "Reviewer notes.\n\n{}\n\nstale".format(gitpr.body.DELIMITER)
        a2, b2 = self.submit()

        # Nothing to rewrite the second time
        self.assertEqual(self.sh.git("rev-parse", "HEAD"), head)
        self.assertEqual((a2.remote_ref, b2.remote_ref), (a.remote_ref, b.remote_ref))
        self.assertEqual(len(self.github.prs), 2)
        self.assertTrue(pr_a.body.startswith("Reviewer notes.\n\n" + gitpr.body.DELIMITER))
        self.assertNotIn("stale", pr_a.body)
        self.assertNotIn("create pull request", self.output)

    def test_other_authors_are_skipped(self) -> None:
        self.commit("Commit A", "a.txt", "A\n")
        self.commit(
            "Commit B",
            "b.txt",
            "B\n",
            GIT_AUTHOR_EMAIL="other@example.com",
            GIT_AUTHOR_NAME="Other Person",
        )
        self.commit("Commit C", "c.txt", "C\n")
        a, b, c = self.submit()

        self.assertIn('skip "Commit B" (other@example.com)', self.output)
        self.assertTrue(b.skip)
        self.assertEqual(b.remote_ref, "")
        # Authorship survives the rewrite
        self.assertEqual(
            self.sh.git("log", "-1", "--format=%an <%ae>", "HEAD^"),
            "Other Person <other@example.com>",
        )
        pr_a, pr_c = self.github.prs.values()
        self.assertEqual(pr_c.base, a.remote_ref)
        self.assertIn("[Commit B ({})]".format(b.short_hash), pr_a.body)

    def test_include_other_authors(self) -> None:
        self.config = self.config._replace(include_other_authors=True)
        self.commit("Commit A", "a.txt", "A\n", GIT_AUTHOR_EMAIL="other@example.com")
        (a,) = self.submit()
        self.assertFalse(a.skip)
        self.assertEqual(len(self.github.prs), 1)

    def test_draft_and_labels(self) -> None:
        self.config = self.config._replace(default_tags=("ci",))
        self.commit("[draft] Commit A\n\nTags: ui", "a.txt", "A\n")
        self.commit("Commit B", "b.txt", "B\n")
        a, b = self.submit()
        pr_a = self.github.prs[a.pr_number]
        pr_b = self.github.prs[b.pr_number]
        self.assertTrue(pr_a.draft)
        self.assertFalse(pr_b.draft)
        self.assertEqual(pr_a.labels, ["ci", "ui"])
        self.assertEqual(pr_b.labels, ["ci"])

        # Someone turned B into a draft on GitHub; the title says otherwise
        pr_b.draft = True
        self.submit()
        self.assertFalse(pr_b.draft)
        self.assertIn(("pr", "ready", str(pr_b.number)), self.github.calls)

    def test_dry_run(self) -> None:
        self.commit("Commit A", "a.txt", "A\n")
        head = self.sh.git("rev-parse", "HEAD")
        self.submit(dry_run=True)
        self.assertEqual(self.sh.git("rev-parse", "HEAD"), head)
        self.assertEqual(self.github.prs, {})
        self.assertEqual(self.github.branches, {})
        self.assertIn("[DRY-RUN] Would rewrite commits:", self.output)
        self.assertIn(
            "[DRY-RUN] push -f origin {}:refs/heads/ezyang/".format(head), self.output
        )
        self.assertIn("[DRY-RUN] Would update PR descriptions for:", self.output)

    def test_empty_commit_is_not_submitted(self) -> None:
        self.commit("Commit A", "a.txt", "A\n")
        self.sh.git("commit", "-q", "--allow-empty", "-m", "Nothing here")
        self.sh.test_tick()
        a, empty = self.submit()
        self.assertTrue(empty.skip)
        self.assertEqual(empty.remote_ref, "")
        self.assertEqual(len(self.github.prs), 1)

    def test_dirty_tree(self) -> None:
        self.commit("Commit A", "a.txt", "A\n")
        with self.sh.open("untracked.txt", "w") as f:
            f.write("oops\n")
        with self.assertRaises(gitpr.errors.DirtyWorkingTreeError):
            self.submit()

    def test_nothing_to_submit(self) -> None:
        with self.assertRaisesRegex(gitpr.errors.ValidationError, "no commits"):
            self.submit()


if __name__ == "__main__":
    unittest.main()
