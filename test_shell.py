#!/usr/bin/env python3

import logging
import shlex
import sys
import unittest
from typing import Any, Tuple

import expecttest

import gitpr.errors
import gitpr.shell


# Writes each (stream, payload) argument pair in order, flushing as it goes
EMIT = (
    "import sys; [(getattr(sys, s).write(m.replace(chr(92) + 'n', chr(10))), "
    "getattr(sys, s).flush()) for s, m in zip(sys.argv[1::2], sys.argv[2::2])]"
)


def out(msg: str) -> Tuple[str, str]:
    return ("stdout", msg)


def err(msg: str) -> Tuple[str, str]:
    return ("stderr", msg)


class TestShell(expecttest.TestCase):
    def setUp(self) -> None:
        self.sh = gitpr.shell.Shell()

    def emit(self, *payload: Tuple[str, str], **kwargs: Any) -> gitpr.shell._SHELL_RET:
        args = [sys.executable, "-c", EMIT]
        for stream, msg in payload:
            args.extend((stream, msg))
        return self.sh.sh(*args, **kwargs)

    def flog(self, cm: "unittest._AssertLogsContext") -> str:  # type: ignore[name-defined]
        def redact(s: str) -> str:
            s = s.replace(shlex.quote(EMIT), "emit")
            s = s.replace(sys.executable, "python")
            s = s.replace("'python'", "python")
            return s

        return "\n".join(redact(r.getMessage()) for r in cm.records)

    def test_stdout(self) -> None:
        with self.assertLogs(level=logging.DEBUG) as cm:
            r = self.emit(out(r"arf\n"))
        self.assertEqual(r, "arf\n")
        self.assertExpectedInline(
            self.flog(cm),
            """\
$ python -c emit stdout 'arf\\n'
arf
""",
        )

    def test_stderr(self) -> None:
        with self.assertLogs(level=logging.DEBUG) as cm:
            self.emit(err(r"arf\n"))
        self.assertExpectedInline(
            self.flog(cm),
            """\
$ python -c emit stderr 'arf\\n'
# stderr:
arf
""",
        )

    def test_push_style_output(self) -> None:
        # Progress on stderr, result on stdout
        with self.assertLogs(level=logging.DEBUG) as cm:
            self.emit(
                err(r"Enumerating objects: 5, done.\n"),
                err(r"Writing objects: 100% (3/3), done.\n"),
                out(r"abc123\n"),
            )
        self.assertExpectedInline(
            self.flog(cm),
            """\
$ python -c emit stderr 'Enumerating objects: 5, done.\\n' stderr 'Writing objects: 100% (3/3), done.\\n' stdout 'abc123\\n'
# stderr:
Enumerating objects: 5, done.
Writing objects: 100% (3/3), done.

# stdout:
abc123
""",
        )

    def test_large_output_does_not_deadlock(self) -> None:
        r = self.sh.sh(sys.executable, "-c", "print('.' * (4096 * 128))")
        self.assertEqual(len(r), 4096 * 128 + 1)

    def test_exitcode(self) -> None:
        self.assertTrue(self.sh.sh(sys.executable, "-c", "pass", exitcode=True))
        self.assertFalse(
            self.sh.sh(sys.executable, "-c", "raise SystemExit(3)", exitcode=True)
        )

    def test_failure_carries_output(self) -> None:
        with self.assertRaises(gitpr.errors.CommandError) as cm:
            self.sh.sh(
                sys.executable,
                "-c",
                "import sys; print('partial'); sys.exit('boom')",
            )
        self.assertEqual(cm.exception.returncode, 1)
        self.assertEqual(cm.exception.stdout, "partial\n")
        self.assertEqual(cm.exception.stderr, "boom\n")
        self.assertEqual(cm.exception.output, "partial\nboom")

    def test_git_failure_is_vcs_error(self) -> None:
        with self.assertRaises(gitpr.errors.VcsError) as cm:
            self.sh.git("this-is-not-a-git-command")
        self.assertIn("this-is-not-a-git-command", str(cm.exception))

    def test_missing_binary(self) -> None:
        with self.assertRaises(gitpr.errors.CommandError) as cm:
            self.sh.sh("git-pr-no-such-binary")
        self.assertEqual(cm.exception.returncode, 127)
        self.assertFalse(self.sh.sh("git-pr-no-such-binary", exitcode=True))


if __name__ == "__main__":
    unittest.main()
