#!/usr/bin/env python3

import builtins
import subprocess
from typing import List, Optional, Sequence


class GitPrError(RuntimeError):
    """
    Base class of every error git-pr reports to the user.  Anything that
    is not a GitPrError is a bug.
    """

    pass


class CommandError(GitPrError):
    """
    An external command exited with a non-zero status.
    """

    # The command line that was run
    args_: Sequence[str]

    returncode: int

    # Captured output; empty if the stream was not captured
    stdout: str
    stderr: str

    def __init__(
        self, args: Sequence[str], returncode: int, stdout: str = "", stderr: str = ""
    ):
        self.args_ = tuple(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(self._format_message())

    @property
    def output(self) -> str:
        return "\n".join(s.strip() for s in (self.stdout, self.stderr) if s.strip())

    def _format_message(self) -> str:
        msg = "{} failed with exit code {}".format(
            subprocess.list2cmdline(self.args_), self.returncode
        )
        if self.output:
            msg += "\n" + self.output
        return msg


class VcsError(CommandError):
    pass


class ForgeError(CommandError):
    pass


class DirtyWorkingTreeError(GitPrError):
    def __init__(self) -> None:
        super().__init__(
            """\
git status reports uncommitted changes

Hint: use "git add -A" and "git stash" to clean up the repository"""
        )


class ValidationError(GitPrError):
    pass


class ConflictError(GitPrError):
    """
    A merge conflict that a human has to resolve.  We never try to guess
    a resolution; instead we tell the operator where to look and what to
    run.
    """

    urls: List[str]
    commands: List[str]

    def __init__(
        self,
        msg: str,
        *,
        urls: Optional[Sequence[str]] = None,
        commands: Optional[Sequence[str]] = None,
    ):
        self.urls = list(urls or [])
        self.commands = list(commands or [])
        lines = [msg]
        if self.urls:
            lines.append("  Please resolve conflicts at:")
            lines.extend("     - {}".format(u) for u in self.urls)
        if self.commands:
            lines.append("  To resolve manually:")
            lines.extend("     {}".format(c) for c in self.commands)
        super().__init__("\n".join(lines))


class TimeoutError(GitPrError, builtins.TimeoutError):
    pass


class ClosedDependentError(GitPrError):
    pass


class MergeError(GitPrError):
    pass


class ChecksFailedError(GitPrError):
    failed: List[str]

    def __init__(self, number: int, failed: Sequence[str]):
        self.failed = list(failed)
        super().__init__(
            "checks failed for PR #{}: {}".format(number, ", ".join(self.failed))
        )


class CancelledError(GitPrError):
    pass
