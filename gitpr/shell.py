#!/usr/bin/env python3

import logging
import os
import shlex
import subprocess
from typing import Any, Dict, IO, Optional, overload, Sequence, TypeVar, Union

import gitpr.errors


# Shell commands generally return str, but with exitcode=True
# they return a bool.
_SHELL_RET = Union[bool, str]


def log_command(args: Sequence[str]) -> None:
    """
    Given a command, print it in a both machine and human readable way.

    Args:
        *args: the list of command line arguments you want to run
    """
    cmd = " ".join(shlex.quote(arg) for arg in args).replace("\n", "\\n")
    logging.debug("$ " + cmd)


K = TypeVar("K")


V = TypeVar("V")


def merge_dicts(x: Dict[K, V], y: Dict[K, V]) -> Dict[K, V]:
    z = x.copy()
    z.update(y)
    return z


class Shell(object):
    """
    An object representing a shell (e.g., the bash prompt in your
    terminal), maintaining a concept of current working directory, and
    also the necessary accoutrements for testing.

    All interaction with the outside world goes through two methods:
    git() for the version control system and gh() for the GitHub CLI.
    Tests substitute a fake that overrides exactly these two.
    """

    # Current working directory of shell.
    cwd: str

    # Whether or not to suppress logging of the command executed.
    quiet: bool

    # Whether or not shell is in testing mode; some commands are made
    # more deterministic in this case.
    testing: bool

    # The current Unix timestamp.  Only used during testing mode.
    testing_time: int

    def __init__(
        self, quiet: bool = False, cwd: Optional[str] = None, testing: bool = False
    ):
        """
        Args:
            cwd: Current working directory of the shell.  Pass None to
                initialize to the current cwd of the current process.
            quiet: If True, suppress logging of the command executed
                by the shell.
            testing: If True, operate in testing mode.  Testing mode
                enables features which make the outputs of commands more
                deterministic; e.g., it sets a number of environment
                variables for Git.
        """
        self.cwd = cwd if cwd else os.getcwd()
        self.quiet = quiet
        self.testing = testing
        self.testing_time = 1112911993

    def sh(
        self,
        *args: str,
        env: Optional[Dict[str, str]] = None,
        input: Optional[str] = None,
        exitcode: bool = False,
    ) -> _SHELL_RET:
        """
        Run a command specified by args, and return string representing
        the stdout of the run command, raising CommandError if exit code
        was nonzero (unless exitcode kwarg is specified; see below).

        Args:
            *args: the list of command line arguments to run
            env: any extra environment variables to set when running the
                command.  Environment variables set this way are ADDITIVE
                (unlike subprocess default)
            input: string value to pass stdin.
            exitcode: if True, return a bool rather than string, specifying
                whether or not the process successfully returned with exit
                code 0.  We never raise an exception when this is True.
        """
        if not self.quiet:
            log_command(args)
        if env is not None:
            env = merge_dicts(dict(os.environ), env)
        try:
            p = subprocess.run(
                args,
                input=input.encode("utf-8") if input is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except FileNotFoundError:
            # Same contract as a command that ran and failed
            if exitcode:
                return False
            raise gitpr.errors.CommandError(args, 127, "", "command not found")
        out = p.stdout.decode("utf-8", errors="replace")
        err = p.stderr.decode("utf-8", errors="replace")
        if err:
            logging.debug("# stderr:\n" + err)
        if out:
            logging.debug(
                ("# stdout:\n" if err else "") + out.replace("\0", "\\0")
            )
        if exitcode:
            logging.debug("Exit code: {}".format(p.returncode))
            return p.returncode == 0
        if p.returncode != 0:
            raise gitpr.errors.CommandError(args, p.returncode, out, err)
        return out

    def _maybe_rstrip(self, s: _SHELL_RET) -> _SHELL_RET:
        if isinstance(s, str):
            return s.rstrip()
        else:
            return s

    @overload  # noqa: F811
    def git(self, *args: str) -> str:
        ...

    @overload  # noqa: F811
    def git(self, *args: str, input: str) -> str:
        ...

    @overload  # noqa: F811
    def git(self, *args: str, **kwargs: Any) -> _SHELL_RET:
        ...

    def git(self, *args: str, **kwargs: Any) -> _SHELL_RET:  # noqa: F811
        """
        Run a git command.  The returned stdout has trailing newlines stripped.

        Args:
            *args: Arguments to git
            **kwargs: Any valid kwargs for sh()

        Raises:
            VcsError: git exited with a non-zero status
        """
        env = kwargs.setdefault("env", {})
        # Some envvars to make things a little more script mode nice
        if self.testing:
            env.setdefault("EDITOR", ":")
            env.setdefault("GIT_MERGE_AUTOEDIT", "no")
            env.setdefault("LANG", "C")
            env.setdefault("LC_ALL", "C")
            env.setdefault("PAGER", "cat")
            env.setdefault("TZ", "UTC")
            env.setdefault("TERM", "dumb")
            # These are important so we get deterministic commit times
            env.setdefault("GIT_AUTHOR_EMAIL", "author@example.com")
            env.setdefault("GIT_AUTHOR_NAME", "A U Thor")
            env.setdefault("GIT_COMMITTER_EMAIL", "committer@example.com")
            env.setdefault("GIT_COMMITTER_NAME", "C O Mitter")
            env.setdefault("GIT_COMMITTER_DATE", "{} -0700".format(self.testing_time))
            env.setdefault("GIT_AUTHOR_DATE", "{} -0700".format(self.testing_time))

        try:
            return self._maybe_rstrip(self.sh(*(("git",) + args), **kwargs))
        except gitpr.errors.CommandError as e:
            raise gitpr.errors.VcsError(e.args_, e.returncode, e.stdout, e.stderr)

    @overload  # noqa: F811
    def gh(self, *args: str) -> str:
        ...

    @overload  # noqa: F811
    def gh(self, *args: str, **kwargs: Any) -> _SHELL_RET:
        ...

    def gh(self, *args: str, **kwargs: Any) -> _SHELL_RET:  # noqa: F811
        """
        Run a GitHub CLI command.  The returned stdout has trailing
        newlines stripped.

        Args:
            *args: Arguments to gh
            **kwargs: Any valid kwargs for sh()

        Raises:
            ForgeError: gh exited with a non-zero status
        """
        env = kwargs.setdefault("env", {})
        # Never page or prompt; we parse everything gh prints
        env.setdefault("GH_PAGER", "cat")
        env.setdefault("GH_PROMPT_DISABLED", "1")
        env.setdefault("NO_COLOR", "1")
        try:
            return self._maybe_rstrip(self.sh(*(("gh",) + args), **kwargs))
        except gitpr.errors.CommandError as e:
            raise gitpr.errors.ForgeError(e.args_, e.returncode, e.stdout, e.stderr)

    def test_tick(self) -> None:
        """
        Increase the current time.  Useful when testing is True.
        """
        self.testing_time += 60

    def open(self, fn: str, mode: str) -> IO[Any]:
        """
        Open a file, relative to the current working directory.

        Args:
            fn: filename to open
            mode: mode to open the file as
        """
        return open(os.path.join(self.cwd, fn), mode)

    def cd(self, d: str) -> None:
        """
        Change the current working directory.

        Args:
            d: directory to change to
        """
        self.cwd = os.path.join(self.cwd, d)
