#!/usr/bin/env python3

import logging
import time
from typing import Callable, List, Optional, TypeVar

import gitpr.errors

T = TypeVar("T")


class Clock(object):
    """
    Source of time for every wait loop.  Tests substitute FakeClock so
    that nothing actually sleeps.
    """

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def monotonic(self) -> float:
        return time.monotonic()


class FakeClock(Clock):
    """
    A clock whose time only advances when someone sleeps on it.  Every
    sleep is recorded so tests can assert on the delays taken.
    """

    now: float
    sleeps: List[float]

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now
        self.sleeps = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def monotonic(self) -> float:
        return self.now


def poll(
    probe: Callable[[], Optional[T]],
    *,
    interval: float,
    timeout: float,
    clock: Clock,
    describe: str,
) -> T:
    """
    Call probe every interval seconds until it returns something other
    than None, and return that.  Exceptions raised by probe propagate
    immediately; that is how a probe reports a terminal failure.

    Raises:
        TimeoutError: probe kept returning None for longer than timeout
    """
    deadline = clock.monotonic() + timeout
    while True:
        r = probe()
        if r is not None:
            return r
        if clock.monotonic() + interval > deadline:
            raise gitpr.errors.TimeoutError(
                "timed out after {}s waiting for {}".format(int(timeout), describe)
            )
        logging.debug("still waiting for %s; sleeping %ss", describe, interval)
        clock.sleep(interval)


def retry(
    probe: Callable[[], T],
    *,
    attempts: int,
    delay: float,
    clock: Clock,
    until: Callable[[T], bool],
    on_retry: Optional[Callable[[T], None]] = None,
) -> T:
    """
    Call probe up to attempts + 1 times, sleeping delay seconds between
    calls, until until(result) holds.  Unlike poll(), running out of
    attempts is not an error: the last result is returned and the caller
    decides what it means.
    """
    r = probe()
    for _ in range(attempts):
        if until(r):
            return r
        if on_retry is not None:
            on_retry(r)
        clock.sleep(delay)
        r = probe()
    return r
