"""Time reference for time-lock checks.

Lock values are nanoseconds since the Unix epoch, so every source reports
the current time in that unit. The registry never reads a clock itself; the
interface layer asks a source for the time and passes it in with the call.
"""

from __future__ import annotations

import time


class TimeSource:
    def now_ns(self) -> int:
        """Current time in nanoseconds since the Unix epoch."""
        raise NotImplementedError


class SystemTimeSource(TimeSource):
    """Local system time (not secure against clock skew)."""

    def now_ns(self) -> int:
        return time.time_ns()


class FixedTimeSource(TimeSource):
    """A settable clock for tests and replays."""

    def __init__(self, now_ns: int = 0):
        self._now_ns = int(now_ns)

    def now_ns(self) -> int:
        return self._now_ns

    def set(self, now_ns: int) -> None:
        self._now_ns = int(now_ns)

    def advance(self, seconds: float) -> None:
        self._now_ns += int(seconds * 1_000_000_000)
