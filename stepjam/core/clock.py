"""Server time source for session actors."""
from __future__ import annotations

import time
from typing import Callable

MsClock = Callable[[], int]


def wall_clock_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class ServerClock:
    """Wall-clock milliseconds, guarded to never run backwards.

    One instance lives for the lifetime of a session actor. If the
    underlying source steps back (NTP slew, manual change) the last
    reading is repeated until the source catches up.
    """

    def __init__(self, source: MsClock = wall_clock_ms) -> None:
        self._source = source
        self._last = 0

    def now(self) -> int:
        reading = self._source()
        if reading < self._last:
            reading = self._last
        self._last = reading
        return reading

    def __call__(self) -> int:
        return self.now()

    @property
    def last(self) -> int:
        """Most recent value handed out (0 before the first call)."""
        return self._last
