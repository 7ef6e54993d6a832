from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic clock abstraction.

    The combat engine and its timers read time only through this interface,
    so tests can drive a whole game with a fake clock and no real waiting.
    """

    def now(self) -> float:
        """Return monotonic seconds."""


class RealClock:
    """Production clock backed by time.monotonic()."""

    def now(self) -> float:
        return time.monotonic()


def ms(value: float) -> float:
    """Convert a millisecond delay to the seconds used by ``Clock``."""

    return float(value) / 1000.0
