"""Millisecond clock helpers shared by the limiter, poller and repository."""

from __future__ import annotations

import time
from typing import Callable

__all__ = ["MillisClock", "ManualClock", "epoch_millis"]

MillisClock = Callable[[], int]


def epoch_millis() -> int:
    """Return the current wall-clock time in milliseconds since the epoch."""

    return time.time_ns() // 1_000_000


class ManualClock:
    """Deterministic clock advanced explicitly, used to keep tests reproducible."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = int(start_ms)

    def __call__(self) -> int:
        return self._now

    def advance(self, milliseconds: int | float) -> None:
        self._now += int(milliseconds)

    def set(self, now_ms: int) -> None:
        self._now = int(now_ms)
