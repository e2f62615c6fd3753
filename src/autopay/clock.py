"""Trusted time sources for the ledger."""

from __future__ import annotations

import threading
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> int: ...


class SystemClock:
    """Wall-clock seconds since the epoch."""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """Clock that only moves when told to. Safe to share across threads."""

    def __init__(self, start: int = 1_700_000_000):
        self._now = int(start)
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def set(self, timestamp: int) -> None:
        with self._lock:
            if timestamp < self._now:
                raise ValueError("ManualClock cannot move backwards")
            self._now = int(timestamp)

    def advance(self, seconds: int) -> int:
        with self._lock:
            if seconds < 0:
                raise ValueError("ManualClock cannot move backwards")
            self._now += int(seconds)
            return self._now
