from __future__ import annotations

"""
relaykit.core.time
==================

Clock abstractions:
- Clock Protocol for dependency injection.
- SystemClock: production default.
- ManualClock: deterministic time for tests; `sleep_ms` advances time instantly.
"""

import asyncio
import time
from datetime import UTC, datetime
from typing import Protocol

from .types import Millis, MonotonicMs, TimestampMs


class Clock(Protocol):
    """Minimal clock protocol used across the project."""

    def now_dt(self) -> datetime: ...
    def now_ms(self) -> TimestampMs: ...
    def mono_ms(self) -> MonotonicMs: ...
    async def sleep_ms(self, ms: Millis) -> None: ...


class SystemClock:
    """Clock backed by system time."""

    def now_dt(self) -> datetime:
        return datetime.now(UTC)

    def now_ms(self) -> TimestampMs:
        """Epoch milliseconds (persistable)."""
        return time.time_ns() // 1_000_000

    def mono_ms(self) -> MonotonicMs:
        """Process-local monotonic milliseconds."""
        return time.monotonic_ns() // 1_000_000

    async def sleep_ms(self, ms: Millis) -> None:
        await asyncio.sleep(max(0.0, ms / 1000.0))


class ManualClock(SystemClock):
    """
    Controllable clock for tests.

    Wall and monotonic time start at `start_ms` and move only through
    `advance()` or `sleep_ms()`. `sleep_ms` still yields to the event loop
    once, so cancellation can be observed at the wait point. Every requested
    sleep is recorded in `sleeps`.
    """

    def __init__(self, start_ms: Millis = 1_700_000_000_000) -> None:
        self._wall: Millis = start_ms
        self._mono: Millis = 0
        self.sleeps: list[Millis] = []

    def now_dt(self) -> datetime:
        return datetime.fromtimestamp(self._wall / 1000.0, tz=UTC)

    def now_ms(self) -> TimestampMs:
        return self._wall

    def mono_ms(self) -> MonotonicMs:
        return self._mono

    def advance(self, ms: Millis) -> None:
        inc = max(0, int(ms))
        self._wall += inc
        self._mono += inc

    async def sleep_ms(self, ms: Millis) -> None:
        self.sleeps.append(int(ms))
        await asyncio.sleep(0)
        self.advance(ms)
