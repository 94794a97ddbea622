# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Per-operation-key circuit breaker state.

Transitions (evaluated lazily on use, never by a timer):
    closed    --failure_threshold failures-->  open
    open      --now >= open_until_ms-------->  half_open
    half_open --success_threshold successes->  closed
    half_open --any failure----------------->  open

The state object is mutated only between awaits, so a single event loop needs
no lock around it.
"""

from dataclasses import dataclass, replace
from enum import Enum


class CircuitStatus(str, Enum):
    closed = "closed"
    open = "open"
    half_open = "half_open"


@dataclass(frozen=True)
class BreakerSettings:
    failure_threshold: int = 5
    open_duration_ms: int = 60_000
    success_threshold: int = 2


@dataclass
class CircuitBreakerState:
    operation_key: str
    failure_threshold: int = 5
    open_duration_ms: int = 60_000
    success_threshold: int = 2
    status: CircuitStatus = CircuitStatus.closed
    failure_count: int = 0
    success_count: int = 0
    open_until_ms: int = 0
    last_failure_ms: int | None = None
    last_success_ms: int | None = None

    @classmethod
    def create(cls, operation_key: str, settings: BreakerSettings) -> CircuitBreakerState:
        return cls(
            operation_key=operation_key,
            failure_threshold=settings.failure_threshold,
            open_duration_ms=settings.open_duration_ms,
            success_threshold=settings.success_threshold,
        )

    def is_blocking(self, now_ms: int) -> bool:
        """True while open and the cool-down has not elapsed."""
        return self.status is CircuitStatus.open and now_ms < self.open_until_ms

    def admit(self, now_ms: int) -> bool:
        """
        Decide whether a call may proceed. An expired open circuit moves to
        half_open here and admits the probe.
        """
        if self.status is CircuitStatus.open:
            if now_ms < self.open_until_ms:
                return False
            self.status = CircuitStatus.half_open
            self.success_count = 0
        return True

    def record_success(self, now_ms: int) -> None:
        self.last_success_ms = now_ms
        if self.status is CircuitStatus.half_open:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.reset()
        elif self.failure_count > 0:
            self.failure_count -= 1

    def record_failure(self, now_ms: int) -> None:
        self.last_failure_ms = now_ms
        self.failure_count += 1
        if self.status is CircuitStatus.half_open or self.failure_count >= self.failure_threshold:
            self.trip(now_ms)

    def trip(self, now_ms: int) -> None:
        self.status = CircuitStatus.open
        self.open_until_ms = now_ms + self.open_duration_ms
        self.success_count = 0

    def reset(self) -> None:
        self.status = CircuitStatus.closed
        self.failure_count = 0
        self.success_count = 0
        self.open_until_ms = 0

    def snapshot(self) -> CircuitBreakerState:
        return replace(self)
