# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Retry-with-circuit-breaker executor.

`ResilientExecutor` is the single place that decides whether a failed broker
or adapter call is retried or surfaced. Breaker state lives in a map owned by
the executor instance (one entry per operation key, created on first use);
pass the executor to collaborators instead of sharing global state.

Retry waits go through the injected clock, so they are cancellable suspension
points; a cancelled wait propagates without touching breaker counters.
"""

import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ..api.errors import CircuitOpenError, ErrorKind, classify_error
from ..core.logging import get_logger, log_context
from ..core.time import Clock, SystemClock
from .breaker import BreakerSettings, CircuitBreakerState, CircuitStatus
from .policy import RetryPolicy

T = TypeVar("T")

Classifier = Callable[[BaseException], ErrorKind]


class ResilientExecutor:
    def __init__(
        self,
        *,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        default_policy: RetryPolicy | None = None,
        breaker: BreakerSettings | None = None,
        classifier: Classifier | None = None,
        logger: logging.LoggerAdapter | None = None,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.default_policy = default_policy or RetryPolicy()
        self.breaker_settings = breaker or BreakerSettings()
        self.classifier: Classifier = classifier or classify_error
        self.log = logger or get_logger("resilience")
        self._breakers: dict[str, CircuitBreakerState] = {}

    # ---- breaker map

    def _breaker(self, operation_key: str) -> CircuitBreakerState:
        state = self._breakers.get(operation_key)
        if state is None:
            state = self._breakers.setdefault(
                operation_key, CircuitBreakerState.create(operation_key, self.breaker_settings)
            )
        return state

    def circuit_state(self, operation_key: str) -> CircuitBreakerState | None:
        """Copy of the breaker state for monitoring; None if the key was never used."""
        state = self._breakers.get(operation_key)
        return state.snapshot() if state else None

    def open_circuits(self) -> list[str]:
        now = self.clock.now_ms()
        return sorted(k for k, s in self._breakers.items() if s.is_blocking(now))

    def reset_circuit(self, operation_key: str) -> None:
        """Force a breaker back to closed (manual operator intervention)."""
        state = self._breakers.get(operation_key)
        if state is not None:
            state.reset()
            self.log.info("circuit reset", operation_key=operation_key)

    # ---- execution

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_key: str,
        policy: RetryPolicy | None = None,
        *,
        classifier: Classifier | None = None,
    ) -> T:
        """
        Run `operation` under the breaker for `operation_key`, retrying
        transient failures per `policy`.

        Raises:
            CircuitOpenError: the breaker is open; `operation` was not invoked.
            Exception: the operation's last failure once it is not retryable or
                retries are exhausted (annotated with key and attempt count).
        """
        policy = policy or self.default_policy
        classify = classifier or self.classifier
        breaker = self._breaker(operation_key)

        if not breaker.admit(self.clock.now_ms()):
            self.log.warning(
                "circuit open; call rejected", operation_key=operation_key, open_until_ms=breaker.open_until_ms
            )
            raise CircuitOpenError(operation_key, breaker.open_until_ms)

        attempt = 1
        with log_context(operation_key=operation_key):
            while True:
                try:
                    result = await operation()
                except Exception as exc:
                    kind = classify(exc)
                    if breaker.status is CircuitStatus.half_open:
                        breaker.record_failure(self.clock.now_ms())
                        self.log.warning(
                            "half-open probe failed; circuit reopened",
                            attempt=attempt,
                            error_kind=kind.value,
                            open_until_ms=breaker.open_until_ms,
                        )
                        self._annotate(exc, operation_key, attempt)
                        raise

                    if kind is not ErrorKind.TRANSIENT or attempt > policy.max_retries:
                        breaker.record_failure(self.clock.now_ms())
                        self.log.error(
                            "operation failed; not retrying",
                            attempt=attempt,
                            max_retries=policy.max_retries,
                            error_kind=kind.value,
                            circuit=breaker.status.value,
                            exc_info=exc,
                        )
                        self._annotate(exc, operation_key, attempt)
                        raise

                    delay = policy.delay_ms(attempt, self.rng)
                    self.log.warning(
                        "transient failure; retrying",
                        attempt=attempt,
                        max_retries=policy.max_retries,
                        delay_ms=int(delay),
                        reason=str(exc),
                    )
                    await self.clock.sleep_ms(int(delay))
                    attempt += 1
                    continue

                breaker.record_success(self.clock.now_ms())
                if attempt > 1:
                    self.log.info("operation succeeded after retries", attempt=attempt)
                return result

    @staticmethod
    def _annotate(exc: BaseException, operation_key: str, attempt: int) -> None:
        exc.add_note(f"relaykit: operation_key={operation_key} attempts={attempt}")
