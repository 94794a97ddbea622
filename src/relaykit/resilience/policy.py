# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import random
from dataclasses import dataclass

from ..core.utils import jitter


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy, immutable per call site.

    `max_retries` counts retries after the first attempt, so an operation is
    invoked at most `max_retries + 1` times.
    """

    max_retries: int = 5
    initial_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 300_000
    use_jitter: bool = True
    jitter_fraction: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if not 0.0 <= self.jitter_fraction <= 1.0:
            raise ValueError("jitter_fraction must be within [0, 1]")

    def base_delay_ms(self, attempt: int) -> float:
        """Un-jittered delay before retry number `attempt` (1-based)."""
        if attempt <= 0:
            return 0.0
        return min(float(self.max_delay_ms), self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1))

    def delay_ms(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before retry `attempt`, jittered by ±`jitter_fraction` when enabled."""
        base = self.base_delay_ms(attempt)
        if not self.use_jitter:
            return base
        return jitter(base, fraction=self.jitter_fraction, rng=rng or random.Random())


NO_RETRY = RetryPolicy(max_retries=0, use_jitter=False)
