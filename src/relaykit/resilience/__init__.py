# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Retry policies, circuit breakers and the executor that combines them.
"""

from .breaker import BreakerSettings, CircuitBreakerState, CircuitStatus
from .executor import ResilientExecutor
from .policy import NO_RETRY, RetryPolicy

__all__ = [
    "BreakerSettings",
    "CircuitBreakerState",
    "CircuitStatus",
    "NO_RETRY",
    "ResilientExecutor",
    "RetryPolicy",
]
