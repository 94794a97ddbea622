# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
relaykit public error contracts.

Adapters and broker back-ends raise these so the executor can classify
failures by their `error_kind` tag.
"""

from .errors import (
    BrokerUnavailable,
    CircuitOpenError,
    ErrorKind,
    MessageLockLost,
    MessageTooLarge,
    MessagingEntityNotFound,
    PermanentError,
    RelayError,
    RetryableError,
    StoreUnavailable,
    classify_error,
    with_kind,
)

__all__ = [
    "BrokerUnavailable",
    "CircuitOpenError",
    "ErrorKind",
    "MessageLockLost",
    "MessageTooLarge",
    "MessagingEntityNotFound",
    "PermanentError",
    "RelayError",
    "RetryableError",
    "StoreUnavailable",
    "classify_error",
    "with_kind",
]
