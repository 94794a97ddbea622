# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Error taxonomy for relaykit.

Every failure raised by the library carries an explicit `error_kind` tag.
`ResilientExecutor` reads that tag (through a pluggable classifier) to decide
between retry and surfacing; nothing above the executor inspects exception
subclasses to make that decision.
"""

import asyncio
from enum import Enum
from typing import Any

from pydantic import ValidationError


class ErrorKind(str, Enum):
    """How a failure should be treated by retry and circuit-breaker logic."""

    PERMANENT = "permanent"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"
    CIRCUIT_OPEN = "circuit_open"
    LOCK_MISMATCH = "lock_mismatch"
    STORE_UNAVAILABLE = "store_unavailable"


class RelayError(Exception):
    """Base class for all relaykit errors."""

    error_kind: ErrorKind = ErrorKind.UNKNOWN


class PermanentError(RelayError):
    """
    Bad input, authorization, or missing entity. Retrying would be pointless.
    """

    error_kind = ErrorKind.PERMANENT


class RetryableError(RelayError):
    """
    Timeouts, network faults, broker throttling. The executor may retry.
    """

    error_kind = ErrorKind.TRANSIENT


class BrokerUnavailable(RetryableError):
    """The broker could not be reached or asked the client to back off."""


class MessagingEntityNotFound(PermanentError):
    """Topic or subscription does not exist on the broker."""


class MessageLockLost(PermanentError):
    """The peek-lock presented for settlement is unknown or expired."""


class MessageTooLarge(PermanentError):
    """A single message exceeds the broker's batch/payload limit."""


class StoreUnavailable(RelayError):
    """A durable side-channel store (lock or dedup) failed."""

    error_kind = ErrorKind.STORE_UNAVAILABLE


class CircuitOpenError(RelayError):
    """
    The circuit for `operation_key` is open; the operation was not attempted.
    Callers (adapters) should pause polling until `open_until_ms`.
    """

    error_kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, operation_key: str, open_until_ms: int) -> None:
        super().__init__(f"circuit is open for {operation_key!r} until {open_until_ms}")
        self.operation_key = operation_key
        self.open_until_ms = open_until_ms


# Transient by nature regardless of where they are raised.
_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)

# Malformed input, authorization, not-found.
_PERMANENT_TYPES: tuple[type[BaseException], ...] = (
    ValueError,
    TypeError,
    LookupError,
    PermissionError,
    NotImplementedError,
    ValidationError,
)


def with_kind(exc: BaseException, kind: ErrorKind) -> BaseException:
    """Attach an explicit `error_kind` tag to an arbitrary exception and return it."""
    exc.error_kind = kind  # type: ignore[attr-defined]
    return exc


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Default classifier.

    Order: explicit `error_kind` tag, then well-known transient types, then
    well-known permanent types, otherwise UNKNOWN.
    """
    kind: Any = getattr(exc, "error_kind", None)
    if isinstance(kind, ErrorKind):
        return kind
    if isinstance(exc, _TRANSIENT_TYPES):
        return ErrorKind.TRANSIENT
    if isinstance(exc, _PERMANENT_TYPES):
        return ErrorKind.PERMANENT
    return ErrorKind.UNKNOWN
