# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Broker abstraction.

This module defines what the transport needs from a publish/subscribe broker
with peek-lock semantics:
- `Broker`: lifecycle, batched send, subscription admin, receiver factory,
  non-destructive peek.
- `Receiver`: a handle bound to one subscription; receives with a lock and
  settles (complete / abandon / dead-letter) by lock token.
- `MessageBatch`: a size-limited, broker-native batch builder.
- `OutgoingMessage` / `BrokerMessage`: outbound and delivered messages.

Implementations raise errors from `relaykit.api.errors` so the executor can
classify them (e.g. `BrokerUnavailable` for connectivity problems,
`MessageLockLost` for stale lock tokens).
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..protocol.messages import CONTENT_TYPE_JSON


@dataclass(frozen=True)
class OutgoingMessage:
    message_id: str
    body: bytes
    properties: Mapping[str, str] = field(default_factory=dict)
    subject: str | None = None
    content_type: str = CONTENT_TYPE_JSON

    def approx_size(self) -> int:
        """Body plus property bytes; what batch limits are checked against."""
        props = sum(len(k.encode("utf-8")) + len(str(v).encode("utf-8")) for k, v in self.properties.items())
        return len(self.body) + props + len(self.message_id) + len(self.subject or "")


@dataclass(frozen=True)
class BrokerMessage:
    """
    A message as delivered (peek-locked) or peeked from the broker.

    Attributes:
        message_id: Producer-assigned id.
        body: Raw payload bytes.
        properties: Application properties.
        enqueued_at_ms: Broker enqueue timestamp.
        delivery_count: 1 on first delivery; 0 for peeked messages.
        lock_token: Present only for peek-locked deliveries.
        locked_until_ms: Lock expiry for peek-locked deliveries.
        raw: Backend-specific object (e.g. a Kafka record) for settlement.
    """

    message_id: str
    body: bytes
    properties: Mapping[str, str]
    enqueued_at_ms: int
    delivery_count: int = 0
    lock_token: str | None = None
    locked_until_ms: int | None = None
    raw: Any = None


@runtime_checkable
class MessageBatch(Protocol):
    @property
    def count(self) -> int: ...

    def try_add(self, message: OutgoingMessage) -> bool:
        """Append if it fits; return False (batch unchanged) when it does not."""
        ...


@runtime_checkable
class Receiver(Protocol):
    """Peek-lock receiver bound to one topic subscription."""

    topic: str
    subscription: str

    async def receive(self, max_messages: int, *, wait_ms: int) -> list[BrokerMessage]: ...
    async def complete(self, message: BrokerMessage) -> None: ...
    async def abandon(self, message: BrokerMessage, properties: Mapping[str, Any] | None = None) -> None: ...
    async def dead_letter(self, message: BrokerMessage, *, reason: str, description: str | None = None) -> None: ...
    async def close(self) -> None: ...


@runtime_checkable
class Broker(Protocol):
    """
    Implementations should:
      - provide idempotent `start()`/`stop()`,
      - fan a topic out to every subscription (independent cursors),
      - auto dead-letter after their own max delivery count,
      - keep a per-subscription dead-letter sub-queue.
    """

    async def start(self) -> None: ...
    async def stop(self) -> None: ...

    async def create_batch(self, topic: str) -> MessageBatch: ...
    async def send_batch(self, topic: str, batch: MessageBatch) -> None: ...
    async def send(self, topic: str, messages: Sequence[OutgoingMessage]) -> None: ...

    async def ensure_subscription(self, topic: str, subscription: str) -> None: ...
    async def list_subscriptions(self, topic: str) -> list[str]: ...

    async def open_receiver(self, topic: str, subscription: str, *, prefetch: int = 0) -> Receiver: ...

    async def peek(self, topic: str, max_messages: int) -> list[BrokerMessage]: ...
    async def peek_dead_letters(self, topic: str, subscription: str, max_messages: int) -> list[BrokerMessage]: ...
