# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
In-process broker with peek-lock semantics.

Behaves like a managed topic/subscription service, scaled down:
- a topic fans out a copy of every message to each subscription,
- receive locks messages for `lock_duration_ms`; expired locks return the
  message to the subscription,
- abandon and lock expiry count against `max_delivery_count`, after which the
  message moves to the subscription's dead-letter sub-queue,
- batches are limited to `max_batch_bytes`,
- each topic keeps a bounded log of recent messages for non-destructive peek.

Intended for local runs and tests; state lives only in memory.
"""

import asyncio
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..api.errors import MessageLockLost, MessagingEntityNotFound, PermanentError
from ..core.logging import get_logger
from ..core.time import Clock, SystemClock
from ..core.types import DEFAULT_BROKER_BATCH_BYTES
from ..core.utils import new_id
from ..protocol.messages import PROP_DEAD_LETTER_DESCRIPTION, PROP_DEAD_LETTER_REASON
from .broker import Broker, BrokerMessage, MessageBatch, OutgoingMessage, Receiver

MAX_DELIVERY_REASON = "MaxDeliveryCountExceeded"


@dataclass
class _Stored:
    message_id: str
    body: bytes
    properties: dict[str, str]
    enqueued_at_ms: int
    delivery_count: int = 0
    lock_token: str | None = None
    locked_until_ms: int | None = None

    def view(self) -> BrokerMessage:
        return BrokerMessage(
            message_id=self.message_id,
            body=self.body,
            properties=dict(self.properties),
            enqueued_at_ms=self.enqueued_at_ms,
            delivery_count=self.delivery_count,
            lock_token=self.lock_token,
            locked_until_ms=self.locked_until_ms,
        )


@dataclass
class _Subscription:
    name: str
    ready: deque[_Stored] = field(default_factory=deque)
    locked: dict[str, _Stored] = field(default_factory=dict)
    dead: list[_Stored] = field(default_factory=list)
    signal: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class _Topic:
    name: str
    subscriptions: dict[str, _Subscription] = field(default_factory=dict)
    log: deque[_Stored] = field(default_factory=deque)


class InMemoryBatch(MessageBatch):
    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max_bytes
        self.messages: list[OutgoingMessage] = []
        self.size_bytes = 0

    @property
    def count(self) -> int:
        return len(self.messages)

    def try_add(self, message: OutgoingMessage) -> bool:
        size = message.approx_size()
        if self.size_bytes + size > self.max_bytes:
            return False
        self.messages.append(message)
        self.size_bytes += size
        return True


class InMemoryBroker(Broker):
    def __init__(
        self,
        *,
        clock: Clock | None = None,
        lock_duration_ms: int = 60_000,
        max_delivery_count: int = 10,
        max_batch_bytes: int = DEFAULT_BROKER_BATCH_BYTES,
        retain_per_topic: int = 1000,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.lock_duration_ms = lock_duration_ms
        self.max_delivery_count = max_delivery_count
        self.max_batch_bytes = max_batch_bytes
        self.retain_per_topic = retain_per_topic
        self._topics: dict[str, _Topic] = {}
        self._receivers: list[_InMemoryReceiver] = []
        self.log = get_logger("transport.memory")

    # ---- lifecycle

    async def start(self) -> None:
        return

    async def stop(self) -> None:
        for r in list(self._receivers):
            await r.close()
        self._receivers.clear()

    def reset(self) -> None:
        """Drop all topics, subscriptions and messages."""
        self._topics.clear()

    # ---- admin

    def _topic(self, topic: str) -> _Topic:
        t = self._topics.get(topic)
        if t is None:
            t = self._topics.setdefault(topic, _Topic(topic, log=deque(maxlen=self.retain_per_topic)))
        return t

    def _subscription(self, topic: str, subscription: str) -> _Subscription:
        t = self._topics.get(topic)
        sub = t.subscriptions.get(subscription) if t else None
        if sub is None:
            raise MessagingEntityNotFound(f"subscription {topic}/{subscription} does not exist")
        return sub

    async def ensure_subscription(self, topic: str, subscription: str) -> None:
        t = self._topic(topic)
        if subscription not in t.subscriptions:
            t.subscriptions[subscription] = _Subscription(subscription)
            self.log.debug("subscription created", topic=topic, subscription=subscription)

    async def list_subscriptions(self, topic: str) -> list[str]:
        t = self._topics.get(topic)
        return sorted(t.subscriptions) if t else []

    # ---- send

    async def create_batch(self, topic: str) -> InMemoryBatch:
        return InMemoryBatch(self.max_batch_bytes)

    async def send_batch(self, topic: str, batch: MessageBatch) -> None:
        if not isinstance(batch, InMemoryBatch):
            raise PermanentError("batch was not created by this broker")
        await self.send(topic, batch.messages)

    async def send(self, topic: str, messages: Sequence[OutgoingMessage]) -> None:
        t = self._topic(topic)
        now = self.clock.now_ms()
        for m in messages:
            if m.approx_size() > self.max_batch_bytes:
                raise PermanentError(f"message {m.message_id} exceeds {self.max_batch_bytes} bytes")
            stored = _Stored(m.message_id, m.body, dict(m.properties), now)
            t.log.append(stored)
            for sub in t.subscriptions.values():
                sub.ready.append(_Stored(m.message_id, m.body, dict(m.properties), now))
                sub.signal.set()

    # ---- receive

    async def open_receiver(self, topic: str, subscription: str, *, prefetch: int = 0) -> _InMemoryReceiver:
        self._subscription(topic, subscription)
        r = _InMemoryReceiver(self, topic, subscription)
        self._receivers.append(r)
        return r

    def _dead_letter(self, sub: _Subscription, stored: _Stored, reason: str, description: str | None) -> None:
        stored.lock_token = None
        stored.locked_until_ms = None
        stored.properties[PROP_DEAD_LETTER_REASON] = reason
        if description:
            stored.properties[PROP_DEAD_LETTER_DESCRIPTION] = description
        sub.dead.append(stored)
        self.log.info("message dead-lettered", message_id=stored.message_id, subscription=sub.name, reason=reason)

    def _release(self, sub: _Subscription, stored: _Stored) -> None:
        """Return a message whose lock ended without completion."""
        stored.lock_token = None
        stored.locked_until_ms = None
        if stored.delivery_count >= self.max_delivery_count:
            self._dead_letter(sub, stored, MAX_DELIVERY_REASON, f"delivery count {stored.delivery_count}")
            return
        sub.ready.append(stored)
        sub.signal.set()

    def _expire_locks(self, sub: _Subscription) -> None:
        now = self.clock.now_ms()
        for token, stored in list(sub.locked.items()):
            if stored.locked_until_ms is not None and stored.locked_until_ms <= now:
                del sub.locked[token]
                self._release(sub, stored)

    def _take(self, sub: _Subscription, max_messages: int) -> list[BrokerMessage]:
        self._expire_locks(sub)
        now = self.clock.now_ms()
        out: list[BrokerMessage] = []
        while sub.ready and len(out) < max_messages:
            stored = sub.ready.popleft()
            stored.delivery_count += 1
            stored.lock_token = new_id()
            stored.locked_until_ms = now + self.lock_duration_ms
            sub.locked[stored.lock_token] = stored
            out.append(stored.view())
        return out

    def _locked(self, sub: _Subscription, message: BrokerMessage) -> _Stored:
        self._expire_locks(sub)
        stored = sub.locked.pop(message.lock_token or "", None)
        if stored is None:
            raise MessageLockLost(f"lock for message {message.message_id} is not held or has expired")
        return stored

    # ---- peek

    async def peek(self, topic: str, max_messages: int) -> list[BrokerMessage]:
        t = self._topics.get(topic)
        if t is None or max_messages <= 0:
            return []
        return [s.view() for s in list(t.log)[-max_messages:]]

    async def peek_dead_letters(self, topic: str, subscription: str, max_messages: int) -> list[BrokerMessage]:
        sub = self._subscription(topic, subscription)
        return [s.view() for s in sub.dead[:max_messages]]

    # ---- introspection (tests / diagnostics)

    def pending_count(self, topic: str, subscription: str) -> int:
        sub = self._subscription(topic, subscription)
        return len(sub.ready) + len(sub.locked)

    def dead_letter_count(self, topic: str, subscription: str) -> int:
        return len(self._subscription(topic, subscription).dead)


class _InMemoryReceiver(Receiver):
    def __init__(self, broker: InMemoryBroker, topic: str, subscription: str) -> None:
        self.broker = broker
        self.topic = topic
        self.subscription = subscription
        self.closed = False

    def _sub(self) -> _Subscription:
        if self.closed:
            raise PermanentError(f"receiver for {self.topic}/{self.subscription} is closed")
        return self.broker._subscription(self.topic, self.subscription)

    async def receive(self, max_messages: int, *, wait_ms: int) -> list[BrokerMessage]:
        sub = self._sub()
        out = self.broker._take(sub, max_messages)
        if out or wait_ms <= 0:
            return out
        sub.signal.clear()
        try:
            await asyncio.wait_for(sub.signal.wait(), timeout=wait_ms / 1000.0)
        except TimeoutError:
            return []
        return self.broker._take(sub, max_messages)

    async def complete(self, message: BrokerMessage) -> None:
        self.broker._locked(self._sub(), message)

    async def abandon(self, message: BrokerMessage, properties: Mapping[str, Any] | None = None) -> None:
        sub = self._sub()
        stored = self.broker._locked(sub, message)
        if properties:
            stored.properties.update({k: str(v) for k, v in properties.items()})
        self.broker._release(sub, stored)

    async def dead_letter(self, message: BrokerMessage, *, reason: str, description: str | None = None) -> None:
        sub = self._sub()
        stored = self.broker._locked(sub, message)
        self.broker._dead_letter(sub, stored, reason, description)

    async def close(self) -> None:
        self.closed = True
