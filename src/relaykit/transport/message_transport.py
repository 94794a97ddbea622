# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
MessageTransport: the adapter-facing API over a peek-lock broker.

Responsibilities:
- name topics per interface and subscriptions per destination instance,
- serialize records into `MessageBody` payloads with metadata properties
  (interface, adapter, content hash, correlation id),
- pack outgoing messages into broker-native batches,
- receive with peek-lock, verify and decode bodies, abandon poison messages,
- own the in-flight table (message id -> lock token + receiver handle) and
  route settlement through the receiver that holds the lock,
- mirror lock state into an optional `LockStore` for crash recovery.

Every broker call runs through `ResilientExecutor`, keyed per topic (send) or
per topic/subscription (receive and settlement). Lock-store failures are
logged and ignored; the broker's lock is authoritative.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from functools import partial
from typing import Any
from uuid import UUID

from pydantic import ValidationError

from ..api.errors import ErrorKind, MessageTooLarge
from ..core.config import TransportConfig
from ..core.logging import get_logger, log_context, swallow
from ..core.time import Clock, SystemClock
from ..core.utils import content_hash, new_id
from ..protocol.messages import (
    PROP_ADAPTER_INSTANCE_ID,
    PROP_ADAPTER_NAME,
    PROP_ADAPTER_TYPE,
    PROP_CORRELATION_ID,
    PROP_INTERFACE_NAME,
    PROP_MESSAGE_HASH,
    AdapterType,
    InFlightLockRecord,
    LockStatus,
    Message,
    MessageBody,
)
from ..resilience.executor import ResilientExecutor
from ..storage.locks import LockStore
from .broker import Broker, BrokerMessage, OutgoingMessage, Receiver

MAX_DELIVERY_REASON = "MaxDeliveryCountExceeded"
LOCK_EXPIRED_REASON = "LockExpired"


@dataclass
class _InFlight:
    message_id: str
    lock_token: str
    receiver: Receiver
    message: BrokerMessage
    interface_name: str
    destination_instance_id: str
    operation_key: str
    delivery_count: int


class MessageTransport:
    def __init__(
        self,
        broker: Broker,
        *,
        executor: ResilientExecutor | None = None,
        lock_store: LockStore | None = None,
        cfg: TransportConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.broker = broker
        self.cfg = cfg or TransportConfig()
        self.clock: Clock = clock or SystemClock()
        self.executor = executor or ResilientExecutor(
            clock=self.clock,
            default_policy=self.cfg.retry_policy(),
            breaker=self.cfg.breaker_settings(),
        )
        self.lock_store = lock_store
        self.max_delivery_count = self.cfg.max_delivery_count
        self.log = get_logger("transport")

        self._receivers: dict[tuple[str, str], Receiver] = {}
        self._receiver_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._in_flight: dict[str, _InFlight] = {}

    # ---- naming

    def topic_name(self, interface_name: str) -> str:
        if not interface_name or not interface_name.strip():
            raise ValueError("interface_name must be a non-empty string")
        return self.cfg.topic_name(interface_name)

    def subscription_name(self, destination_instance_id: UUID | str) -> str:
        if not str(destination_instance_id).strip():
            raise ValueError("destination adapter instance id must not be empty")
        return self.cfg.subscription_name(destination_instance_id)

    def in_flight(self) -> list[str]:
        """Ids of messages received by this transport and not yet settled."""
        return list(self._in_flight)

    # ---- lifecycle

    async def close(self) -> None:
        """Release every receiver handle; unsettled locks return to the broker on expiry."""
        receivers = list(self._receivers.values())
        self._receivers.clear()
        self._in_flight.clear()
        for r in receivers:
            with swallow(
                logger=self.log,
                code="transport.receiver.close",
                msg="receiver close failed",
                level=logging.WARNING,
                extra={"topic": r.topic, "subscription": r.subscription},
            ):
                await r.close()

    async def __aenter__(self) -> MessageTransport:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ---- send

    def _outgoing(
        self,
        interface_name: str,
        adapter_name: str,
        adapter_type: AdapterType | str,
        adapter_instance_id: UUID | str,
        headers: Sequence[str],
        record: Mapping[str, str],
        correlation_id: str | None,
    ) -> OutgoingMessage:
        body = MessageBody(headers=list(headers), record=dict(record)).model_dump_json().encode("utf-8")
        props = {
            PROP_INTERFACE_NAME: interface_name,
            PROP_ADAPTER_NAME: adapter_name,
            PROP_ADAPTER_TYPE: AdapterType(adapter_type).value,
            PROP_ADAPTER_INSTANCE_ID: str(adapter_instance_id),
            PROP_MESSAGE_HASH: content_hash(body),
        }
        if correlation_id:
            props[PROP_CORRELATION_ID] = correlation_id
        return OutgoingMessage(message_id=new_id(), body=body, properties=props, subject=interface_name)

    async def send(
        self,
        interface_name: str,
        adapter_name: str,
        adapter_type: AdapterType | str,
        adapter_instance_id: UUID | str,
        headers: Sequence[str],
        record: Mapping[str, str],
        *,
        correlation_id: str | None = None,
    ) -> str:
        """Publish one record; returns the assigned message id."""
        topic = self.topic_name(interface_name)
        msg = self._outgoing(
            interface_name, adapter_name, adapter_type, adapter_instance_id, headers, record, correlation_id
        )
        with log_context(interface_name=interface_name, message_id=msg.message_id, correlation_id=correlation_id):
            await self.executor.execute(partial(self.broker.send, topic, [msg]), f"send:{topic}")
            self.log.debug("message sent", topic=topic, size=len(msg.body))
        return msg.message_id

    async def send_batch(
        self,
        interface_name: str,
        adapter_name: str,
        adapter_type: AdapterType | str,
        adapter_instance_id: UUID | str,
        headers: Sequence[str],
        records: Sequence[Mapping[str, str]],
        *,
        correlation_id: str | None = None,
    ) -> list[str]:
        """
        Publish `records` in as few broker batches as fit.

        A message that does not fit even an empty batch is skipped and logged
        as a permanent failure; the rest of the records are still sent.
        Returns the ids of the messages that were sent, in input order.
        """
        topic = self.topic_name(interface_name)
        key = f"send:{topic}"
        correlation_id = correlation_id or new_id()
        sent: list[str] = []
        if not records:
            return sent

        with log_context(interface_name=interface_name, correlation_id=correlation_id):
            batch = await self.executor.execute(partial(self.broker.create_batch, topic), key)
            pending: list[str] = []
            skipped = 0
            for record in records:
                msg = self._outgoing(
                    interface_name, adapter_name, adapter_type, adapter_instance_id, headers, record, correlation_id
                )
                if batch.try_add(msg):
                    pending.append(msg.message_id)
                    continue
                if batch.count:
                    await self.executor.execute(partial(self.broker.send_batch, topic, batch), key)
                    sent.extend(pending)
                    pending = []
                    batch = await self.executor.execute(partial(self.broker.create_batch, topic), key)
                    if batch.try_add(msg):
                        pending.append(msg.message_id)
                        continue
                skipped += 1
                self.log.error(
                    "message too large for a broker batch; skipped",
                    message_id=msg.message_id,
                    size=msg.approx_size(),
                    error_kind=MessageTooLarge.error_kind.value,
                )
            if batch.count:
                await self.executor.execute(partial(self.broker.send_batch, topic, batch), key)
                sent.extend(pending)
            self.log.info("batch sent", topic=topic, sent=len(sent), skipped=skipped)
        return sent

    # ---- receive

    async def _receiver(self, topic: str, subscription: str) -> Receiver:
        key = (topic, subscription)
        r = self._receivers.get(key)
        if r is not None:
            return r
        lock = self._receiver_locks.setdefault(key, asyncio.Lock())
        async with lock:
            r = self._receivers.get(key)
            if r is None:
                r = await self.executor.execute(
                    partial(self.broker.open_receiver, topic, subscription, prefetch=self.cfg.receive_max_messages),
                    f"{topic}/{subscription}",
                )
                self._receivers[key] = r
        return r

    @staticmethod
    def _decode(bm: BrokerMessage) -> MessageBody:
        expected = bm.properties.get(PROP_MESSAGE_HASH)
        if expected and expected != content_hash(bm.body):
            raise ValueError("message body does not match its content hash")
        return MessageBody.model_validate_json(bm.body)

    @staticmethod
    def _to_message(bm: BrokerMessage, body: MessageBody, interface_name: str) -> Message:
        props = dict(bm.properties)
        return Message(
            message_id=bm.message_id,
            interface_name=props.get(PROP_INTERFACE_NAME, interface_name),
            adapter_name=props.get(PROP_ADAPTER_NAME, ""),
            adapter_type=props.get(PROP_ADAPTER_TYPE) or None,
            adapter_instance_id=props.get(PROP_ADAPTER_INSTANCE_ID) or None,
            headers=body.headers,
            record=body.record,
            enqueued_at_ms=bm.enqueued_at_ms,
            lock_token=bm.lock_token,
            locked_until_ms=bm.locked_until_ms,
            delivery_count=bm.delivery_count,
            properties=props,
        )

    async def receive(
        self,
        interface_name: str,
        destination_adapter_instance_id: UUID | str,
        max_messages: int | None = None,
    ) -> list[Message]:
        """
        Peek-lock up to `max_messages` from the destination's subscription.

        Undecodable messages are abandoned (not dead-lettered) and left out of
        the result; messages past the delivery ceiling are dead-lettered.
        """
        max_messages = self.cfg.receive_max_messages if max_messages is None else max_messages
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        topic = self.topic_name(interface_name)
        subscription = self.subscription_name(destination_adapter_instance_id)
        key = f"{topic}/{subscription}"

        with log_context(interface_name=interface_name):
            receiver = await self._receiver(topic, subscription)
            raw = await self.executor.execute(
                partial(receiver.receive, max_messages, wait_ms=self.cfg.receive_wait_ms), key
            )
            out: list[Message] = []
            for bm in raw:
                with log_context(message_id=bm.message_id, correlation_id=bm.properties.get(PROP_CORRELATION_ID)):
                    m = await self._accept(bm, receiver, interface_name, str(destination_adapter_instance_id), key)
                if m is not None:
                    out.append(m)
            if raw:
                self.log.debug("messages received", subscription=subscription, received=len(raw), delivered=len(out))
        return out

    async def _accept(
        self, bm: BrokerMessage, receiver: Receiver, interface_name: str, destination_id: str, key: str
    ) -> Message | None:
        try:
            message = self._to_message(bm, self._decode(bm), interface_name)
        except (ValidationError, ValueError) as exc:
            self.log.warning(
                "undecodable message; abandoning for redelivery",
                delivery_count=bm.delivery_count,
                reason=str(exc),
            )
            with swallow(
                logger=self.log,
                code="transport.poison.abandon",
                msg="abandon of undecodable message failed",
                level=logging.WARNING,
            ):
                await self.executor.execute(partial(receiver.abandon, bm, None), key)
            return None

        if bm.delivery_count > self.max_delivery_count:
            self.log.warning(
                "delivery ceiling exceeded; dead-lettering",
                delivery_count=bm.delivery_count,
                max_delivery_count=self.max_delivery_count,
            )
            with swallow(
                logger=self.log,
                code="transport.ceiling.dead_letter",
                msg="proactive dead-letter failed",
                level=logging.WARNING,
            ):
                await self.executor.execute(
                    partial(
                        receiver.dead_letter,
                        bm,
                        reason=MAX_DELIVERY_REASON,
                        description=f"delivery count {bm.delivery_count} exceeds {self.max_delivery_count}",
                    ),
                    key,
                )
            return None

        token = bm.lock_token or ""
        self._in_flight[bm.message_id] = _InFlight(
            message_id=bm.message_id,
            lock_token=token,
            receiver=receiver,
            message=bm,
            interface_name=message.interface_name,
            destination_instance_id=destination_id,
            operation_key=key,
            delivery_count=bm.delivery_count,
        )
        if self.lock_store is not None:
            rec = InFlightLockRecord(
                message_id=bm.message_id,
                lock_token=token,
                topic_name=receiver.topic,
                subscription_name=receiver.subscription,
                interface_name=message.interface_name,
                destination_adapter_instance_id=destination_id,
                locked_until_ms=bm.locked_until_ms or self.clock.now_ms() + self.cfg.lock_duration_ms,
                delivery_count=bm.delivery_count,
                updated_at_ms=self.clock.now_ms(),
            )
            with swallow(
                logger=self.log,
                code="transport.locks.record",
                msg="lock store write failed; continuing without durable lock record",
                level=logging.WARNING,
            ):
                await self.lock_store.record_lock(rec)
        return message

    # ---- settlement

    async def _settle(
        self,
        message_id: str,
        lock_token: str,
        status: LockStatus,
        action: Callable[[Receiver, BrokerMessage], Awaitable[None]],
        *,
        reason: str | None = None,
    ) -> None:
        entry = self._in_flight.get(message_id)
        if entry is None:
            self.log.warning("settlement for a message not held by this transport", message_id=message_id, status=status.value)
            return

        with log_context(message_id=message_id, interface_name=entry.interface_name):
            owner = lock_token == entry.lock_token
            if not owner:
                self.log.warning(
                    "lock token mismatch; deferring to broker",
                    status=status.value,
                    error_kind=ErrorKind.LOCK_MISMATCH.value,
                )
            bm = entry.message if owner else replace(entry.message, lock_token=lock_token)
            try:
                await self.executor.execute(partial(action, entry.receiver, bm), entry.operation_key)
            except BaseException:
                # A failed settlement by the owner still consumes the entry; the
                # broker redelivers once the lock lapses. A refused foreign token
                # leaves the owner's entry in place.
                if owner:
                    self._in_flight.pop(message_id, None)
                raise
            # The broker accepted the settlement, so the message is gone whoever held the token.
            self._in_flight.pop(message_id, None)
            self.log.debug("message settled", status=status.value)

        if self.lock_store is not None:
            with swallow(
                logger=self.log,
                code="transport.locks.update",
                msg="lock store status update failed",
                level=logging.WARNING,
                extra={"message_id": message_id, "status": status.value},
            ):
                await self.lock_store.update_lock_status(message_id, status, reason=reason, now_ms=self.clock.now_ms())

    async def complete(self, message_id: str, lock_token: str) -> None:
        async def _complete(r: Receiver, bm: BrokerMessage) -> None:
            await r.complete(bm)

        await self._settle(message_id, lock_token, LockStatus.completed, _complete)

    async def abandon(
        self, message_id: str, lock_token: str, properties_to_modify: Mapping[str, Any] | None = None
    ) -> None:
        """Release the lock for redelivery; at the delivery ceiling the message is dead-lettered instead."""
        entry = self._in_flight.get(message_id)
        if entry is not None and entry.delivery_count >= self.max_delivery_count:
            await self.dead_letter(
                message_id,
                lock_token,
                MAX_DELIVERY_REASON,
                description=f"abandoned at delivery {entry.delivery_count} of {self.max_delivery_count}",
            )
            return

        async def _abandon(r: Receiver, bm: BrokerMessage) -> None:
            await r.abandon(bm, properties_to_modify)

        await self._settle(message_id, lock_token, LockStatus.abandoned, _abandon)

    async def dead_letter(self, message_id: str, lock_token: str, reason: str, *, description: str | None = None) -> None:
        async def _dead_letter(r: Receiver, bm: BrokerMessage) -> None:
            await r.dead_letter(bm, reason=reason, description=description)

        await self._settle(message_id, lock_token, LockStatus.dead_lettered, _dead_letter, reason=reason)

    # ---- inspection

    def _decode_all(self, raw: Sequence[BrokerMessage], interface_name: str) -> list[Message]:
        out: list[Message] = []
        for bm in raw:
            try:
                out.append(self._to_message(bm, self._decode(bm), interface_name))
            except (ValidationError, ValueError):
                self.log.debug("skipping undecodable message in peek", message_id=bm.message_id)
        return out

    async def get_recent_messages(self, interface_name: str, max_messages: int = 10) -> list[Message]:
        """Non-destructive peek at the interface topic; nothing is locked or consumed."""
        topic = self.topic_name(interface_name)
        raw = await self.executor.execute(partial(self.broker.peek, topic, max_messages), f"peek:{topic}")
        return self._decode_all(raw, interface_name)

    async def get_dead_letters(
        self, interface_name: str, destination_adapter_instance_id: UUID | str, max_messages: int = 100
    ) -> list[Message]:
        topic = self.topic_name(interface_name)
        subscription = self.subscription_name(destination_adapter_instance_id)
        raw = await self.executor.execute(
            partial(self.broker.peek_dead_letters, topic, subscription, max_messages), f"peek:{topic}/{subscription}"
        )
        return self._decode_all(raw, interface_name)

    # ---- admin

    async def register_destination(self, interface_name: str, destination_adapter_instance_id: UUID | str) -> str:
        """Provision the subscription for a destination instance; returns its name."""
        topic = self.topic_name(interface_name)
        subscription = self.subscription_name(destination_adapter_instance_id)
        await self.executor.execute(partial(self.broker.ensure_subscription, topic, subscription), f"admin:{topic}")
        self.log.info("destination registered", interface_name=interface_name, subscription=subscription)
        return subscription

    async def list_destinations(self, interface_name: str) -> list[str]:
        """Destination instance ids with a subscription on the interface topic."""
        topic = self.topic_name(interface_name)
        subs = await self.executor.execute(partial(self.broker.list_subscriptions, topic), f"admin:{topic}")
        prefix = self.cfg.subscription_prefix
        return [s[len(prefix):] for s in subs if s.startswith(prefix)]

    async def recover_stale_locks(self, limit: int = 100) -> list[InFlightLockRecord]:
        """
        Mark lock records whose lock expired without settlement (typically left
        behind by a crashed process) as Expired. The broker has already made
        those messages visible again; this only reconciles the bookkeeping.
        """
        if self.lock_store is None:
            return []
        now = self.clock.now_ms()
        stale: list[InFlightLockRecord] = []
        with swallow(
            logger=self.log,
            code="transport.locks.scan",
            msg="lock store scan failed",
            level=logging.WARNING,
        ):
            stale = await self.lock_store.find_expired_locks(now_ms=now, limit=limit)

        for rec in stale:
            entry = self._in_flight.get(rec.message_id)
            if entry is not None and entry.lock_token == rec.lock_token:
                self._in_flight.pop(rec.message_id, None)
            with swallow(
                logger=self.log,
                code="transport.locks.expire",
                msg="lock store status update failed",
                level=logging.WARNING,
                extra={"message_id": rec.message_id},
            ):
                await self.lock_store.update_lock_status(
                    rec.message_id, LockStatus.expired, reason=LOCK_EXPIRED_REASON, now_ms=now
                )
        if stale:
            self.log.info("stale locks recovered", count=len(stale))
        return stale
