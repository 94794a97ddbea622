# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Kafka-backed broker using aiokafka.

Peek-lock semantics are emulated on top of consumer groups:
- one consumer group per subscription (`{topic}.{subscription}`), so every
  subscription has its own cursor over the topic,
- receive hands out a lock token per delivered record; offsets are committed
  only up to the lowest unsettled record of each partition,
- abandon republishes the record to `{topic}.{subscription}.retry` (consumed by
  the same group) with an incremented delivery count header, then settles,
- dead-letter republishes to `{topic}.{subscription}.dlq` with the reason.

Locks do not expire on their own: an unsettled record is redelivered once its
partition is reassigned (consumer restart or rebalance).

Native aiokafka errors are translated into `relaykit.api.errors` using the
`retriable` flag aiokafka attaches to every error class.
"""

import itertools
import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from ..api.errors import BrokerUnavailable, MessageLockLost, MessagingEntityNotFound, PermanentError
from ..core.logging import get_logger, swallow
from ..core.time import Clock, SystemClock
from ..core.utils import new_id
from ..protocol.messages import PROP_DEAD_LETTER_DESCRIPTION, PROP_DEAD_LETTER_REASON
from .broker import Broker, BrokerMessage, MessageBatch, OutgoingMessage, Receiver

HDR_MESSAGE_ID = "relaykit-message-id"
HDR_DELIVERY_COUNT = "relaykit-delivery-count"
HDR_CONTENT_TYPE = "content-type"
HDR_SUBJECT = "subject"
_INTERNAL_HEADERS = frozenset({HDR_MESSAGE_ID, HDR_DELIVERY_COUNT, HDR_CONTENT_TYPE, HDR_SUBJECT})

MAX_DELIVERY_REASON = "MaxDeliveryCountExceeded"


def group_id(topic: str, subscription: str) -> str:
    return f"{topic}.{subscription}"


def retry_topic(topic: str, subscription: str) -> str:
    return f"{topic}.{subscription}.retry"


def dlq_topic(topic: str, subscription: str) -> str:
    return f"{topic}.{subscription}.dlq"


@contextmanager
def _kafka_errors(op: str) -> Iterator[None]:
    """Translate aiokafka errors raised inside the block."""
    try:
        yield
    except KafkaError as e:
        if getattr(e, "retriable", False):
            raise BrokerUnavailable(f"{op}: {e}") from e
        raise PermanentError(f"{op}: {e}") from e


def _headers(properties: Mapping[str, str], **internal: str | None) -> list[tuple[str, bytes]]:
    out = [(k, str(v).encode("utf-8")) for k, v in properties.items()]
    out.extend((k, v.encode("utf-8")) for k, v in internal.items() if v is not None)
    return out


def _outgoing_headers(m: OutgoingMessage, delivery_count: int = 0) -> list[tuple[str, bytes]]:
    return _headers(
        m.properties,
        **{
            HDR_MESSAGE_ID: m.message_id,
            HDR_DELIVERY_COUNT: str(delivery_count),
            HDR_CONTENT_TYPE: m.content_type,
            HDR_SUBJECT: m.subject,
        },
    )


def _decode_headers(rec: Any) -> dict[str, str]:
    out: dict[str, str] = {}
    for k, v in rec.headers or ():
        if isinstance(k, str) and v is not None:
            out[k] = v.decode("utf-8", errors="replace")
    return out


def _to_message(rec: Any, *, lock_token: str | None = None, locked_until_ms: int | None = None) -> BrokerMessage:
    hdrs = _decode_headers(rec)
    previous = int(hdrs.get(HDR_DELIVERY_COUNT, "0") or 0)
    mid = hdrs.get(HDR_MESSAGE_ID) or (rec.key.decode("utf-8") if rec.key else f"{rec.topic}:{rec.partition}:{rec.offset}")
    return BrokerMessage(
        message_id=mid,
        body=rec.value or b"",
        properties={k: v for k, v in hdrs.items() if k not in _INTERNAL_HEADERS},
        enqueued_at_ms=int(rec.timestamp or 0),
        delivery_count=previous + 1 if lock_token else 0,
        lock_token=lock_token,
        locked_until_ms=locked_until_ms,
        raw=rec,
    )


class _KafkaBatch(MessageBatch):
    """
    Wraps aiokafka's BatchBuilder; `append` returns None once the batch is full.
    The builder accepts any first record, so single messages above the
    request size are rejected here instead of failing the whole batch later.
    """

    def __init__(self, builder: Any, max_message_bytes: int) -> None:
        self.builder = builder
        self.max_message_bytes = max_message_bytes
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def try_add(self, message: OutgoingMessage) -> bool:
        if message.approx_size() > self.max_message_bytes:
            return False
        meta = self.builder.append(
            key=message.message_id.encode("utf-8"),
            value=message.body,
            timestamp=None,
            headers=_outgoing_headers(message),
        )
        if meta is None:
            return False
        self._count += 1
        return True


@dataclass
class _PartitionCursor:
    """Outstanding offsets of one partition; commits never pass an unsettled record."""

    outstanding: set[int] = field(default_factory=set)
    next_offset: int = 0

    def commit_point(self) -> int:
        return min(self.outstanding) if self.outstanding else self.next_offset


class KafkaBroker(Broker):
    def __init__(
        self,
        bootstrap: str,
        *,
        clock: Clock | None = None,
        lock_duration_ms: int = 60_000,
        max_delivery_count: int = 10,
        num_partitions: int = 1,
        replication_factor: int = 1,
        peek_timeout_ms: int = 1000,
        max_message_bytes: int = 1024 * 1024,
    ) -> None:
        self.bootstrap = bootstrap
        self.clock: Clock = clock or SystemClock()
        self.lock_duration_ms = lock_duration_ms
        self.max_delivery_count = max_delivery_count
        self.num_partitions = num_partitions
        self.replication_factor = replication_factor
        self.peek_timeout_ms = peek_timeout_ms
        self.max_message_bytes = max_message_bytes
        self._producer: AIOKafkaProducer | None = None
        self._admin: AIOKafkaAdminClient | None = None
        self._receivers: list[_KafkaReceiver] = []
        self._known_subscriptions: set[tuple[str, str]] = set()
        self._partition_rr = itertools.count()
        self.log = get_logger("transport.kafka")

    @classmethod
    def from_config(cls, cfg, *, clock: Clock | None = None) -> KafkaBroker:
        return cls(
            cfg.kafka_bootstrap,
            clock=clock,
            lock_duration_ms=cfg.lock_duration_ms,
            max_delivery_count=cfg.max_delivery_count,
        )

    # ---- lifecycle

    async def start(self) -> None:
        if self._producer is not None:
            return
        with _kafka_errors("start"):
            self._producer = AIOKafkaProducer(bootstrap_servers=self.bootstrap, enable_idempotence=True)
            await self._producer.start()
            self._admin = AIOKafkaAdminClient(bootstrap_servers=self.bootstrap)
            await self._admin.start()

    async def stop(self) -> None:
        for r in list(self._receivers):
            await r.close()
        self._receivers.clear()
        if self._producer:
            with swallow(
                logger=self.log,
                code="broker.kafka.producer.stop",
                msg="producer stop failed",
                level=logging.WARNING,
            ):
                await self._producer.stop()
        if self._admin:
            with swallow(
                logger=self.log,
                code="broker.kafka.admin.stop",
                msg="admin client close failed",
                level=logging.WARNING,
            ):
                await self._admin.close()
        self._producer = None
        self._admin = None

    def _require_producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            raise PermanentError("KafkaBroker is not started; call start() first")
        return self._producer

    # ---- send

    async def create_batch(self, topic: str) -> _KafkaBatch:
        return _KafkaBatch(self._require_producer().create_batch(), self.max_message_bytes)

    async def send_batch(self, topic: str, batch: MessageBatch) -> None:
        if not isinstance(batch, _KafkaBatch):
            raise PermanentError("batch was not created by this broker")
        producer = self._require_producer()
        with _kafka_errors(f"send_batch {topic}"):
            partitions = sorted(await producer.partitions_for(topic))
            partition = partitions[next(self._partition_rr) % len(partitions)]
            fut = await producer.send_batch(batch.builder, topic, partition=partition)
            await fut

    async def send(self, topic: str, messages: Sequence[OutgoingMessage]) -> None:
        producer = self._require_producer()
        with _kafka_errors(f"send {topic}"):
            for m in messages:
                await producer.send_and_wait(
                    topic, value=m.body, key=m.message_id.encode("utf-8"), headers=_outgoing_headers(m)
                )

    async def _republish(self, topic: str, message: BrokerMessage, properties: Mapping[str, str], delivery_count: int) -> None:
        producer = self._require_producer()
        headers = _headers(
            properties,
            **{HDR_MESSAGE_ID: message.message_id, HDR_DELIVERY_COUNT: str(delivery_count)},
        )
        with _kafka_errors(f"republish {topic}"):
            await producer.send_and_wait(
                topic, value=message.body, key=message.message_id.encode("utf-8"), headers=headers
            )

    # ---- admin

    async def _create_topics(self, names: Sequence[str]) -> None:
        if self._admin is None:
            raise PermanentError("KafkaBroker is not started; call start() first")
        with _kafka_errors("create_topics"):
            existing = set(await self._admin.list_topics())
            missing = [
                NewTopic(n, num_partitions=self.num_partitions, replication_factor=self.replication_factor)
                for n in names
                if n not in existing
            ]
            if not missing:
                return
            try:
                await self._admin.create_topics(missing)
            except TopicAlreadyExistsError:
                # Lost a race with another provisioner.
                pass

    async def ensure_subscription(self, topic: str, subscription: str) -> None:
        """
        Create the topic and its retry/dead-letter topics, then pin the group's
        starting position to the current end so the subscription only sees
        messages published from now on.
        """
        if (topic, subscription) in self._known_subscriptions:
            return
        await self._create_topics([topic, retry_topic(topic, subscription), dlq_topic(topic, subscription)])

        c = AIOKafkaConsumer(
            bootstrap_servers=self.bootstrap,
            group_id=group_id(topic, subscription),
            enable_auto_commit=False,
        )
        with _kafka_errors(f"ensure_subscription {topic}/{subscription}"):
            await c.start()
            try:
                await c.topics()
                parts = c.partitions_for_topic(topic) or set()
                tps = [TopicPartition(topic, p) for p in parts]
                if tps:
                    c.assign(tps)
                    ends = await c.end_offsets(tps)
                    fresh = {tp: OffsetAndMetadata(ends[tp], "") for tp in tps if await c.committed(tp) is None}
                    if fresh:
                        await c.commit(fresh)
            finally:
                await c.stop()
        self._known_subscriptions.add((topic, subscription))
        self.log.info("subscription provisioned", topic=topic, subscription=subscription)

    async def list_subscriptions(self, topic: str) -> list[str]:
        if self._admin is None:
            raise PermanentError("KafkaBroker is not started; call start() first")
        prefix = f"{topic}."
        with _kafka_errors("list_consumer_groups"):
            groups = await self._admin.list_consumer_groups()
        names = {g[0][len(prefix):] for g in groups if isinstance(g[0], str) and g[0].startswith(prefix)}
        names.update(s for t, s in self._known_subscriptions if t == topic)
        return sorted(names)

    # ---- receive

    async def open_receiver(self, topic: str, subscription: str, *, prefetch: int = 0) -> _KafkaReceiver:
        if (topic, subscription) not in self._known_subscriptions and subscription not in await self.list_subscriptions(topic):
            raise MessagingEntityNotFound(f"subscription {topic}/{subscription} does not exist")
        c = AIOKafkaConsumer(
            topic,
            retry_topic(topic, subscription),
            bootstrap_servers=self.bootstrap,
            group_id=group_id(topic, subscription),
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            max_poll_records=prefetch or None,
        )
        with _kafka_errors(f"open_receiver {topic}/{subscription}"):
            await c.start()
        r = _KafkaReceiver(self, c, topic, subscription)
        self._receivers.append(r)
        return r

    # ---- peek

    async def _read(self, topic: str, max_messages: int, *, tail: bool) -> list[BrokerMessage]:
        if max_messages <= 0:
            return []
        c = AIOKafkaConsumer(bootstrap_servers=self.bootstrap, group_id=None, enable_auto_commit=False)
        out: list[Any] = []
        with _kafka_errors(f"peek {topic}"):
            await c.start()
            try:
                await c.topics()
                parts = c.partitions_for_topic(topic)
                if not parts:
                    return []
                tps = [TopicPartition(topic, p) for p in parts]
                c.assign(tps)
                begins = await c.beginning_offsets(tps)
                ends = await c.end_offsets(tps)
                remaining = {tp for tp in tps if ends[tp] > begins[tp]}
                for tp in tps:
                    c.seek(tp, max(begins[tp], ends[tp] - max_messages) if tail else begins[tp])
                while remaining:
                    got = await c.getmany(*remaining, timeout_ms=self.peek_timeout_ms)
                    if not got:
                        break
                    for tp, recs in got.items():
                        out.extend(recs)
                        if recs[-1].offset + 1 >= ends[tp] or (not tail and len(out) >= max_messages):
                            remaining.discard(tp)
            finally:
                await c.stop()
        out.sort(key=lambda r: (r.timestamp or 0, r.offset))
        picked = out[-max_messages:] if tail else out[:max_messages]
        return [_to_message(r) for r in picked]

    async def peek(self, topic: str, max_messages: int) -> list[BrokerMessage]:
        return await self._read(topic, max_messages, tail=True)

    async def peek_dead_letters(self, topic: str, subscription: str, max_messages: int) -> list[BrokerMessage]:
        return await self._read(dlq_topic(topic, subscription), max_messages, tail=False)


class _KafkaReceiver(Receiver):
    def __init__(self, broker: KafkaBroker, consumer: AIOKafkaConsumer, topic: str, subscription: str) -> None:
        self.broker = broker
        self.topic = topic
        self.subscription = subscription
        self._c = consumer
        self._locks: dict[str, Any] = {}
        self._forwarded: set[str] = set()
        self._cursors: dict[TopicPartition, _PartitionCursor] = {}
        self.log = broker.log

    async def receive(self, max_messages: int, *, wait_ms: int) -> list[BrokerMessage]:
        with _kafka_errors(f"receive {self.topic}/{self.subscription}"):
            got = await self._c.getmany(timeout_ms=max(0, wait_ms), max_records=max_messages)
        locked_until = self.broker.clock.now_ms() + self.broker.lock_duration_ms
        out: list[BrokerMessage] = []
        for tp, recs in got.items():
            cur = self._cursors.setdefault(tp, _PartitionCursor(next_offset=recs[0].offset))
            for rec in recs:
                token = new_id()
                self._locks[token] = rec
                cur.outstanding.add(rec.offset)
                cur.next_offset = max(cur.next_offset, rec.offset + 1)
                out.append(_to_message(rec, lock_token=token, locked_until_ms=locked_until))
        return out

    def _release(self, message: BrokerMessage) -> Any:
        rec = self._locks.pop(message.lock_token or "", None)
        if rec is None:
            raise MessageLockLost(f"lock for message {message.message_id} is not held by this receiver")
        return rec

    async def _settle(self, token: str, rec: Any) -> None:
        """Commit up to the lowest unsettled offset; a failed commit leaves the lock held."""
        tp = TopicPartition(rec.topic, rec.partition)
        cur = self._cursors[tp]
        cur.outstanding.discard(rec.offset)
        try:
            with _kafka_errors(f"commit {self.topic}/{self.subscription}"):
                await self._c.commit({tp: OffsetAndMetadata(cur.commit_point(), "")})
        except BaseException:
            cur.outstanding.add(rec.offset)
            self._locks[token] = rec
            raise
        self._forwarded.discard(token)

    async def _forward(
        self, token: str, rec: Any, target: str, message: BrokerMessage, props: Mapping[str, str]
    ) -> None:
        # a retried settlement whose copy is already out only needs the commit
        if token in self._forwarded:
            return
        try:
            await self.broker._republish(target, message, props, message.delivery_count)
        except BaseException:
            self._locks[token] = rec
            raise
        self._forwarded.add(token)

    async def complete(self, message: BrokerMessage) -> None:
        await self._settle(message.lock_token or "", self._release(message))

    async def abandon(self, message: BrokerMessage, properties: Mapping[str, Any] | None = None) -> None:
        rec = self._release(message)
        props = dict(message.properties)
        if properties:
            props.update({k: str(v) for k, v in properties.items()})
        if message.delivery_count >= self.broker.max_delivery_count:
            props[PROP_DEAD_LETTER_REASON] = MAX_DELIVERY_REASON
            props[PROP_DEAD_LETTER_DESCRIPTION] = f"delivery count {message.delivery_count}"
            target = dlq_topic(self.topic, self.subscription)
        else:
            target = retry_topic(self.topic, self.subscription)
        token = message.lock_token or ""
        await self._forward(token, rec, target, message, props)
        await self._settle(token, rec)

    async def dead_letter(self, message: BrokerMessage, *, reason: str, description: str | None = None) -> None:
        rec = self._release(message)
        props = dict(message.properties)
        props[PROP_DEAD_LETTER_REASON] = reason
        if description:
            props[PROP_DEAD_LETTER_DESCRIPTION] = description
        token = message.lock_token or ""
        await self._forward(token, rec, dlq_topic(self.topic, self.subscription), message, props)
        await self._settle(token, rec)

    async def close(self) -> None:
        self._locks.clear()
        self._forwarded.clear()
        with swallow(
            logger=self.log,
            code="broker.kafka.consumer.stop",
            msg="consumer stop failed",
            level=logging.WARNING,
        ):
            await self._c.stop()
