# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Destination-side pump: receive -> dedup -> handler -> mark processed -> complete.

Handler failures are classified with the same `ErrorKind` taxonomy the
executor uses:
- PERMANENT: the message is dead-lettered with the exception as reason,
- anything else: the message is abandoned for redelivery (the transport
  dead-letters it instead once the delivery ceiling is reached).

Duplicate detection is scoped to the destination: the dedup key is built from
`<interface>/<subscription>`, so destinations sharing one dedup store each
process their own copy of a fanned-out record.

`run()` keeps polling until stopped, pauses while the subscription's circuit
is open and survives transient receive failures.
"""

import asyncio
from collections.abc import Awaitable, Callable
from uuid import UUID

from pydantic import BaseModel

from ..api.errors import CircuitOpenError, ErrorKind, MessageLockLost, classify_error
from ..core.logging import get_logger, log_context
from ..core.time import Clock, SystemClock
from ..dedup.guard import DeduplicationGuard, generate_key
from ..protocol.messages import Message
from ..transport.message_transport import MessageTransport

Handler = Callable[[Message], Awaitable[None]]

# Upper bound for error text carried back to the broker.
_MAX_REASON_LEN = 512


class PumpResult(BaseModel):
    received: int = 0
    completed: int = 0
    duplicates: int = 0
    abandoned: int = 0
    dead_lettered: int = 0


class DestinationPump:
    def __init__(
        self,
        transport: MessageTransport,
        handler: Handler,
        *,
        interface_name: str,
        destination_instance_id: UUID | str,
        dedup: DeduplicationGuard | None = None,
        classifier: Callable[[BaseException], ErrorKind] | None = None,
        max_messages: int | None = None,
        idle_sleep_ms: int = 0,
        clock: Clock | None = None,
    ) -> None:
        self.transport = transport
        self.handler = handler
        self.interface_name = interface_name
        self.destination_instance_id = destination_instance_id
        self.dedup = dedup
        self.classifier = classifier or classify_error
        self.max_messages = max_messages
        self.idle_sleep_ms = idle_sleep_ms
        self.clock: Clock = clock or SystemClock()
        self.adapter_name = f"{interface_name}-destination"
        self.dedup_scope = f"{interface_name}/{transport.subscription_name(destination_instance_id)}"
        self.log = get_logger("adapters.destination")
        self._registered = False

    async def start(self) -> None:
        if not self._registered:
            await self.transport.register_destination(self.interface_name, self.destination_instance_id)
            self._registered = True

    async def run_once(self) -> PumpResult:
        """Receive one batch and settle every message in it."""
        await self.start()
        result = PumpResult()
        messages = await self.transport.receive(self.interface_name, self.destination_instance_id, self.max_messages)
        result.received = len(messages)
        for m in messages:
            with log_context(message_id=m.message_id, interface_name=m.interface_name):
                await self._process(m, result)
        return result

    async def _process(self, m: Message, result: PumpResult) -> None:
        key = generate_key(m.record, self.dedup_scope, m.adapter_instance_id)
        if self.dedup is not None and await self.dedup.is_duplicate(key):
            self.log.info("duplicate message; completing without processing")
            if await self._settle(self.transport.complete(m.message_id, m.lock_token or "")):
                result.duplicates += 1
            return

        try:
            await self.handler(m)
        except Exception as exc:
            kind = self.classifier(exc)
            reason = str(exc)[:_MAX_REASON_LEN]
            if kind is ErrorKind.PERMANENT:
                self.log.error("handler failed permanently; dead-lettering", error_kind=kind.value, exc_info=exc)
                if await self._settle(
                    self.transport.dead_letter(
                        m.message_id, m.lock_token or "", type(exc).__name__, description=reason
                    )
                ):
                    result.dead_lettered += 1
                return
            self.log.warning(
                "handler failed; abandoning for redelivery",
                error_kind=kind.value,
                delivery_count=m.delivery_count,
                reason=reason,
            )
            if await self._settle(self.transport.abandon(m.message_id, m.lock_token or "", {"LastError": reason})):
                if m.delivery_count >= self.transport.max_delivery_count:
                    result.dead_lettered += 1
                else:
                    result.abandoned += 1
            return

        if self.dedup is not None:
            await self.dedup.mark_processed(key, m.interface_name, m.adapter_name)
        if await self._settle(self.transport.complete(m.message_id, m.lock_token or "")):
            result.completed += 1

    async def _settle(self, op: Awaitable[None]) -> bool:
        try:
            await op
        except MessageLockLost:
            self.log.warning("lock lost before settlement; broker will redeliver")
            return False
        return True

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Poll until `stop` is set (or the task is cancelled)."""
        stop = stop or asyncio.Event()
        await self.start()
        self.log.info("destination pump started", interface_name=self.interface_name)
        while not stop.is_set():
            try:
                result = await self.run_once()
            except CircuitOpenError as e:
                pause = max(self.idle_sleep_ms, e.open_until_ms - self.clock.now_ms(), 1)
                self.log.warning("circuit open; pausing receive", operation_key=e.operation_key, pause_ms=pause)
                await self.clock.sleep_ms(pause)
                continue
            except Exception as e:
                if self.classifier(e) is not ErrorKind.TRANSIENT:
                    raise
                # retries are exhausted; the next poll goes through the breaker again
                self.log.warning("receive failed; polling again", error=str(e))
                await self.clock.sleep_ms(max(self.idle_sleep_ms, 1))
                continue
            if result.received == 0 and self.idle_sleep_ms > 0:
                await self.clock.sleep_ms(self.idle_sleep_ms)
        self.log.info("destination pump stopped", interface_name=self.interface_name)
