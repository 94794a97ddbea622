# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Source-side publishing: split records with the adaptive batcher and push each
batch through the transport, feeding timings back into the batcher.
"""

from collections.abc import Mapping, Sequence
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from ..batching.adaptive import AdaptiveBatcher, estimate_record_size
from ..core.logging import get_logger, log_context
from ..core.time import Clock, SystemClock
from ..core.utils import new_id
from ..protocol.messages import AdapterType
from ..transport.message_transport import MessageTransport


class PublishResult(BaseModel):
    interface_name: str
    correlation_id: str
    records: int = 0
    batches: int = 0
    skipped: int = 0
    message_ids: list[str] = Field(default_factory=list)


class SourcePublisher:
    def __init__(
        self,
        transport: MessageTransport,
        batcher: AdaptiveBatcher,
        *,
        interface_name: str,
        adapter_name: str,
        adapter_instance_id: UUID | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.transport = transport
        self.batcher = batcher
        self.interface_name = interface_name
        self.adapter_name = adapter_name
        self.adapter_instance_id = adapter_instance_id or uuid4()
        self.clock: Clock = clock or SystemClock()
        self.log = get_logger("adapters.source")

    async def publish(
        self,
        records: Sequence[Mapping[str, str]],
        headers: Sequence[str] | None = None,
        *,
        correlation_id: str | None = None,
    ) -> PublishResult:
        """
        Publish `records` in adaptive batches. Headers default to the keys of
        the first record. A failing batch is recorded as failed in the batcher
        and its error propagates; earlier batches stay published.
        """
        result = PublishResult(interface_name=self.interface_name, correlation_id=correlation_id or new_id())
        if not records:
            return result
        hdrs = list(headers) if headers is not None else list(records[0].keys())
        avg_size = sum(estimate_record_size(r) for r in records) // len(records)
        size = self.batcher.get_optimal_batch_size(self.interface_name, average_record_size_bytes=avg_size)

        with log_context(interface_name=self.interface_name, correlation_id=result.correlation_id):
            for batch in self.batcher.create_batches(records, self.interface_name, max_batch_size=size):
                started = self.clock.mono_ms()
                try:
                    ids = await self.transport.send_batch(
                        self.interface_name,
                        self.adapter_name,
                        AdapterType.source,
                        self.adapter_instance_id,
                        hdrs,
                        batch,
                        correlation_id=result.correlation_id,
                    )
                except Exception:
                    self.batcher.record_batch_performance(
                        self.interface_name, len(batch), self.clock.mono_ms() - started, False
                    )
                    raise
                self.batcher.record_batch_performance(
                    self.interface_name, len(batch), self.clock.mono_ms() - started, True
                )
                result.batches += 1
                result.records += len(batch)
                result.skipped += len(batch) - len(ids)
                result.message_ids.extend(ids)
            self.log.info(
                "records published",
                records=result.records,
                batches=result.batches,
                skipped=result.skipped,
                batch_size=size,
            )
        return result
