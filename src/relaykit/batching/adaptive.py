# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Adaptive batch sizing.

The batcher learns, per interface, how many records fit into a batch that
takes roughly `target_ms` to process, and splits record lists into batches
bounded by count, estimated bytes and elapsed wall time.

Only successful batches feed the latency averages. Failed batches are usually
short-circuited and much faster; counting them would drag the estimate down.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace

from ..core.logging import get_logger
from ..core.time import Clock, SystemClock
from ..core.types import DEFAULT_MAX_MESSAGE_BYTES, Record

# Fixed per-record JSON overhead added to the key/value byte count.
RECORD_OVERHEAD_BYTES = 100


@dataclass
class BatchPerformanceMetrics:
    interface_name: str
    optimal_batch_size: int
    processed_batches: int = 0
    failed_batches: int = 0
    total_records_processed: int = 0
    total_processing_ms: float = 0.0
    average_records_per_batch: float = 0.0
    average_processing_ms: float = 0.0


def estimate_record_size(record: Mapping[str, str]) -> int:
    """Rough serialized size: UTF-8 bytes of keys and values plus JSON overhead."""
    size = RECORD_OVERHEAD_BYTES
    for k, v in record.items():
        size += len(k.encode("utf-8")) + len((v or "").encode("utf-8"))
    return size


class AdaptiveBatcher:
    def __init__(
        self,
        *,
        clock: Clock | None = None,
        default_batch_size: int = 100,
        min_batch_size: int = 10,
        max_batch_size: int = 1000,
        target_ms: int = 3000,
        warmup_batches: int = 10,
        max_wait_ms: int = 5000,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
    ) -> None:
        self.clock: Clock = clock or SystemClock()
        self.default_batch_size = default_batch_size
        self.min_batch_size = min_batch_size
        self.max_batch_size = max_batch_size
        self.target_ms = target_ms
        self.warmup_batches = warmup_batches
        self.max_wait_ms = max_wait_ms
        self.max_message_bytes = max_message_bytes
        self._metrics: dict[str, BatchPerformanceMetrics] = {}
        self.log = get_logger("batching")

    @classmethod
    def from_config(cls, cfg, *, clock: Clock | None = None) -> AdaptiveBatcher:
        return cls(
            clock=clock,
            default_batch_size=cfg.batch_default_size,
            min_batch_size=cfg.batch_min_size,
            max_batch_size=cfg.batch_max_size,
            target_ms=cfg.batch_target_ms,
            warmup_batches=cfg.batch_warmup_batches,
            max_wait_ms=cfg.batch_max_wait_ms,
            max_message_bytes=cfg.batch_max_bytes,
        )

    def _entry(self, interface_name: str, default_size: int | None = None) -> BatchPerformanceMetrics:
        m = self._metrics.get(interface_name)
        if m is None:
            m = self._metrics.setdefault(
                interface_name,
                BatchPerformanceMetrics(interface_name, optimal_batch_size=default_size or self.default_batch_size),
            )
        return m

    def metrics(self, interface_name: str) -> BatchPerformanceMetrics | None:
        m = self._metrics.get(interface_name)
        return replace(m) if m else None

    def get_optimal_batch_size(
        self,
        interface_name: str,
        default_size: int | None = None,
        average_record_size_bytes: int | None = None,
    ) -> int:
        m = self._entry(interface_name, default_size)
        previous = m.optimal_batch_size

        if m.processed_batches >= self.warmup_batches and m.average_processing_ms > 0 and m.average_records_per_batch > 0:
            per_record_ms = m.average_processing_ms / m.average_records_per_batch
            if per_record_ms > 0:
                candidate = int(self.target_ms / per_record_ms)
                candidate = max(self.min_batch_size, min(self.max_batch_size, candidate))
                # Move halfway toward the candidate to damp oscillation.
                m.optimal_batch_size = (m.optimal_batch_size + candidate) // 2

        if average_record_size_bytes and average_record_size_bytes > 0:
            by_size = self.max_message_bytes // average_record_size_bytes
            if by_size < m.optimal_batch_size:
                m.optimal_batch_size = max(1, by_size)

        if m.optimal_batch_size != previous:
            self.log.debug(
                "optimal batch size adjusted",
                interface_name=interface_name,
                previous=previous,
                optimal=m.optimal_batch_size,
            )
        return m.optimal_batch_size

    def record_batch_performance(
        self, interface_name: str, record_count: int, processing_ms: float, success: bool
    ) -> None:
        m = self._entry(interface_name)
        if success:
            m.processed_batches += 1
            m.total_records_processed += record_count
            m.total_processing_ms += processing_ms
            m.average_records_per_batch = m.total_records_processed / m.processed_batches
            m.average_processing_ms = m.total_processing_ms / m.processed_batches
        else:
            m.failed_batches += 1

    def create_batches(
        self,
        records: Sequence[Record],
        interface_name: str,
        *,
        max_batch_size: int | None = None,
        max_wait_ms: int | None = None,
        max_batch_size_bytes: int | None = None,
    ) -> list[list[Record]]:
        """
        Greedily split `records`, preserving order. A batch is closed before
        adding a record that would exceed `max_batch_size_bytes`, when it holds
        `max_batch_size` records, or once `max_wait_ms` elapsed since it
        started. A single record larger than the byte limit forms its own batch.
        """
        limit_count = max_batch_size or self.get_optimal_batch_size(interface_name)
        limit_wait = self.max_wait_ms if max_wait_ms is None else max_wait_ms
        limit_bytes = max_batch_size_bytes or self.max_message_bytes

        batches: list[list[Record]] = []
        current: list[Record] = []
        current_bytes = 0
        started = self.clock.mono_ms()

        for rec in records:
            size = estimate_record_size(rec)
            if current and (
                current_bytes + size > limit_bytes
                or len(current) >= limit_count
                or self.clock.mono_ms() - started >= limit_wait
            ):
                batches.append(current)
                current = []
                current_bytes = 0
                started = self.clock.mono_ms()
            current.append(rec)
            current_bytes += size

        if current:
            batches.append(current)

        self.log.debug(
            "batches created", interface_name=interface_name, records=len(records), batches=len(batches)
        )
        return batches
