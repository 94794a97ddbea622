# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Idempotency keys and duplicate detection.

Lookups hit an in-process cache first and fall back to a durable store.
The store is a side channel: if it fails, the guard logs and reports
"not a duplicate" (fail open), trading occasional double processing for
never blocking delivery.
"""

import logging
from collections.abc import Mapping
from typing import Any

from ..core.logging import get_logger, swallow
from ..core.time import Clock, SystemClock
from ..core.types import HOUR_MS, MINUTE_MS
from ..core.utils import stable_hash
from ..storage.dedup import DedupStore


def generate_key(
    record: Mapping[str, str], interface_name: str, source_adapter_instance_id: Any | None = None
) -> str:
    """
    Deterministic key over (interface, source instance, record). Field order
    in `record` does not matter; the payload is hashed as canonical JSON.
    """
    payload = {
        "interfaceName": interface_name,
        "sourceAdapterInstanceId": str(source_adapter_instance_id) if source_adapter_instance_id is not None else None,
        "record": dict(sorted(record.items())),
    }
    return stable_hash(payload)


class DeduplicationGuard:
    def __init__(
        self,
        store: DedupStore | None = None,
        *,
        clock: Clock | None = None,
        window_ms: int = 24 * HOUR_MS,
        cache_ttl_ms: int = HOUR_MS,
        cleanup_interval_ms: int = 10 * MINUTE_MS,
        logger: logging.LoggerAdapter | None = None,
    ) -> None:
        self.store = store
        self.clock: Clock = clock or SystemClock()
        self.window_ms = window_ms
        self.cache_ttl_ms = cache_ttl_ms
        self.cleanup_interval_ms = cleanup_interval_ms
        self.log = logger or get_logger("dedup")
        self._cache: dict[str, int] = {}
        self._last_cleanup_ms = self.clock.now_ms()

    @classmethod
    def from_config(cls, cfg, store: DedupStore | None = None, *, clock: Clock | None = None) -> DeduplicationGuard:
        return cls(
            store,
            clock=clock,
            window_ms=cfg.dedup_window_ms,
            cache_ttl_ms=cfg.dedup_cache_ttl_ms,
            cleanup_interval_ms=cfg.dedup_cleanup_interval_ms,
        )

    generate_key = staticmethod(generate_key)

    def __len__(self) -> int:
        return len(self._cache)

    def _purge_cache(self, now_ms: int) -> None:
        if now_ms - self._last_cleanup_ms < self.cleanup_interval_ms:
            return
        self._last_cleanup_ms = now_ms
        cutoff = now_ms - self.cache_ttl_ms
        stale = [k for k, seen in self._cache.items() if seen < cutoff]
        for k in stale:
            self._cache.pop(k, None)
        if stale:
            self.log.debug("dedup cache purged", removed=len(stale), remaining=len(self._cache))

    async def is_duplicate(self, key: str, window_ms: int | None = None) -> bool:
        if not key or not key.strip():
            return False
        window = self.window_ms if window_ms is None else window_ms
        now = self.clock.now_ms()
        self._purge_cache(now)

        seen = self._cache.get(key)
        if seen is not None:
            if now - seen < window:
                self.log.debug("duplicate detected in cache", key=key)
                return True
            self._cache.pop(key, None)

        if self.store is None:
            return False

        found = False
        with swallow(
            logger=self.log,
            code="dedup.store.lookup",
            msg="dedup store lookup failed; treating message as new",
            level=logging.WARNING,
            extra={"key": key},
        ):
            found = await self.store.find_recent_hash(key, since_ms=now - window)
        if found:
            self._cache[key] = now
            self.log.debug("duplicate detected in store", key=key)
        return found

    async def mark_processed(self, key: str, interface_name: str, adapter_name: str) -> None:
        if not key or not key.strip():
            return
        now = self.clock.now_ms()
        self._cache[key] = now
        if self.store is None:
            return
        with swallow(
            logger=self.log,
            code="dedup.store.insert",
            msg="dedup store write failed; relying on cache",
            level=logging.WARNING,
            extra={"key": key, "interface_name": interface_name},
        ):
            await self.store.insert_processed_marker(
                key, interface_name=interface_name, adapter_name=adapter_name, created_at_ms=now
            )
