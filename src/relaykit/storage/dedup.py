# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from typing import Protocol, runtime_checkable

__all__ = ["DedupStore"]


@runtime_checkable
class DedupStore(Protocol):
    """
    Durable store of processed-record markers keyed by idempotency key.

    Implementations typically use a relational table with an index on
    (key, created_at). Keys are opaque strings.
    """

    async def find_recent_hash(self, key: str, *, since_ms: int) -> bool:
        """True if a marker for `key` was created at or after `since_ms`."""
        ...

    async def insert_processed_marker(
        self, key: str, *, interface_name: str, adapter_name: str, created_at_ms: int
    ) -> None:
        """Persist a marker; duplicates are allowed (idempotent for lookups)."""
        ...
