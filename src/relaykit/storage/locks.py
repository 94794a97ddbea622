# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Durable lock bookkeeping (DB-agnostic).

The transport writes an `InFlightLockRecord` for every received message and
updates its status on settlement. Correctness depends on the broker's lock
semantics, not on this store: failures here are logged and ignored by the
transport. The records only serve crash recovery (`find_expired_locks`).
"""

from typing import Protocol, runtime_checkable

from ..protocol.messages import InFlightLockRecord, LockStatus

__all__ = ["LockStore"]


@runtime_checkable
class LockStore(Protocol):
    async def record_lock(self, record: InFlightLockRecord) -> None:
        """Insert or refresh the record for `record.message_id` with status Locked."""
        ...

    async def update_lock_status(
        self, message_id: str, status: LockStatus, *, reason: str | None = None, now_ms: int | None = None
    ) -> None:
        """Transition the record to a terminal (or abandoned) status."""
        ...

    async def find_expired_locks(self, *, now_ms: int, limit: int) -> list[InFlightLockRecord]:
        """Return records still marked Locked whose `locked_until_ms` is before `now_ms`."""
        ...
