from __future__ import annotations

"""
In-memory LockStore / DedupStore used by tests, with switchable fault injection.
"""

from dataclasses import dataclass, field

from relaykit.api.errors import StoreUnavailable
from relaykit.core.logging import get_logger
from relaykit.protocol.messages import InFlightLockRecord, LockStatus

LOG = get_logger("tests.stores")


@dataclass
class _Faults:
    """Raise StoreUnavailable from the named operations while enabled."""

    failing: set[str] = field(default_factory=set)
    calls: dict[str, int] = field(default_factory=dict)

    def hit(self, op: str) -> None:
        self.calls[op] = self.calls.get(op, 0) + 1
        if op in self.failing or "*" in self.failing:
            LOG.debug("store.fault", event="store.fault", op=op)
            raise StoreUnavailable(f"{op}: store is down")


class InMemLockStore:
    def __init__(self) -> None:
        self.records: dict[str, InFlightLockRecord] = {}
        self.faults = _Faults()

    async def record_lock(self, record: InFlightLockRecord) -> None:
        self.faults.hit("record_lock")
        self.records[record.message_id] = record.model_copy(update={"status": LockStatus.locked})

    async def update_lock_status(
        self, message_id: str, status: LockStatus, *, reason: str | None = None, now_ms: int | None = None
    ) -> None:
        self.faults.hit("update_lock_status")
        rec = self.records.get(message_id)
        if rec is not None:
            self.records[message_id] = rec.model_copy(update={"status": status, "reason": reason, "updated_at_ms": now_ms})

    async def find_expired_locks(self, *, now_ms: int, limit: int) -> list[InFlightLockRecord]:
        self.faults.hit("find_expired_locks")
        out = [r for r in self.records.values() if r.status is LockStatus.locked and r.locked_until_ms < now_ms]
        return out[:limit]

    def status_of(self, message_id: str) -> LockStatus | None:
        rec = self.records.get(message_id)
        return rec.status if rec else None


class InMemDedupStore:
    def __init__(self) -> None:
        self.markers: dict[str, int] = {}
        self.faults = _Faults()

    async def find_recent_hash(self, key: str, *, since_ms: int) -> bool:
        self.faults.hit("find_recent_hash")
        created = self.markers.get(key)
        return created is not None and created >= since_ms

    async def insert_processed_marker(
        self, key: str, *, interface_name: str, adapter_name: str, created_at_ms: int
    ) -> None:
        self.faults.hit("insert_processed_marker")
        self.markers[key] = created_at_ms
