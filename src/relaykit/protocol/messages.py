# src/relaykit/protocol/messages.py
from __future__ import annotations

"""
relaykit wire and bookkeeping models
====================================

- `MessageBody`: the serialized broker payload (headers + one record).
- `Message`: what destination adapters receive; body plus broker metadata.
- `InFlightLockRecord`: durable lock bookkeeping used for crash recovery.

Application-level metadata travels as broker message properties (see the
`PROP_*` names) so receivers can filter and verify without decoding the body.
All timestamps are epoch milliseconds (UTC).
"""

from enum import Enum
from typing import Final

from pydantic import BaseModel, ConfigDict, Field

# --------------------------------------------------------------------------- #
# Property names
# --------------------------------------------------------------------------- #

PROP_INTERFACE_NAME: Final[str] = "InterfaceName"
PROP_ADAPTER_NAME: Final[str] = "AdapterName"
PROP_ADAPTER_TYPE: Final[str] = "AdapterType"
PROP_ADAPTER_INSTANCE_ID: Final[str] = "AdapterInstanceId"
PROP_MESSAGE_HASH: Final[str] = "MessageHash"
PROP_CORRELATION_ID: Final[str] = "CorrelationId"
PROP_DEAD_LETTER_REASON: Final[str] = "DeadLetterReason"
PROP_DEAD_LETTER_DESCRIPTION: Final[str] = "DeadLetterErrorDescription"

CONTENT_TYPE_JSON: Final[str] = "application/json"


# --------------------------------------------------------------------------- #
# Enums
# --------------------------------------------------------------------------- #


class AdapterType(str, Enum):
    """Side of the interface an adapter instance sits on."""

    source = "Source"
    destination = "Destination"


class LockStatus(str, Enum):
    """Transport-side life cycle of a received message."""

    locked = "Locked"
    completed = "Completed"
    abandoned = "Abandoned"
    dead_lettered = "DeadLettered"
    expired = "Expired"


# --------------------------------------------------------------------------- #
# Models
# --------------------------------------------------------------------------- #


class MessageBody(BaseModel):
    """Broker payload. Unknown fields are rejected so corrupt bodies fail fast."""

    model_config = ConfigDict(extra="forbid")

    headers: list[str] = Field(default_factory=list)
    record: dict[str, str]


class Message(BaseModel):
    """
    A record delivered to (or peeked by) a destination adapter.

    Fields:
        message_id: Broker message id (UUID4 string assigned on send).
        interface_name: Logical interface the record belongs to.
        adapter_name / adapter_type / adapter_instance_id: The publishing adapter;
            the instance id is kept as sent (a UUID string or any label).
        headers: Column headers carried with the record.
        record: Field name -> value.
        enqueued_at_ms: Broker enqueue time.
        lock_token: Peek-lock token; None for peeked (non-locked) messages.
        locked_until_ms: Lock expiry reported by the broker, if any.
        delivery_count: Number of times the broker has delivered this message.
        properties: Raw application properties.
    """

    model_config = ConfigDict(frozen=True)

    message_id: str
    interface_name: str
    adapter_name: str = ""
    adapter_type: AdapterType | None = None
    adapter_instance_id: str | None = None
    headers: list[str] = Field(default_factory=list)
    record: dict[str, str] = Field(default_factory=dict)
    enqueued_at_ms: int = 0
    lock_token: str | None = None
    locked_until_ms: int | None = None
    delivery_count: int = 0
    properties: dict[str, str] = Field(default_factory=dict)


class InFlightLockRecord(BaseModel):
    """Durable copy of a held peek-lock, persisted so a crashed process can be recovered."""

    message_id: str
    lock_token: str
    topic_name: str
    subscription_name: str
    interface_name: str
    destination_adapter_instance_id: str
    locked_until_ms: int
    delivery_count: int = 1
    status: LockStatus = LockStatus.locked
    reason: str | None = None
    updated_at_ms: int | None = None
