# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Broker abstraction, back-ends, and the adapter-facing `MessageTransport`.

`KafkaBroker` is imported lazily by callers (`relaykit.transport.kafka_broker`)
so that the in-memory broker can be used without a Kafka client configured.
"""

from .broker import Broker, BrokerMessage, MessageBatch, OutgoingMessage, Receiver
from .memory import InMemoryBatch, InMemoryBroker
from .message_transport import MessageTransport

__all__ = [
    "Broker",
    "BrokerMessage",
    "InMemoryBatch",
    "InMemoryBroker",
    "MessageBatch",
    "MessageTransport",
    "OutgoingMessage",
    "Receiver",
]
