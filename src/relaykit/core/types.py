from __future__ import annotations

"""
relaykit.core.types
===================

Shared type aliases and constants. Keep this module tiny and dependency-free.
"""

from collections.abc import Mapping
from typing import Final

# ---- Time --------------------------------------------------------------------

Millis = int
TimestampMs = int  # wall-clock epoch timestamp (ms)
MonotonicMs = int  # process-local monotonic time (ms)

# ---- Records -----------------------------------------------------------------

Record = Mapping[str, str]  # field name -> value, as produced by adapters

# ---- Constants ---------------------------------------------------------------

TOPIC_PREFIX: Final[str] = "interface-"
SUBSCRIPTION_PREFIX: Final[str] = "destination-"

# Broker payload ceiling with headroom for properties (Service Bus standard tier is 256 KB).
DEFAULT_MAX_MESSAGE_BYTES: Final[int] = 200 * 1024
DEFAULT_BROKER_BATCH_BYTES: Final[int] = 256 * 1024

SECOND_MS: Final[int] = 1000
MINUTE_MS: Final[int] = 60 * SECOND_MS
HOUR_MS: Final[int] = 60 * MINUTE_MS

__all__ = [
    "Millis",
    "TimestampMs",
    "MonotonicMs",
    "Record",
    "TOPIC_PREFIX",
    "SUBSCRIPTION_PREFIX",
    "DEFAULT_MAX_MESSAGE_BYTES",
    "DEFAULT_BROKER_BATCH_BYTES",
    "SECOND_MS",
    "MINUTE_MS",
    "HOUR_MS",
]
