# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Adapter-agnostic wiring between concrete adapters and the transport core.
"""

from .destination import DestinationPump, Handler, PumpResult
from .source import PublishResult, SourcePublisher

__all__ = [
    "DestinationPump",
    "Handler",
    "PublishResult",
    "PumpResult",
    "SourcePublisher",
]
