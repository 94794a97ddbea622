# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
DB-agnostic storage interfaces used by the transport and the dedup guard.
"""

from .dedup import DedupStore
from .locks import LockStore

__all__ = [
    "DedupStore",
    "LockStore",
]
