from __future__ import annotations

"""
relaykit.core.utils
===================

Low-level helpers with no external dependencies:
- Canonical JSON encoding and SHA-256 digests (idempotency keys, content hashes).
- Symmetric jitter driven by an injected random generator.
"""

import json
import random
import uuid
from hashlib import sha256
from typing import Any


def canonical_json(payload: Any) -> bytes:
    """UTF-8 JSON with sorted keys and no whitespace; equal inputs give equal bytes."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def stable_hash(payload: Any) -> str:
    """SHA-256 hex digest of `canonical_json(payload)`."""
    return sha256(canonical_json(payload)).hexdigest()


def content_hash(body: bytes) -> str:
    """SHA-256 hex digest of raw bytes (message body fingerprint)."""
    return sha256(body).hexdigest()


def jitter(base: float, *, fraction: float, rng: random.Random) -> float:
    """
    Return `base` shifted by a uniform offset in [-base*fraction, +base*fraction].

    Examples:
        jitter(1000, fraction=0.1, rng=r) -> value in [900..1100]
    """
    if base <= 0 or fraction <= 0:
        return max(0.0, base)
    span = base * fraction
    return max(0.0, base + rng.uniform(-span, span))


def new_id() -> str:
    """UUID4 string used for message ids and lock tokens."""
    return str(uuid.uuid4())
