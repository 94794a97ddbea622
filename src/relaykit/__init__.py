from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

try:
    __version__ = _pkg_version("relaykit")
except PackageNotFoundError:  # pragma: no cover
    # running from a source tree without an installed distribution
    __version__ = "0.0.0"

from .batching import AdaptiveBatcher
from .core.config import TransportConfig
from .dedup import DeduplicationGuard
from .resilience import ResilientExecutor, RetryPolicy
from .transport import InMemoryBroker, MessageTransport

__all__ = [
    "AdaptiveBatcher",
    "DeduplicationGuard",
    "InMemoryBroker",
    "MessageTransport",
    "ResilientExecutor",
    "RetryPolicy",
    "TransportConfig",
    "__version__",
]
