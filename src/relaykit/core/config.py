from __future__ import annotations

"""
relaykit.core.config
====================

Strongly-typed configuration for the transport and its resilience helpers.
- No external deps; optional JSON file loading.
- Derives millisecond fields from seconds to avoid repeated conversions.
- Small env overrides for container deployments.

If a config file path is not provided or not found, defaults are used.
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .types import DEFAULT_MAX_MESSAGE_BYTES, SUBSCRIPTION_PREFIX, TOPIC_PREFIX

if TYPE_CHECKING:
    from ..resilience.breaker import BreakerSettings
    from ..resilience.policy import RetryPolicy


def _try_load_json(path: Path | None) -> dict[str, Any]:
    if not path:
        return {}
    try:
        if path.exists():
            return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        # Fail soft; env and overrides still apply
        pass
    return {}


def _env_int(name: str) -> int | None:
    val = os.getenv(name)
    if val is None or not val.strip():
        return None
    return int(val)


@dataclass
class TransportConfig:
    """Transport, retry, circuit-breaker, batching and dedup settings."""

    # ---- Broker
    kafka_bootstrap: str = "kafka:9092"
    topic_prefix: str = TOPIC_PREFIX
    subscription_prefix: str = SUBSCRIPTION_PREFIX

    # ---- Receive / locks (seconds)
    lock_duration_sec: float = 60.0
    receive_wait_sec: float = 1.0
    receive_max_messages: int = 10
    max_delivery_count: int = 10

    # ---- Retry policy
    retry_max_retries: int = 5
    retry_initial_delay_sec: float = 1.0
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_sec: float = 300.0
    retry_use_jitter: bool = True
    retry_jitter_fraction: float = 0.1

    # ---- Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_open_sec: float = 60.0
    breaker_success_threshold: int = 2

    # ---- Adaptive batching
    batch_default_size: int = 100
    batch_min_size: int = 10
    batch_max_size: int = 1000
    batch_target_sec: float = 3.0
    batch_max_wait_sec: float = 5.0
    batch_warmup_batches: int = 10
    batch_max_bytes: int = DEFAULT_MAX_MESSAGE_BYTES

    # ---- Deduplication
    dedup_window_sec: float = 24 * 3600.0
    dedup_cache_ttl_sec: float = 3600.0
    dedup_cleanup_interval_sec: float = 600.0

    # ---- Derived (ms)
    lock_duration_ms: int = 0
    receive_wait_ms: int = 0
    retry_initial_delay_ms: int = 0
    retry_max_delay_ms: int = 0
    breaker_open_ms: int = 0
    batch_target_ms: int = 0
    batch_max_wait_ms: int = 0
    dedup_window_ms: int = 0
    dedup_cache_ttl_ms: int = 0
    dedup_cleanup_interval_ms: int = 0

    # ---- Methods ------------------------------------------------------------

    def __post_init__(self) -> None:
        if not self.kafka_bootstrap:
            raise ValueError("kafka_bootstrap must be a non-empty string")
        if self.max_delivery_count < 1:
            raise ValueError("max_delivery_count must be >= 1")
        if self.receive_max_messages < 1:
            raise ValueError("receive_max_messages must be >= 1")
        if not 0 < self.batch_min_size <= self.batch_max_size:
            raise ValueError("batch_min_size must be positive and <= batch_max_size")
        if self.breaker_failure_threshold < 1 or self.breaker_success_threshold < 1:
            raise ValueError("circuit breaker thresholds must be >= 1")
        self._derive_ms()

    def _derive_ms(self) -> None:
        self.lock_duration_ms = int(self.lock_duration_sec * 1000)
        self.receive_wait_ms = int(self.receive_wait_sec * 1000)
        self.retry_initial_delay_ms = int(self.retry_initial_delay_sec * 1000)
        self.retry_max_delay_ms = int(self.retry_max_delay_sec * 1000)
        self.breaker_open_ms = int(self.breaker_open_sec * 1000)
        self.batch_target_ms = int(self.batch_target_sec * 1000)
        self.batch_max_wait_ms = int(self.batch_max_wait_sec * 1000)
        self.dedup_window_ms = int(self.dedup_window_sec * 1000)
        self.dedup_cache_ttl_ms = int(self.dedup_cache_ttl_sec * 1000)
        self.dedup_cleanup_interval_ms = int(self.dedup_cleanup_interval_sec * 1000)

    # Naming helpers
    def topic_name(self, interface_name: str) -> str:
        return f"{self.topic_prefix}{interface_name.lower()}"

    def subscription_name(self, destination_instance_id: Any) -> str:
        return f"{self.subscription_prefix}{str(destination_instance_id).lower()}"

    # Policy builders
    def retry_policy(self) -> RetryPolicy:
        from ..resilience.policy import RetryPolicy

        return RetryPolicy(
            max_retries=self.retry_max_retries,
            initial_delay_ms=self.retry_initial_delay_ms,
            backoff_multiplier=self.retry_backoff_multiplier,
            max_delay_ms=self.retry_max_delay_ms,
            use_jitter=self.retry_use_jitter,
            jitter_fraction=self.retry_jitter_fraction,
        )

    def breaker_settings(self) -> BreakerSettings:
        from ..resilience.breaker import BreakerSettings

        return BreakerSettings(
            failure_threshold=self.breaker_failure_threshold,
            open_duration_ms=self.breaker_open_ms,
            success_threshold=self.breaker_success_threshold,
        )

    # Loader
    @classmethod
    def load(cls, path: Path | str | None = None, *, overrides: dict[str, Any] | None = None) -> TransportConfig:
        """
        Load config from JSON file (if provided), then apply env and overrides.

        Env overrides:
          - KAFKA_BOOTSTRAP_SERVERS
          - RELAYKIT_MAX_DELIVERY_COUNT
          - RELAYKIT_RECEIVE_MAX_MESSAGES
        """
        data: dict[str, Any] = {}
        data.update(_try_load_json(Path(path) if path else None))

        if os.getenv("KAFKA_BOOTSTRAP_SERVERS"):
            data["kafka_bootstrap"] = os.environ["KAFKA_BOOTSTRAP_SERVERS"]
        if (n := _env_int("RELAYKIT_MAX_DELIVERY_COUNT")) is not None:
            data["max_delivery_count"] = n
        if (n := _env_int("RELAYKIT_RECEIVE_MAX_MESSAGES")) is not None:
            data["receive_max_messages"] = n

        if overrides:
            data.update(overrides)

        return cls(**data)
