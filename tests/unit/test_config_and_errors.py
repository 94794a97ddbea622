import asyncio
import json
import logging

import pytest
from pydantic import BaseModel, ValidationError

from relaykit.api.errors import (
    BrokerUnavailable,
    CircuitOpenError,
    ErrorKind,
    MessageLockLost,
    StoreUnavailable,
    classify_error,
    with_kind,
)
from relaykit.core.config import TransportConfig
from relaykit.core.logging import JsonFormatter, get_logger, log_context, swallow

pytestmark = [pytest.mark.unit]


# ───────────────────────── config ─────────────────────────


def test_defaults_derive_milliseconds():
    cfg = TransportConfig()
    assert cfg.lock_duration_ms == 60_000
    assert cfg.retry_initial_delay_ms == 1_000
    assert cfg.retry_max_delay_ms == 300_000
    assert cfg.breaker_open_ms == 60_000
    assert cfg.dedup_window_ms == 24 * 3600 * 1000

    policy = cfg.retry_policy()
    assert (policy.max_retries, policy.initial_delay_ms, policy.use_jitter) == (5, 1_000, True)
    breaker = cfg.breaker_settings()
    assert (breaker.failure_threshold, breaker.open_duration_ms, breaker.success_threshold) == (5, 60_000, 2)


def test_entity_names_are_lowercased():
    cfg = TransportConfig()
    assert cfg.topic_name("Orders") == "interface-orders"
    assert cfg.subscription_name("ABC-1") == "destination-abc-1"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"kafka_bootstrap": ""},
        {"max_delivery_count": 0},
        {"receive_max_messages": 0},
        {"batch_min_size": 50, "batch_max_size": 10},
        {"breaker_failure_threshold": 0},
    ],
)
def test_invalid_values_are_rejected(kwargs):
    with pytest.raises(ValueError):
        TransportConfig(**kwargs)


def test_load_file_env_and_overrides(tmp_path, monkeypatch):
    path = tmp_path / "relaykit.json"
    path.write_text(json.dumps({"lock_duration_sec": 5, "max_delivery_count": 4}), encoding="utf-8")
    monkeypatch.setenv("KAFKA_BOOTSTRAP_SERVERS", "broker-1:9092")
    monkeypatch.setenv("RELAYKIT_RECEIVE_MAX_MESSAGES", "25")

    cfg = TransportConfig.load(path, overrides={"max_delivery_count": 7})
    assert cfg.kafka_bootstrap == "broker-1:9092"
    assert cfg.lock_duration_ms == 5_000
    assert cfg.receive_max_messages == 25
    assert cfg.max_delivery_count == 7


def test_load_missing_or_broken_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("KAFKA_BOOTSTRAP_SERVERS", raising=False)
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert TransportConfig.load(broken).kafka_bootstrap == "kafka:9092"
    assert TransportConfig.load(tmp_path / "absent.json").max_delivery_count == 10


# ───────────────────────── error taxonomy ─────────────────────────


class _Strict(BaseModel):
    n: int


def _validation_error() -> ValidationError:
    try:
        _Strict(n="not a number")
    except ValidationError as e:
        return e
    raise AssertionError("expected a validation error")


@pytest.mark.parametrize(
    ("exc", "kind"),
    [
        (BrokerUnavailable("down"), ErrorKind.TRANSIENT),
        (TimeoutError(), ErrorKind.TRANSIENT),
        (asyncio.TimeoutError(), ErrorKind.TRANSIENT),
        (ConnectionResetError(), ErrorKind.TRANSIENT),
        (MessageLockLost("gone"), ErrorKind.PERMANENT),
        (ValueError("bad"), ErrorKind.PERMANENT),
        (KeyError("k"), ErrorKind.PERMANENT),
        (StoreUnavailable("db"), ErrorKind.STORE_UNAVAILABLE),
        (CircuitOpenError("k", 1), ErrorKind.CIRCUIT_OPEN),
        (RuntimeError("?"), ErrorKind.UNKNOWN),
    ],
)
def test_classify_error(exc, kind):
    assert classify_error(exc) is kind


def test_validation_error_is_permanent():
    assert classify_error(_validation_error()) is ErrorKind.PERMANENT


def test_explicit_tag_wins_over_type():
    err = with_kind(ValueError("actually transient"), ErrorKind.TRANSIENT)
    assert classify_error(err) is ErrorKind.TRANSIENT


# ───────────────────────── logging helpers ─────────────────────────


def test_swallow_logs_with_code_and_suppresses(caplog):
    log = get_logger("test.swallow")
    caplog.set_level(logging.WARNING, logger="relaykit")
    with swallow(
        logger=log,
        code="locks.record",
        msg="lock store write failed",
        level=logging.WARNING,
        extra={"message_id": "m1"},
    ):
        raise StoreUnavailable("db down")

    (rec,) = [r for r in caplog.records if getattr(r, "code", None) == "locks.record"]
    assert rec.levelno == logging.WARNING
    assert rec.message_id == "m1"
    assert rec.exc_info[0] is StoreUnavailable


def test_swallow_reraise_and_cancellation():
    with pytest.raises(StoreUnavailable):
        with swallow(code="x", reraise=True):
            raise StoreUnavailable("db")
    with pytest.raises(asyncio.CancelledError):
        with swallow(code="x"):
            raise asyncio.CancelledError()


def test_keyword_fields_and_context_reach_records(caplog):
    log = get_logger("test.fields")
    caplog.set_level(logging.INFO, logger="relaykit")
    with log_context(interface_name="orders"):
        log.info("sent", operation_key="send:interface-orders", name="clash")
        rec = next(r for r in caplog.records if r.getMessage() == "sent")
        out = json.loads(JsonFormatter().format(rec))

    assert rec.operation_key == "send:interface-orders"
    # reserved LogRecord attributes are prefixed instead of overwritten
    assert rec.field_name == "clash"
    assert out["interface_name"] == "orders"
    assert out["logger"] == "relaykit.test.fields"
