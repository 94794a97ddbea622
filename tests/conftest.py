# conftest.py
from __future__ import annotations

import os
import random
import uuid

import pytest
import pytest_asyncio

from relaykit.core.config import TransportConfig
from relaykit.core.logging import (
    bind_context,
    configure_from_env,
    enable_stdout_logging,
    get_logger,
    log_context,
)
from relaykit.core.time import ManualClock
from relaykit.resilience import BreakerSettings, ResilientExecutor, RetryPolicy
from relaykit.transport import InMemoryBroker, MessageTransport
from tests.helpers import InMemDedupStore, InMemLockStore


def pytest_addoption(parser):
    parser.addoption(
        "--log-json",
        action="store_true",
        default=False,
        help="Emit relaykit logs in JSON format during tests",
    )


@pytest.fixture(scope="session", autouse=True)
def _configure_relaykit_logging(request):
    configure_from_env()
    prefer_json = request.config.getoption("--log-json")
    # Unless enabled explicitly through env, print plain text (JSON with --log-json)
    if os.getenv("RELAYKIT_LOG_STDOUT", "").lower() not in ("1", "true", "yes", "on"):
        enable_stdout_logging(level="DEBUG", json_output=prefer_json)
    bind_context(role="pytest")


@pytest.fixture(scope="session")
def session_run_id():
    return uuid.uuid4().hex[:8]


@pytest.fixture(autouse=True)
def _test_log_context(request, session_run_id):
    log = get_logger("test")
    with log_context(pytest_nodeid=request.node.nodeid, test=request.node.name, test_run=session_run_id):
        log.debug("pytest.test.start", event="pytest.test.start")
        yield


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    rep = outcome.get_result()
    if rep.when == "call":
        log = get_logger("test")
        with log_context(pytest_nodeid=item.nodeid, test=item.name):
            log.debug(
                "pytest.test.finish",
                event="pytest.test.finish",
                outcome=rep.outcome,
                duration=getattr(rep, "duration", None),
            )


# ───────────────────────── shared fixtures ─────────────────────────


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def cfg() -> TransportConfig:
    # Short waits so receive never blocks a test on an empty subscription.
    return TransportConfig(receive_wait_sec=0.0, max_delivery_count=3, lock_duration_sec=30.0)


@pytest.fixture
def executor(manual_clock) -> ResilientExecutor:
    return ResilientExecutor(
        clock=manual_clock,
        rng=random.Random(7),
        default_policy=RetryPolicy(max_retries=2, initial_delay_ms=100, use_jitter=False),
        breaker=BreakerSettings(failure_threshold=3, open_duration_ms=10_000, success_threshold=2),
    )


@pytest.fixture
def broker(manual_clock, cfg) -> InMemoryBroker:
    return InMemoryBroker(
        clock=manual_clock,
        lock_duration_ms=cfg.lock_duration_ms,
        max_delivery_count=10,
    )


@pytest.fixture
def lock_store() -> InMemLockStore:
    return InMemLockStore()


@pytest.fixture
def dedup_store() -> InMemDedupStore:
    return InMemDedupStore()


@pytest_asyncio.fixture
async def transport(broker, executor, lock_store, cfg, manual_clock):
    async with MessageTransport(broker, executor=executor, lock_store=lock_store, cfg=cfg, clock=manual_clock) as t:
        yield t
