"""
Source publisher -> transport -> destination pump, over the in-memory broker.
"""

import asyncio
import uuid

import pytest

from relaykit.adapters import DestinationPump, SourcePublisher
from relaykit.api.errors import BrokerUnavailable, PermanentError
from relaykit.batching import AdaptiveBatcher
from relaykit.dedup import DeduplicationGuard
from relaykit.protocol.messages import PROP_DEAD_LETTER_DESCRIPTION, PROP_DEAD_LETTER_REASON
from relaykit.resilience import CircuitStatus
from relaykit.transport import MessageTransport
from tests.helpers import FlakyBroker

pytestmark = [pytest.mark.e2e]

IFACE = "customers"
SOURCE_ID = uuid.UUID("5d2b9c7a-3e61-4f0b-9a55-2c8e7d1f4b10")
DEST = uuid.UUID("c3a1e9f2-7b44-4d8a-a0b6-91e5f3d2c7aa")


def _rows(n: int) -> list[dict[str, str]]:
    return [{"id": str(i), "email": f"user{i}@example.com"} for i in range(n)]


def _publisher(transport, clock, **batcher_kw) -> SourcePublisher:
    batcher = AdaptiveBatcher(clock=clock, **batcher_kw)
    return SourcePublisher(
        transport, batcher, interface_name=IFACE, adapter_name="csv-source", adapter_instance_id=SOURCE_ID, clock=clock
    )


class _Recorder:
    def __init__(self, *errors: BaseException) -> None:
        self.errors = list(errors)
        self.seen: list[str] = []

    async def __call__(self, message) -> None:
        self.seen.append(message.record["id"])
        if self.errors:
            raise self.errors.pop(0)


@pytest.mark.asyncio
async def test_publish_in_adaptive_batches_and_consume(transport, manual_clock):
    handler = _Recorder()
    pump = DestinationPump(transport, handler, interface_name=IFACE, destination_instance_id=DEST, clock=manual_clock)
    await pump.start()

    publisher = _publisher(transport, manual_clock, default_batch_size=4, min_batch_size=1)
    result = await publisher.publish(_rows(10), correlation_id="load-1")

    assert (result.records, result.batches, result.skipped) == (10, 3, 0)
    assert len(result.message_ids) == 10
    metrics = publisher.batcher.metrics(IFACE)
    assert metrics.processed_batches == 3
    assert metrics.total_records_processed == 10

    res = await pump.run_once()
    assert (res.received, res.completed) == (10, 10)
    assert handler.seen == [str(i) for i in range(10)]
    assert transport.in_flight() == []
    assert await transport.list_destinations(IFACE) == [str(DEST)]


@pytest.mark.asyncio
async def test_publish_empty_and_default_headers(transport, manual_clock):
    publisher = _publisher(transport, manual_clock)
    empty = await publisher.publish([])
    assert (empty.records, empty.batches) == (0, 0)

    pump = DestinationPump(transport, _Recorder(), interface_name=IFACE, destination_instance_id=DEST)
    await pump.start()
    await publisher.publish(_rows(1))
    (m,) = await transport.receive(IFACE, DEST)
    assert m.headers == ["id", "email"]


@pytest.mark.asyncio
async def test_failed_batch_is_recorded_and_raised(broker, executor, cfg, manual_clock):
    flaky = FlakyBroker(broker)
    async with MessageTransport(flaky, executor=executor, cfg=cfg, clock=manual_clock) as t:
        publisher = _publisher(t, manual_clock)
        flaky.fail("send_batch", times=None)
        with pytest.raises(BrokerUnavailable):
            await publisher.publish(_rows(3))
    m = publisher.batcher.metrics(IFACE)
    assert (m.failed_batches, m.processed_batches) == (1, 0)


@pytest.mark.asyncio
async def test_transient_handler_failures_end_in_dead_letter(transport, manual_clock, cfg):
    handler = _Recorder(*(TimeoutError("crm timed out") for _ in range(10)))
    pump = DestinationPump(transport, handler, interface_name=IFACE, destination_instance_id=DEST, clock=manual_clock)
    await pump.start()
    await _publisher(transport, manual_clock).publish(_rows(1))

    totals = {"abandoned": 0, "dead_lettered": 0}
    for _ in range(cfg.max_delivery_count + 1):
        res = await pump.run_once()
        totals["abandoned"] += res.abandoned
        totals["dead_lettered"] += res.dead_lettered

    assert totals == {"abandoned": cfg.max_delivery_count - 1, "dead_lettered": 1}
    assert handler.seen == ["0"] * cfg.max_delivery_count
    (dead,) = await transport.get_dead_letters(IFACE, DEST)
    assert dead.properties[PROP_DEAD_LETTER_REASON] == "MaxDeliveryCountExceeded"
    assert dead.properties["LastError"] == "crm timed out"


@pytest.mark.asyncio
async def test_permanent_handler_failure_dead_letters_immediately(transport, manual_clock):
    handler = _Recorder(PermanentError("email rejected by CRM"))
    pump = DestinationPump(transport, handler, interface_name=IFACE, destination_instance_id=DEST, clock=manual_clock)
    await pump.start()
    await _publisher(transport, manual_clock).publish(_rows(2))

    res = await pump.run_once()
    assert (res.received, res.dead_lettered, res.completed) == (2, 1, 1)

    (dead,) = await transport.get_dead_letters(IFACE, DEST)
    assert dead.record["id"] == "0"
    assert dead.properties[PROP_DEAD_LETTER_REASON] == "PermanentError"
    assert dead.properties[PROP_DEAD_LETTER_DESCRIPTION] == "email rejected by CRM"


@pytest.mark.asyncio
async def test_duplicates_are_completed_without_handler(transport, manual_clock, dedup_store):
    handler = _Recorder()
    guard = DeduplicationGuard(dedup_store, clock=manual_clock)
    pump = DestinationPump(
        transport, handler, interface_name=IFACE, destination_instance_id=DEST, dedup=guard, clock=manual_clock
    )
    await pump.start()
    publisher = _publisher(transport, manual_clock)
    await publisher.publish(_rows(2))
    await publisher.publish(_rows(2))

    res = await pump.run_once()
    assert (res.received, res.completed, res.duplicates) == (4, 2, 2)
    assert handler.seen == ["0", "1"]
    assert len(dedup_store.markers) == 2
    assert await transport.receive(IFACE, DEST) == []


@pytest.mark.asyncio
async def test_destinations_sharing_a_dedup_store_each_process_their_copy(transport, manual_clock, dedup_store):
    guard = DeduplicationGuard(dedup_store, clock=manual_clock)
    handlers = {"DA": _Recorder(), "DB": _Recorder()}
    pumps = [
        DestinationPump(
            transport, handler, interface_name=IFACE, destination_instance_id=dest, dedup=guard, clock=manual_clock
        )
        for dest, handler in handlers.items()
    ]
    for pump in pumps:
        await pump.start()
    await _publisher(transport, manual_clock).publish(_rows(1))

    for pump in pumps:
        res = await pump.run_once()
        assert (res.received, res.completed, res.duplicates) == (1, 1, 0)
    assert handlers["DA"].seen == handlers["DB"].seen == ["0"]
    assert len(dedup_store.markers) == 2

    # a republished record is still a duplicate for each of them
    await _publisher(transport, manual_clock).publish(_rows(1))
    for pump in pumps:
        res = await pump.run_once()
        assert (res.received, res.completed, res.duplicates) == (1, 0, 1)
    assert handlers["DA"].seen == handlers["DB"].seen == ["0"]


@pytest.mark.asyncio
async def test_pump_survives_outage_and_pauses_on_open_circuit(broker, executor, cfg, manual_clock):
    flaky = FlakyBroker(broker)
    stop = asyncio.Event()
    seen: list[str] = []

    async def handler(message) -> None:
        seen.append(message.message_id)
        stop.set()

    async with MessageTransport(flaky, executor=executor, cfg=cfg, clock=manual_clock) as t:
        pump = DestinationPump(t, handler, interface_name=IFACE, destination_instance_id=DEST, clock=manual_clock)
        await pump.start()
        (mid,) = await t.send_batch(IFACE, "csv-source", "Source", SOURCE_ID, ["id"], [{"id": "1"}])

        # three exhausted receives (3 attempts each) trip the breaker
        flaky.fail("receive", times=9)
        await asyncio.wait_for(pump.run(stop), timeout=5)

    assert seen == [mid]
    assert flaky.calls["receive"] == 10
    # waited out the open circuit instead of hammering the broker
    assert max(manual_clock.sleeps) > 9_000
    key = f"interface-{IFACE}/destination-{DEST}"
    assert executor.circuit_state(key).status is CircuitStatus.closed
