import pytest

from relaykit.batching import AdaptiveBatcher, estimate_record_size
from relaykit.core.config import TransportConfig
from relaykit.core.time import ManualClock

pytestmark = [pytest.mark.unit]


class _TickingClock(ManualClock):
    """Every monotonic read moves time forward by `step` ms."""

    def __init__(self, step: int) -> None:
        super().__init__()
        self.step = step

    def mono_ms(self):
        self._mono += self.step
        return self._mono


def _records(n: int, width: int = 10) -> list[dict[str, str]]:
    return [{"id": f"{i:04d}", "payload": "x" * width} for i in range(n)]


def test_record_size_estimate_counts_utf8_bytes_plus_overhead():
    assert estimate_record_size({"a": "bc"}) == 103
    assert estimate_record_size({"k": "é"}) == 103
    assert estimate_record_size({}) == 100


def test_default_size_until_warmup(manual_clock):
    b = AdaptiveBatcher(clock=manual_clock, default_batch_size=100, warmup_batches=10)
    for _ in range(9):
        b.record_batch_performance("orders", 100, 1000, True)
    assert b.get_optimal_batch_size("orders") == 100


def test_size_moves_halfway_toward_target(manual_clock):
    b = AdaptiveBatcher(clock=manual_clock, default_batch_size=100, target_ms=3000, warmup_batches=10)
    for _ in range(10):
        # 10 ms per record -> 300 records fit into the 3 s target
        b.record_batch_performance("orders", 100, 1000, True)
    assert b.get_optimal_batch_size("orders") == 200
    assert b.get_optimal_batch_size("orders") == 250


def test_candidate_is_clamped(manual_clock):
    b = AdaptiveBatcher(clock=manual_clock, default_batch_size=100, min_batch_size=10, max_batch_size=1000)
    for _ in range(10):
        # 300 ms per record -> candidate 10 (min clamp)
        b.record_batch_performance("slow", 100, 30_000, True)
    assert b.get_optimal_batch_size("slow") == 55

    for _ in range(10):
        # effectively free -> candidate clamped to 1000
        b.record_batch_performance("fast", 1000, 1, True)
    assert b.get_optimal_batch_size("fast") == 550


def test_failed_batches_do_not_feed_averages(manual_clock):
    b = AdaptiveBatcher(clock=manual_clock)
    b.record_batch_performance("orders", 50, 10, False)
    m = b.metrics("orders")
    assert m.failed_batches == 1
    assert m.processed_batches == 0
    assert m.average_processing_ms == 0


def test_size_constraint_shrinks_batch(manual_clock):
    b = AdaptiveBatcher(clock=manual_clock, default_batch_size=100, max_message_bytes=200 * 1024)
    assert b.get_optimal_batch_size("orders", average_record_size_bytes=4096) == 50
    # a larger default is still bounded by bytes
    assert b.get_optimal_batch_size("other", default_size=500, average_record_size_bytes=1024) == 200


def test_metrics_snapshot_is_a_copy(manual_clock):
    b = AdaptiveBatcher(clock=manual_clock)
    assert b.metrics("unknown") is None
    b.record_batch_performance("orders", 10, 100, True)
    snap = b.metrics("orders")
    snap.processed_batches = 99
    assert b.metrics("orders").processed_batches == 1


def test_create_batches_preserves_order_and_respects_limits(manual_clock):
    b = AdaptiveBatcher(clock=manual_clock)
    recs = _records(95, width=50)
    size = estimate_record_size(recs[0])
    limit_bytes = size * 7 + 1

    batches = b.create_batches(recs, "orders", max_batch_size=10, max_batch_size_bytes=limit_bytes)

    assert [r for batch in batches for r in batch] == recs
    assert all(len(batch) <= 10 for batch in batches)
    assert all(sum(estimate_record_size(r) for r in batch) <= limit_bytes for batch in batches)
    assert [len(batch) for batch in batches][:2] == [7, 7]


def test_create_batches_empty_input(manual_clock):
    assert AdaptiveBatcher(clock=manual_clock).create_batches([], "orders") == []


def test_oversized_record_gets_its_own_batch(manual_clock):
    b = AdaptiveBatcher(clock=manual_clock)
    small = {"id": "1", "v": "x"}
    big = {"id": "2", "v": "y" * 5000}
    batches = b.create_batches([small, big, small], "orders", max_batch_size=10, max_batch_size_bytes=1000)
    assert batches == [[small], [big], [small]]


def test_create_batches_closes_batch_after_max_wait():
    b = AdaptiveBatcher(clock=_TickingClock(step=1000))
    batches = b.create_batches(_records(10), "orders", max_batch_size=1000, max_wait_ms=2500)
    assert [len(x) for x in batches] == [3, 3, 3, 1]


def test_from_config_uses_config_values(manual_clock):
    cfg = TransportConfig(batch_default_size=40, batch_min_size=5, batch_max_size=80, batch_max_bytes=1024)
    b = AdaptiveBatcher.from_config(cfg, clock=manual_clock)
    assert b.get_optimal_batch_size("orders") == 40
    assert b.max_message_bytes == 1024
    assert b.max_wait_ms == cfg.batch_max_wait_ms
