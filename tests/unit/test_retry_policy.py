import random

import pytest

from relaykit.core.utils import jitter
from relaykit.resilience import NO_RETRY, RetryPolicy

pytestmark = [pytest.mark.unit]


def test_base_delay_is_exponential_and_capped():
    p = RetryPolicy(initial_delay_ms=1000, backoff_multiplier=2.0, max_delay_ms=5000, use_jitter=False)
    assert [p.delay_ms(n) for n in range(1, 6)] == [1000, 2000, 4000, 5000, 5000]


@pytest.mark.parametrize("attempt", [1, 2, 3, 4, 7, 12])
def test_jittered_delay_stays_within_fraction(attempt):
    p = RetryPolicy(initial_delay_ms=500, backoff_multiplier=3.0, max_delay_ms=60_000, jitter_fraction=0.1)
    base = p.base_delay_ms(attempt)
    rng = random.Random(attempt)
    for _ in range(50):
        d = p.delay_ms(attempt, rng)
        assert base * 0.9 <= d <= base * 1.1


def test_seeded_rng_makes_jitter_reproducible():
    p = RetryPolicy()
    a = [p.delay_ms(n, random.Random(42)) for n in range(1, 5)]
    b = [p.delay_ms(n, random.Random(42)) for n in range(1, 5)]
    assert a == b


def test_jitter_never_negative():
    assert jitter(0, fraction=0.5, rng=random.Random(1)) == 0
    assert jitter(10, fraction=1.0, rng=random.Random(1)) >= 0


def test_no_retry_policy():
    assert NO_RETRY.max_retries == 0
    assert NO_RETRY.use_jitter is False


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_retries": -1},
        {"initial_delay_ms": -5},
        {"backoff_multiplier": 0.5},
        {"jitter_fraction": 1.5},
    ],
)
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
