"""
Tests for RetryPolicy backoff
"""

import random
from datetime import datetime, timedelta, timezone

import pytest

from decrown_billing.core.backoff import RetryPolicy


def test_delays_double_until_capped():
    policy = RetryPolicy(max_attempts=10, base_delay_ms=1000, backoff_multiplier=2.0, max_delay_ms=30000)

    delays = [policy.delay_ms(n) for n in range(7)]

    assert delays == [1000, 2000, 4000, 8000, 16000, 30000, 30000]


def test_delays_never_decrease():
    policy = RetryPolicy(max_attempts=20, base_delay_ms=250, backoff_multiplier=1.5, max_delay_ms=10000)

    delays = [policy.delay_ms(n) for n in range(20)]

    assert delays == sorted(delays)
    assert max(delays) == 10000


def test_can_retry_counts_retries_after_first_try():
    policy = RetryPolicy(max_attempts=3)

    assert [policy.can_retry(n) for n in range(5)] == [True, True, True, False, False]


def test_jitter_stays_within_ratio_and_cap():
    """Jittered delays spread around the base delay but never past max_delay_ms."""
    policy = RetryPolicy(max_attempts=10, base_delay_ms=1000, max_delay_ms=5000, jitter_ratio=0.25)
    rng = random.Random(42)

    for n in range(6):
        base = policy.delay_ms(n)
        for _ in range(50):
            jittered = policy.jittered_delay_ms(n, rng)
            assert base * 0.75 - 1 <= jittered <= min(5000, base * 1.25)


def test_next_retry_at_without_jitter_is_exact():
    policy = RetryPolicy(base_delay_ms=1000)
    now = datetime(2024, 12, 2, 9, 0, tzinfo=timezone.utc)

    assert policy.next_retry_at(2, now) == now + timedelta(milliseconds=4000)


@pytest.mark.parametrize("kwargs", [
    {"max_attempts": -1},
    {"base_delay_ms": -5},
    {"backoff_multiplier": 0.5},
    {"jitter_ratio": 1.0},
])
def test_invalid_policies_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
