"""Unit tests for RetryPolicy."""

import random

from speechwire.core.exceptions import ConnectError, QuotaError
from speechwire.streaming.retry import RetryPolicy


def test_backoff_grows_and_caps():
    policy = RetryPolicy(base_delay=0.5, multiplier=2.0, max_delay=3.0, jitter=0.0)

    assert [policy.backoff(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_jitter_stays_within_spread():
    policy = RetryPolicy(base_delay=1.0, jitter=0.2, rng=random.Random(7))

    delays = [policy.backoff(1) for _ in range(50)]

    assert all(0.8 <= delay <= 1.2 for delay in delays)
    assert len(set(delays)) > 1


def test_quota_error_uses_provider_delay():
    policy = RetryPolicy(jitter=0.0)

    assert policy.delay_for(1, QuotaError("busy", retry_after=4.0)) == 4.0
    assert policy.delay_for(1, QuotaError("busy")) == policy.backoff(1)


def test_quota_delay_over_limit_propagates():
    policy = RetryPolicy(max_quota_delay=30.0)

    assert policy.delay_for(1, QuotaError("daily limit", retry_after=3600)) is None


def test_connect_error_uses_backoff():
    policy = RetryPolicy(base_delay=0.25, jitter=0.0)

    assert policy.delay_for(3, ConnectError("reset")) == 1.0


def test_exhausted():
    policy = RetryPolicy(max_attempts=3)

    assert not policy.exhausted(2)
    assert policy.exhausted(3)
