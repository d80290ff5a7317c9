"""
Token bucket and retry policy, driven by a virtual clock.
"""
import asyncio
import random

import pytest

from portal.services.rate_limit import RetryPolicy, TokenBucket


class TestTokenBucket:
    async def test_burst_up_to_capacity_is_immediate(self, vclock):
        bucket = TokenBucket(5, 1.0, clock=vclock, sleep=vclock.sleep)
        for _ in range(5):
            await bucket.acquire()
        assert vclock.sleeps == []

    async def test_throttles_at_refill_rate(self, vclock):
        bucket = TokenBucket(2, 2.0, clock=vclock, sleep=vclock.sleep)
        start = vclock.now
        await asyncio.gather(*(bucket.acquire() for _ in range(10)))
        # 2 from the initial burst, then 8 more at 2/s
        assert vclock.now - start == pytest.approx(4.0)

    async def test_refills_over_time(self, vclock):
        bucket = TokenBucket(1, 1.0, clock=vclock, sleep=vclock.sleep)
        assert bucket.try_acquire() is True
        assert bucket.try_acquire() is False
        vclock.now += 1.0
        assert bucket.try_acquire() is True

    async def test_never_exceeds_capacity(self, vclock):
        bucket = TokenBucket(3, 10.0, clock=vclock, sleep=vclock.sleep)
        vclock.now += 3600
        taken = sum(bucket.try_acquire() for _ in range(10))
        assert taken == 3

    @pytest.mark.parametrize("capacity,rate", [(0, 1.0), (1, 0.0)])
    def test_invalid_configuration(self, capacity, rate):
        with pytest.raises(ValueError):
            TokenBucket(capacity, rate)


class TestRetryPolicy:
    def test_exponential_growth(self):
        policy = RetryPolicy(base_delay=0.5, multiplier=2.0, max_delay=100.0, jitter_ratio=0.0)
        assert [policy.backoff_delay(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 4.0]

    def test_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=8.0, jitter_ratio=0.0)
        assert policy.backoff_delay(10) == 8.0

    def test_jitter_bounded(self):
        policy = RetryPolicy(base_delay=1.0, jitter_ratio=0.1)
        rng = random.Random(7)
        delays = [policy.backoff_delay(1, rng) for _ in range(50)]
        assert all(1.0 <= d <= 1.1 for d in delays)

    def test_zero_delay_for_tests(self):
        assert RetryPolicy(base_delay=0.0).backoff_delay(3) == 0.0
