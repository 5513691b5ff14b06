import asyncio
from datetime import timedelta

import pytest

from authcore.service.errors import RateLimitExceeded
from authcore.service.rate_limit import LocalAttemptCounter, RateLimiter


@pytest.fixture
def limiter(clock):
    return RateLimiter(LocalAttemptCounter(clock=clock), clock=clock)


class TestRateLimiter:
    async def test_allows_up_to_limit(self, limiter):
        decisions = [await limiter.check("login:1.2.3.4", 3, 15) for _ in range(3)]
        assert [d.allowed for d in decisions] == [True, True, True]
        assert [d.remaining for d in decisions] == [2, 1, 0]

    async def test_blocks_with_retry_after(self, limiter, clock):
        for _ in range(3):
            await limiter.check("login:1.2.3.4", 3, 15)
        clock.advance(minutes=5)
        decision = await limiter.check("login:1.2.3.4", 3, 15)
        assert not decision.allowed
        assert decision.retry_after == 600

    async def test_window_reset(self, limiter, clock):
        for _ in range(4):
            await limiter.check("k", 3, 1)
        clock.advance(minutes=1)
        assert (await limiter.check("k", 3, 1)).allowed

    async def test_keys_are_independent(self, limiter):
        for _ in range(3):
            await limiter.check("login:a", 3, 15)
        assert not await limiter.allow("login:a", 3, 15)
        assert await limiter.allow("login:b", 3, 15)

    async def test_enforce_raises(self, limiter):
        await limiter.enforce("reset:x", 1, 60)
        with pytest.raises(RateLimitExceeded) as excinfo:
            await limiter.enforce("reset:x", 1, 60)
        assert excinfo.value.retry_after == 3600
        assert excinfo.value.detail == {"retryAfter": 3600}
        assert excinfo.value.status_code == 429

    async def test_zero_limit_disables(self, limiter):
        for _ in range(10):
            assert await limiter.allow("k", 0, 15)

    async def test_invalid_window_defaults_to_one_minute(self, limiter, clock):
        await limiter.check("k", 1, 0)
        decision = await limiter.check("k", 1, 0)
        assert decision.retry_after == 60

    async def test_reset_clears_key(self, limiter):
        await limiter.check("k", 1, 15)
        await limiter.reset("k")
        assert (await limiter.check("k", 1, 15)).allowed

    async def test_concurrent_hits_counted_exactly(self, limiter):
        results = await asyncio.gather(*(limiter.allow("burst", 10, 15) for _ in range(25)))
        assert results.count(True) == 10


class TestLocalAttemptCounter:
    async def test_sweep_drops_closed_windows(self, clock):
        counter = LocalAttemptCounter(clock=clock, stripes=4)
        await counter.hit("a", timedelta(minutes=1))
        await counter.hit("b", timedelta(minutes=10))
        clock.advance(minutes=2)
        assert counter.sweep() == 1
        state = await counter.hit("b", timedelta(minutes=10))
        assert state.count == 2

    async def test_full_stripe_prunes_closed_windows(self, clock):
        counter = LocalAttemptCounter(clock=clock, stripes=1, max_keys_per_stripe=3)
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            await counter.hit(ip, timedelta(minutes=1))
        clock.advance(minutes=2)
        await counter.hit("10.0.0.4", timedelta(minutes=1))
        assert len(counter) == 1

    async def test_full_stripe_keeps_open_windows(self, clock):
        counter = LocalAttemptCounter(clock=clock, stripes=1, max_keys_per_stripe=2)
        await counter.hit("a", timedelta(minutes=10))
        await counter.hit("b", timedelta(minutes=10))
        await counter.hit("c", timedelta(minutes=10))
        assert len(counter) == 3
        assert (await counter.hit("a", timedelta(minutes=10))).count == 2

    async def test_limiter_sweep_only_touches_local_counters(self, limiter, clock):
        await limiter.check("login:1.2.3.4", 3, 1)
        clock.advance(minutes=2)
        assert limiter.sweep() == 1

        class SharedCounter:
            async def hit(self, key, window): ...

            async def reset(self, key): ...

        assert RateLimiter(SharedCounter(), clock=clock).sweep() == 0
