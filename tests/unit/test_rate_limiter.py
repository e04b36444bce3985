"""Tests for the token bucket and keyed rate limiters."""

import asyncio

import pytest

from autopilot.config.settings import RateLimitConfig
from autopilot.exceptions import RateLimitExceededError
from autopilot.utils.rate_limiter import KeyedRateLimiter, TokenBucketRateLimiter


def _limiter(clock, fake_sleep=None, **overrides) -> TokenBucketRateLimiter:
    config = RateLimitConfig(**overrides)
    return TokenBucketRateLimiter(config, name="test", clock=clock, sleep=fake_sleep)


class TestTokenBucket:
    """Refill and non-blocking acquisition."""

    def test_capacity_then_empty(self, clock):
        limiter = _limiter(clock, bucket_capacity=4, refill_rate=2.0)

        for _ in range(4):
            assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False

    def test_refills_one_token_after_interval(self, clock):
        limiter = _limiter(clock, bucket_capacity=4, refill_rate=2.0)
        for _ in range(4):
            limiter.try_acquire()

        clock.advance(1 / 2.0)

        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False

    def test_tokens_never_exceed_capacity(self, clock):
        limiter = _limiter(clock, bucket_capacity=3, refill_rate=10.0)
        clock.advance(3600)

        assert limiter.get_status()["tokens"] == 3

    def test_refund(self, clock):
        limiter = _limiter(clock, bucket_capacity=1)
        assert limiter.try_acquire()
        limiter.refund()
        assert limiter.try_acquire()


class TestAcquire:
    """Blocking acquisition, hard ceilings and the waiter queue."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, clock):
        limiter = _limiter(clock)

        await limiter.acquire()
        assert limiter.in_flight == 1

        limiter.release()
        assert limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_concurrency_ceiling_rejects_immediately(self, clock):
        limiter = _limiter(clock, max_concurrent=1)
        await limiter.acquire()

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.acquire()

        assert exc_info.value.limit == "concurrency"

    @pytest.mark.asyncio
    async def test_per_minute_ceiling_is_hard_reject(self, clock):
        limiter = _limiter(clock, requests_per_minute=2, bucket_capacity=10)
        for _ in range(2):
            await limiter.acquire()
            limiter.release()

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.acquire()

        assert exc_info.value.limit == "per_minute"
        assert exc_info.value.retry_after == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_per_minute_window_resets(self, clock):
        limiter = _limiter(clock, requests_per_minute=1)
        await limiter.acquire()
        limiter.release()

        clock.advance(60)

        await limiter.acquire()
        assert limiter.get_status()["requests_this_minute"] == 1

    @pytest.mark.asyncio
    async def test_daily_ceiling(self, clock):
        limiter = _limiter(clock, requests_per_day=1, requests_per_minute=10)
        await limiter.acquire()
        limiter.release()

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.acquire()

        assert exc_info.value.limit == "per_day"

    @pytest.mark.asyncio
    async def test_waits_for_refill(self, clock, fake_sleep):
        limiter = _limiter(clock, fake_sleep, bucket_capacity=1, refill_rate=2.0)
        await limiter.acquire()
        limiter.release()

        await limiter.acquire()

        assert fake_sleep.calls == [pytest.approx(0.5)]
        stats = limiter.get_stats()
        assert stats["queued"] == 1
        assert stats["accepted"] == 2

    @pytest.mark.asyncio
    async def test_queue_overflow_rejected(self, clock):
        limiter = _limiter(clock, bucket_capacity=1, max_queue_size=0)
        await limiter.acquire()

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.acquire()

        assert exc_info.value.limit == "queue"
        assert limiter.in_flight == 1

    @pytest.mark.asyncio
    async def test_waiters_served_in_order(self, clock, fake_sleep):
        limiter = _limiter(clock, fake_sleep, bucket_capacity=1, refill_rate=1.0)
        await limiter.acquire()
        order: list[int] = []

        async def worker(n: int) -> None:
            await limiter.acquire()
            order.append(n)
            limiter.release()

        await asyncio.gather(worker(1), worker(2), worker(3))

        assert order == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_close_rejects_waiters(self, clock):
        limiter = _limiter(clock, bucket_capacity=1, refill_rate=0.001)
        await limiter.acquire()

        waiter = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        limiter.close()

        with pytest.raises(RateLimitExceededError) as exc_info:
            await waiter
        assert exc_info.value.limit == "closed"
        status = limiter.get_status()
        assert status["in_flight"] == 1
        assert status["requests_this_minute"] == 1
        assert status["requests_today"] == 1

        with pytest.raises(RateLimitExceededError):
            await limiter.acquire()

    @pytest.mark.asyncio
    async def test_execute_releases_on_failure(self, clock):
        limiter = _limiter(clock)

        async def boom() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await limiter.execute(boom)

        assert limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_stats_and_reset(self, clock):
        limiter = _limiter(clock, max_concurrent=1)
        await limiter.acquire()
        with pytest.raises(RateLimitExceededError):
            await limiter.acquire()

        stats = limiter.get_stats()
        assert stats["total_requests"] == 2
        assert stats["rejected"] == 1
        assert stats["rejections_by_limit"] == {"concurrency": 1}
        assert stats["peak_concurrency"] == 1

        limiter.reset_stats()
        assert limiter.get_stats()["total_requests"] == 0


class TestKeyedRateLimiter:
    """Per-key limiters under a shared global limiter."""

    def test_per_key_limits_are_stricter(self):
        config = RateLimitConfig(requests_per_minute=60, requests_per_day=1000, max_concurrent=4, bucket_capacity=10)
        per_key = KeyedRateLimiter.per_key_config(config)

        assert per_key.requests_per_minute == 6
        assert per_key.requests_per_day == 100
        assert per_key.max_concurrent == 2
        assert per_key.bucket_capacity == 2

    def test_per_key_limits_at_least_one(self):
        config = RateLimitConfig(requests_per_minute=5, requests_per_day=5, max_concurrent=1, bucket_capacity=2)
        per_key = KeyedRateLimiter.per_key_config(config)

        assert per_key.requests_per_minute == 1
        assert per_key.max_concurrent == 1
        assert per_key.bucket_capacity == 1

    @pytest.mark.asyncio
    async def test_key_failure_releases_global_token(self, clock):
        limiter = KeyedRateLimiter(
            RateLimitConfig(max_concurrent=2, bucket_capacity=10), name="resolver", clock=clock
        )
        await limiter.acquire("hot")

        # Per-key concurrency is 1, so further acquires for the same key fail.
        for _ in range(3):
            with pytest.raises(RateLimitExceededError):
                await limiter.acquire("hot")

        status = limiter.global_limiter.get_status()
        assert status["in_flight"] == 1
        assert status["tokens"] == 9
        assert status["requests_this_minute"] == 1
        assert status["requests_today"] == 1
        assert limiter.get_stats()["accepted"] == 1

    @pytest.mark.asyncio
    async def test_key_failure_does_not_exhaust_global_quota(self, clock):
        limiter = KeyedRateLimiter(
            RateLimitConfig(requests_per_minute=20, max_concurrent=4), name="resolver", clock=clock
        )
        await limiter.acquire("hot")
        await limiter.acquire("hot")
        for _ in range(30):
            with pytest.raises(RateLimitExceededError):
                await limiter.acquire("hot")

        await limiter.acquire("cold")
        assert limiter.global_limiter.get_status()["requests_this_minute"] == 3

    @pytest.mark.asyncio
    async def test_one_key_cannot_starve_others(self, clock):
        limiter = KeyedRateLimiter(RateLimitConfig(max_concurrent=4), name="resolver", clock=clock)
        await limiter.acquire("busy")
        await limiter.acquire("busy")
        with pytest.raises(RateLimitExceededError):
            await limiter.acquire("busy")

        await limiter.acquire("quiet")
        assert limiter.get_status()["in_flight"] == 3

    @pytest.mark.asyncio
    async def test_release_and_cleanup(self, clock):
        limiter = KeyedRateLimiter(name="resolver", clock=clock)
        await limiter.acquire("issue-1")
        await limiter.acquire("issue-2")
        limiter.release("issue-1")

        assert limiter.cleanup() == 1
        assert limiter.get_status()["keys"] == 1
        assert limiter.get_status("issue-1") == {"name": "resolver:issue-1", "active": False}

    def test_try_acquire_refunds_global_on_key_miss(self, clock):
        limiter = KeyedRateLimiter(RateLimitConfig(bucket_capacity=10), name="reviewer", clock=clock)
        assert limiter.try_acquire("k")
        assert limiter.try_acquire("k")
        assert limiter.try_acquire("k") is False

        assert limiter.global_limiter.get_status()["tokens"] == 8

    @pytest.mark.asyncio
    async def test_global_only_without_key(self, clock):
        limiter = KeyedRateLimiter(name="analyzer", clock=clock)

        async def call() -> str:
            return "done"

        assert await limiter.execute(None, call) == "done"

        stats = limiter.get_stats()
        assert stats["accepted"] == 1
        assert stats["keys"] == {}
        assert limiter.global_limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_discard_idle_key(self, clock):
        limiter = KeyedRateLimiter(name="resolver", clock=clock)
        await limiter.acquire("issue-1")
        limiter.release("issue-1")

        assert limiter.discard("issue-1") is True
        assert limiter.discard("issue-1") is False
        assert limiter.get_status()["keys"] == 0

    @pytest.mark.asyncio
    async def test_discard_busy_key_drops_on_last_release(self, clock):
        limiter = KeyedRateLimiter(name="resolver", clock=clock)
        await limiter.acquire("issue-1")

        assert limiter.discard("issue-1") is False
        assert limiter.get_status()["keys"] == 1

        limiter.release("issue-1")

        assert limiter.get_status()["keys"] == 0
        assert limiter.global_limiter.in_flight == 0

    @pytest.mark.asyncio
    async def test_reacquire_revives_discarded_key(self, clock):
        limiter = KeyedRateLimiter(RateLimitConfig(max_concurrent=4), name="resolver", clock=clock)
        await limiter.acquire("issue-1")
        limiter.discard("issue-1")
        await limiter.acquire("issue-1")

        limiter.release("issue-1")
        assert limiter.get_status()["keys"] == 1
