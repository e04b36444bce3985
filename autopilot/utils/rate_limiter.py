"""Token bucket rate limiting for quota-limited collaborators.

Tokens accrue continuously at ``refill_rate`` per second up to
``bucket_capacity``. Refill is computed lazily from elapsed time whenever the
bucket is touched, so there is no background timer to drift and tests can
drive time through an injected clock.

Besides the bucket, every acquire is checked against three hard ceilings that
are never queued for: requests per rolling minute, requests per rolling day
and in-flight concurrency. When the bucket is empty, acquirers wait in a
bounded FIFO queue for the next token.

Key Exports:
    TokenBucketRateLimiter: Single bucket with quotas and a waiter queue.
    KeyedRateLimiter: Global bucket plus stricter per-key buckets.

Example:
    >>> limiter = TokenBucketRateLimiter(RateLimitConfig(refill_rate=2.0))
    >>> await limiter.acquire()
    >>> try:
    ...     await call_backend()
    ... finally:
    ...     limiter.release()
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from autopilot.config.settings import RateLimitConfig
from autopilot.exceptions import RateLimitExceededError

log = structlog.get_logger(__name__)

T = TypeVar("T")

MINUTE = 60.0
DAY = 86_400.0


class TokenBucketRateLimiter:
    """Token bucket with per-minute, per-day and concurrency ceilings.

    Every successful ``acquire`` must be paired with exactly one ``release``
    once the protected work completes, including when that work fails.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.config = config or RateLimitConfig()
        self.name = name
        self._clock = clock
        self._sleep = sleep or asyncio.sleep

        now = clock()
        self._tokens = float(self.config.bucket_capacity)
        self._last_refill = now
        self._in_flight = 0
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._closed = False
        self._head_wakeup: asyncio.Future[None] | None = None

        self._minute_start = now
        self._minute_count = 0
        self._day_start = now
        self._day_count = 0

        self._init_stats()

    def _init_stats(self) -> None:
        self._total_requests = 0
        self._accepted = 0
        self._rejected = 0
        self._queued = 0
        self._total_wait_time = 0.0
        self._peak_concurrency = self._in_flight
        self._rejections_by_limit: dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Bucket bookkeeping
    # -------------------------------------------------------------------------

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(
                float(self.config.bucket_capacity),
                self._tokens + elapsed * self.config.refill_rate,
            )
            self._last_refill = now

    def _roll_windows(self) -> None:
        now = self._clock()
        if now - self._minute_start >= MINUTE:
            self._minute_start = now
            self._minute_count = 0
        if now - self._day_start >= DAY:
            self._day_start = now
            self._day_count = 0

    def _reject(self, message: str, limit: str, retry_after: float | None = None) -> RateLimitExceededError:
        self._rejected += 1
        self._rejections_by_limit[limit] = self._rejections_by_limit.get(limit, 0) + 1
        log.warning(
            "rate_limit_rejected",
            limiter=self.name,
            limit=limit,
            retry_after=round(retry_after, 3) if retry_after is not None else None,
        )
        return RateLimitExceededError(message, retry_after=retry_after, limit=limit)

    def _check_ceilings(self) -> None:
        now = self._clock()
        if self._day_count >= self.config.requests_per_day:
            raise self._reject(
                f"Daily request limit of {self.config.requests_per_day} reached for {self.name}",
                limit="per_day",
                retry_after=max(0.0, DAY - (now - self._day_start)),
            )
        if self._minute_count >= self.config.requests_per_minute:
            raise self._reject(
                f"Per-minute request limit of {self.config.requests_per_minute} reached for {self.name}",
                limit="per_minute",
                retry_after=max(0.0, MINUTE - (now - self._minute_start)),
            )
        if self._in_flight >= self.config.max_concurrent:
            raise self._reject(
                f"Concurrency limit of {self.config.max_concurrent} reached for {self.name}",
                limit="concurrency",
            )

    def _wake_head(self) -> None:
        if self._waiters and not self._waiters[0].done():
            self._waiters[0].set_result(None)

    # -------------------------------------------------------------------------
    # Acquire / release
    # -------------------------------------------------------------------------

    async def acquire(self) -> None:
        """Take a token, waiting in the queue if the bucket is empty.

        Raises:
            RateLimitExceededError: If a ceiling is reached, the queue is
                full, or the limiter is closed
        """
        if self._closed:
            raise RateLimitExceededError(f"Rate limiter {self.name} is closed", limit="closed")

        self._total_requests += 1
        self._roll_windows()
        self._check_ceilings()
        self._refill()

        must_wait = bool(self._waiters) or self._tokens < 1
        if must_wait and len(self._waiters) >= self.config.max_queue_size:
            raise self._reject(
                f"Rate limiter queue for {self.name} is full ({self.config.max_queue_size} waiting)",
                limit="queue",
                retry_after=max(0.0, 1 - self._tokens) / self.config.refill_rate,
            )

        # Quota slots are reserved before waiting so waiters count against
        # the ceilings.
        self._in_flight += 1
        self._minute_count += 1
        self._day_count += 1

        if not must_wait:
            self._admit(wait_time=0.0)
            return

        started = self._clock()
        self._queued += 1
        try:
            await self._wait_for_token()
        except BaseException:
            self.rollback(token_taken=False)
            raise
        self._admit(wait_time=self._clock() - started)

    async def _wait_for_token(self) -> None:
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()
        self._waiters.append(waiter)
        log.debug("rate_limit_queued", limiter=self.name, queue_length=len(self._waiters))
        try:
            while True:
                if self._closed:
                    raise RateLimitExceededError(f"Rate limiter {self.name} was closed", limit="closed")
                self._refill()
                if self._waiters[0] is not waiter:
                    await waiter
                    continue
                if self._tokens >= 1:
                    return
                await self._sleep_until_refill(loop)
        finally:
            self._waiters.remove(waiter)
            self._wake_head()

    async def _sleep_until_refill(self, loop: asyncio.AbstractEventLoop) -> None:
        # close() interrupts the sleep through the wakeup future.
        self._head_wakeup = loop.create_future()
        sleeper = asyncio.ensure_future(self._sleep((1 - self._tokens) / self.config.refill_rate))
        try:
            await asyncio.wait({sleeper, self._head_wakeup}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            self._head_wakeup = None

    def _admit(self, wait_time: float) -> None:
        self._tokens -= 1
        self._accepted += 1
        self._total_wait_time += wait_time
        self._peak_concurrency = max(self._peak_concurrency, self._in_flight)

    def try_acquire(self) -> bool:
        """Take a token without waiting.

        Only the bucket is consulted; quotas and concurrency are not
        reserved, so no ``release`` follows a successful try_acquire.

        Returns:
            True if a token was taken
        """
        if self._closed or self._waiters:
            return False
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    def refund(self) -> None:
        """Return an unused token taken by try_acquire."""
        self._tokens = min(float(self.config.bucket_capacity), self._tokens + 1)

    def rollback(self, token_taken: bool = True) -> None:
        """Undo an acquire whose protected work never started.

        Frees the concurrency slot and the minute and day quota slots, and
        returns the bucket token when one was taken. Use this instead of
        ``release`` when the request is abandoned before it is sent.

        Args:
            token_taken: Whether the acquire got as far as taking a token
        """
        self._in_flight = max(0, self._in_flight - 1)
        self._minute_count = max(0, self._minute_count - 1)
        self._day_count = max(0, self._day_count - 1)
        if token_taken:
            self.refund()
            self._accepted = max(0, self._accepted - 1)
            if self._head_wakeup is not None and not self._head_wakeup.done():
                self._head_wakeup.set_result(None)

    def release(self) -> None:
        """Mark one acquired request as finished."""
        if self._in_flight == 0:
            log.warning("rate_limit_release_without_acquire", limiter=self.name)
            return
        self._in_flight -= 1
        self._refill()

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation under an acquired token."""
        await self.acquire()
        try:
            return await operation()
        finally:
            self.release()

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queue_length(self) -> int:
        return len(self._waiters)

    @property
    def is_idle(self) -> bool:
        return self._in_flight == 0 and not self._waiters

    def get_status(self) -> dict[str, Any]:
        """Current bucket and quota state."""
        self._refill()
        self._roll_windows()
        return {
            "name": self.name,
            "tokens": round(self._tokens, 3),
            "capacity": self.config.bucket_capacity,
            "in_flight": self._in_flight,
            "max_concurrent": self.config.max_concurrent,
            "queue_length": len(self._waiters),
            "requests_this_minute": self._minute_count,
            "requests_per_minute": self.config.requests_per_minute,
            "requests_today": self._day_count,
            "requests_per_day": self.config.requests_per_day,
            "closed": self._closed,
        }

    def get_stats(self) -> dict[str, Any]:
        """Counters accumulated since creation or the last reset_stats."""
        return {
            "total_requests": self._total_requests,
            "accepted": self._accepted,
            "rejected": self._rejected,
            "queued": self._queued,
            "average_wait_time": self._total_wait_time / self._accepted if self._accepted else 0.0,
            "peak_concurrency": self._peak_concurrency,
            "rejections_by_limit": dict(self._rejections_by_limit),
        }

    def reset_stats(self) -> None:
        self._init_stats()

    def close(self) -> None:
        """Reject queued waiters and any further acquire."""
        self._closed = True
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_result(None)
        if self._head_wakeup is not None and not self._head_wakeup.done():
            self._head_wakeup.set_result(None)
        log.debug("rate_limiter_closed", limiter=self.name)


class KeyedRateLimiter:
    """Global rate limiter plus one stricter limiter per key.

    Per-key limits are derived from the global configuration: per-minute and
    per-day ceilings divided by 10, concurrency by 2 and bucket capacity by
    5, each at least 1. A request needs both a global and a per-key token.

    Example:
        >>> limiter = KeyedRateLimiter(RateLimitConfig(), name="resolver")
        >>> await limiter.acquire("issue-42")
        >>> limiter.release("issue-42")
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        name: str = "keyed",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.config = config or RateLimitConfig()
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self.global_limiter = TokenBucketRateLimiter(self.config, name=name, clock=clock, sleep=sleep)
        self.key_config = self.per_key_config(self.config)
        self._limiters: dict[str, TokenBucketRateLimiter] = {}
        self._retired: set[str] = set()

    @staticmethod
    def per_key_config(config: RateLimitConfig) -> RateLimitConfig:
        return config.model_copy(
            update={
                "requests_per_minute": max(1, config.requests_per_minute // 10),
                "requests_per_day": max(1, config.requests_per_day // 10),
                "max_concurrent": max(1, config.max_concurrent // 2),
                "bucket_capacity": max(1, config.bucket_capacity // 5),
                "refill_rate": config.refill_rate / 5,
            }
        )

    def _limiter_for(self, key: str) -> TokenBucketRateLimiter:
        limiter = self._limiters.get(key)
        if limiter is None:
            limiter = TokenBucketRateLimiter(
                self.key_config, name=f"{self.name}:{key}", clock=self._clock, sleep=self._sleep
            )
            self._limiters[key] = limiter
        return limiter

    async def acquire(self, key: str | None = None) -> None:
        """Take a global token and, when a key is given, a per-key token.

        Raises:
            RateLimitExceededError: If either limiter rejects the request
        """
        await self.global_limiter.acquire()
        if key is None:
            return
        self._retired.discard(key)
        try:
            await self._limiter_for(key).acquire()
        except BaseException:
            self.global_limiter.rollback()
            raise

    def try_acquire(self, key: str | None = None) -> bool:
        if not self.global_limiter.try_acquire():
            return False
        if key is None:
            return True
        if not self._limiter_for(key).try_acquire():
            self.global_limiter.refund()
            return False
        return True

    def release(self, key: str | None = None) -> None:
        if key is not None and key in self._limiters:
            limiter = self._limiters[key]
            limiter.release()
            if key in self._retired and limiter.is_idle:
                self._drop(key)
        self.global_limiter.release()

    def discard(self, key: str) -> bool:
        """Forget the limiter for a key that will not be used again.

        A key with requests still in flight or queued is retired instead and
        dropped by the release that leaves it idle.

        Returns:
            True if the key was dropped immediately
        """
        limiter = self._limiters.get(key)
        if limiter is None:
            return False
        if limiter.is_idle:
            self._drop(key)
            return True
        self._retired.add(key)
        return False

    def _drop(self, key: str) -> None:
        self._retired.discard(key)
        limiter = self._limiters.pop(key, None)
        if limiter is not None:
            limiter.close()
        log.debug("rate_limiter_key_dropped", limiter=self.name, key=key)

    async def execute(self, key: str | None, operation: Callable[[], Awaitable[T]]) -> T:
        await self.acquire(key)
        try:
            return await operation()
        finally:
            self.release(key)

    def get_status(self, key: str | None = None) -> dict[str, Any]:
        """Global status, or the status of a single key."""
        if key is not None:
            limiter = self._limiters.get(key)
            return limiter.get_status() if limiter else {"name": f"{self.name}:{key}", "active": False}
        status = self.global_limiter.get_status()
        status["keys"] = len(self._limiters)
        return status

    def get_stats(self) -> dict[str, Any]:
        stats = self.global_limiter.get_stats()
        stats["keys"] = {key: limiter.get_stats() for key, limiter in self._limiters.items()}
        return stats

    def reset_stats(self) -> None:
        self.global_limiter.reset_stats()
        for limiter in self._limiters.values():
            limiter.reset_stats()

    def cleanup(self) -> int:
        """Drop per-key limiters with nothing in flight or queued.

        Returns:
            Number of keys removed
        """
        idle = [key for key, limiter in self._limiters.items() if limiter.is_idle]
        for key in idle:
            del self._limiters[key]
            self._retired.discard(key)
        if idle:
            log.debug("rate_limiter_keys_cleaned", limiter=self.name, removed=len(idle))
        return len(idle)

    def close(self) -> None:
        self.global_limiter.close()
        for limiter in self._limiters.values():
            limiter.close()
