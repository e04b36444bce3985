"""Resilient client composing cache, rate limiter, circuit breaker and retry.

One ResilientClient protects one external collaborator and is shared by all
workflow runs. A protected call goes through, in order:

    cache lookup -> rate limiter acquire -> circuit gate -> retried call

and on completion the rate limiter token is released, the result is recorded
in the circuit breaker, and successful cacheable values are stored.

Transient failures are absorbed here; only a final, classified error ever
leaves the client, wrapped in a ResilientCallOutcome.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from autopilot.config.settings import CollaboratorConfig
from autopilot.enums import ErrorKind
from autopilot.exceptions import CircuitOpenError, RateLimitExceededError, classify_error
from autopilot.monitoring.metrics import MetricsCollector
from autopilot.utils.caching import CacheManager
from autopilot.utils.circuit_breaker import CircuitBreaker
from autopilot.utils.rate_limiter import KeyedRateLimiter, TokenBucketRateLimiter
from autopilot.utils.retry import RetryOutcome, RetryPolicy

log = structlog.get_logger(__name__)

Cacheable = bool | Callable[[Any], bool]


@dataclass(frozen=True)
class ResilientCallOutcome:
    """Uniform result of a protected call.

    Attributes:
        success: Whether a value was obtained
        value: The value (from the collaborator or the cache)
        error: Final classified error when not successful
        attempts: Calls made to the collaborator (0 for cache hits and rejections)
        from_cache: Whether the value was served from cache
        latency: Total seconds spent, including waits and retries
    """

    success: bool
    value: Any = None
    error: Exception | None = None
    attempts: int = 0
    from_cache: bool = False
    latency: float = 0.0

    @property
    def error_kind(self) -> ErrorKind | None:
        return classify_error(self.error) if self.error is not None else None


class ResilientClient:
    """Protects calls to one collaborator.

    Example:
        >>> client = ResilientClient.from_config("analyzer", settings.analyzer)
        >>> outcome = await client.execute("analyze:123", lambda: analyzer.analyze(issue))
        >>> if not outcome.success:
        ...     print(outcome.error)
    """

    def __init__(
        self,
        name: str,
        retry_policy: RetryPolicy | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        rate_limiter: TokenBucketRateLimiter | KeyedRateLimiter | None = None,
        cache: CacheManager | None = None,
        clock: Callable[[], float] = time.monotonic,
        cache_sweep_interval: float = 0.0,
    ) -> None:
        self.name = name
        self.retry_policy = retry_policy or RetryPolicy()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name, clock=clock)
        self.rate_limiter = rate_limiter or TokenBucketRateLimiter(name=name, clock=clock)
        self.cache = cache or CacheManager(name=name, clock=clock)
        self.cache_sweep_interval = cache_sweep_interval
        self._clock = clock

        self._total_calls = 0
        self._successes = 0
        self._failures = 0
        self._cache_hits = 0
        self._errors_by_kind: dict[str, int] = {}
        self._last_error: str | None = None

    @classmethod
    def from_config(
        cls,
        name: str,
        config: CollaboratorConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> ResilientClient:
        """Build a client and its primitives from a collaborator section."""
        rate_limiter: TokenBucketRateLimiter | KeyedRateLimiter
        if config.rate_limit.partition_by_issue:
            rate_limiter = KeyedRateLimiter(config.rate_limit, name=name, clock=clock, sleep=sleep)
        else:
            rate_limiter = TokenBucketRateLimiter(config.rate_limit, name=name, clock=clock, sleep=sleep)

        return cls(
            name,
            retry_policy=RetryPolicy.from_config(config.retry, sleep=sleep),
            circuit_breaker=CircuitBreaker.from_config(name, config.circuit_breaker, clock=clock),
            rate_limiter=rate_limiter,
            cache=CacheManager.from_config(config.cache, name=name, clock=clock),
            clock=clock,
            cache_sweep_interval=config.cache.cleanup_interval,
        )

    # -------------------------------------------------------------------------
    # Protected call
    # -------------------------------------------------------------------------

    async def _acquire(self, partition: str | None) -> None:
        if isinstance(self.rate_limiter, KeyedRateLimiter):
            await self.rate_limiter.acquire(partition)
        else:
            await self.rate_limiter.acquire()

    def _release(self, partition: str | None) -> None:
        if isinstance(self.rate_limiter, KeyedRateLimiter):
            self.rate_limiter.release(partition)
        else:
            self.rate_limiter.release()

    def discard_partition(self, partition: str) -> None:
        """Drop per-partition rate limit state once no more calls will use it."""
        if isinstance(self.rate_limiter, KeyedRateLimiter):
            self.rate_limiter.discard(partition)

    async def execute(
        self,
        key: str | None,
        operation: Callable[[], Awaitable[Any]],
        *,
        cacheable: Cacheable = True,
        partition: str | None = None,
    ) -> ResilientCallOutcome:
        """Run a collaborator call with full protection.

        Args:
            key: Cache key for the call, None to bypass the cache
            operation: Zero-argument callable returning a fresh awaitable
            cacheable: False to bypass the cache, or a predicate deciding
                whether a successful value may be stored
            partition: Rate limit partition (used by keyed limiters)

        Returns:
            ResilientCallOutcome; operation errors are never raised
        """
        started = self._clock()
        self._total_calls += 1
        cache_key = key if cacheable is not False and self.cache.enabled else None

        if cache_key is not None:
            cached = await self.cache.get(cache_key)
            MetricsCollector.record_cache_lookup(self.name, hit=cached is not None)
            if cached is not None:
                self._cache_hits += 1
                self._successes += 1
                return self._finish(
                    ResilientCallOutcome(success=True, value=cached, from_cache=True), started
                )

        try:
            await self._acquire(partition)
        except RateLimitExceededError as e:
            return self._fail(e, attempts=0, started=started)

        try:
            try:
                self.circuit_breaker.before_call()
            except CircuitOpenError as e:
                return self._fail(e, attempts=0, started=started)

            try:
                retried: RetryOutcome = await self.retry_policy.execute(operation, name=self.name)
            except BaseException:
                self.circuit_breaker.record_ignored()
                raise
        finally:
            self._release(partition)

        if retried.error is not None:
            self.circuit_breaker.record_failure(retried.error)
            MetricsCollector.update_circuit_state(self.name, str(self.circuit_breaker.state))
            return self._fail(retried.error, attempts=retried.attempts, started=started)

        self.circuit_breaker.record_success()
        MetricsCollector.update_circuit_state(self.name, str(self.circuit_breaker.state))
        self._successes += 1

        if cache_key is not None and retried.value is not None:
            if cacheable is True or (callable(cacheable) and cacheable(retried.value)):
                await self.cache.set(cache_key, retried.value)

        return self._finish(
            ResilientCallOutcome(success=True, value=retried.value, attempts=retried.attempts), started
        )

    def _fail(self, error: Exception, attempts: int, started: float) -> ResilientCallOutcome:
        kind = classify_error(error)
        self._failures += 1
        self._errors_by_kind[str(kind)] = self._errors_by_kind.get(str(kind), 0) + 1
        self._last_error = str(error)
        log.warning(
            "collaborator_call_failed",
            collaborator=self.name,
            error_kind=str(kind),
            attempts=attempts,
            error=str(error),
        )
        return self._finish(ResilientCallOutcome(success=False, error=error, attempts=attempts), started)

    def _finish(self, outcome: ResilientCallOutcome, started: float) -> ResilientCallOutcome:
        latency = self._clock() - started
        MetricsCollector.record_collaborator_call(
            self.name,
            "cache_hit" if outcome.from_cache else ("success" if outcome.success else "failure"),
            latency,
            outcome.attempts,
        )
        return ResilientCallOutcome(
            success=outcome.success,
            value=outcome.value,
            error=outcome.error,
            attempts=outcome.attempts,
            from_cache=outcome.from_cache,
            latency=latency,
        )

    # -------------------------------------------------------------------------
    # Health and lifecycle
    # -------------------------------------------------------------------------

    def get_health(self) -> dict[str, Any]:
        """Snapshot of circuit, rate limit, cache and error state."""
        return {
            "name": self.name,
            "circuit_state": str(self.circuit_breaker.state),
            "circuit": self.circuit_breaker.get_status(),
            "rate_limit": {
                "status": self.rate_limiter.get_status(),
                "stats": self.rate_limiter.get_stats(),
            },
            "cache": self.cache.get_stats(),
            "errors": {
                "total_calls": self._total_calls,
                "successes": self._successes,
                "failures": self._failures,
                "cache_hits": self._cache_hits,
                "by_kind": dict(self._errors_by_kind),
                "last_error": self._last_error,
            },
        }

    def start(self) -> None:
        """Start background maintenance (cache sweep). Needs a running loop."""
        self.cache.start_sweeper(self.cache_sweep_interval)

    async def aclose(self) -> None:
        await self.cache.stop_sweeper()
        self.rate_limiter.close()
