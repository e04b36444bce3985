"""Retry utilities for handling transient failures.

Provides a retry policy for async operations with exponential backoff and
jitter, plus a decorator built on top of it. Errors are classified before
every retry decision, so only transient faults consume further attempts.

Key Features:
    - Exponential backoff capped at a maximum delay
    - Optional +/-25% jitter to avoid synchronized retries
    - Retry decisions by error kind, plus any server fault (status >= 500)
    - Per-attempt timeout, modeled as a retryable timeout error
    - Structured logging of retry attempts

Key Exports:
    RetryPolicy: Configurable retry policy returning a RetryOutcome.
    RetryOutcome: Result of a retried operation (value or final error).
    async_retry: Decorator for adding retry logic to async functions.

Example:
    >>> from autopilot.utils.retry import RetryPolicy
    >>>
    >>> policy = RetryPolicy(max_attempts=3, base_delay=1.0)
    >>> outcome = await policy.execute(lambda: client.get("/status"), name="status")
    >>> if outcome.success:
    ...     print(outcome.value)

Backoff Formula:
    delay before attempt n+1 = min(base_delay * multiplier ** (n - 1), max_delay)
    For base_delay=1.0, multiplier=2.0: 1s, 2s, 4s, 8s, ...
"""

from __future__ import annotations

import asyncio
import functools
import random
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from autopilot.config.settings import RetryConfig
from autopilot.enums import ErrorKind
from autopilot.exceptions import CallTimeoutError, RateLimitExceededError, classify_error, error_status

log = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.25

DEFAULT_RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED})


@dataclass(frozen=True)
class RetryOutcome:
    """Result of running an operation under a retry policy.

    Attributes:
        value: Return value of the successful attempt
        error: Final error when every permitted attempt failed
        attempts: Number of attempts actually made
        delays: Backoff delays slept between attempts, in order
    """

    value: Any = None
    error: Exception | None = None
    attempts: int = 0
    delays: tuple[float, ...] = ()

    @property
    def success(self) -> bool:
        return self.error is None


class RetryPolicy:
    """Bounded retry with exponential backoff.

    The policy never raises the operation's errors from ``execute``; the
    final error is returned in the outcome so the caller can record it.
    Cancellation of the calling task always propagates.

    Args:
        max_attempts: Maximum number of tries, including the first
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
        multiplier: Exponential growth factor
        jitter: Perturb each delay by up to +/-25%
        retryable_kinds: Error kinds worth another attempt
        attempt_timeout: Per-attempt timeout in seconds, None to disable
        sleep: Awaitable sleep function (injectable for tests)
        rng: Random source for jitter
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        multiplier: float = 2.0,
        jitter: bool = True,
        retryable_kinds: Iterable[ErrorKind] | None = None,
        attempt_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter = jitter
        self.retryable_kinds = (
            frozenset(retryable_kinds) if retryable_kinds is not None else DEFAULT_RETRYABLE_KINDS
        )
        self.attempt_timeout = attempt_timeout
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: RetryConfig, **kwargs: Any) -> RetryPolicy:
        """Build a policy from a RetryConfig section."""
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            multiplier=config.backoff_multiplier,
            jitter=config.jitter,
            retryable_kinds=config.retryable_errors,
            attempt_timeout=config.attempt_timeout,
            **kwargs,
        )

    def base_delay_for(self, attempt: int) -> float:
        """Pre-jitter delay after the given (1-based) failed attempt."""
        return float(min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay))

    def compute_delay(self, attempt: int, error: Exception | None = None) -> float:
        """Delay to sleep after the given failed attempt.

        A rate-limit error that states how long to wait is never retried
        sooner than that.
        """
        delay = self.base_delay_for(attempt)
        if self.jitter and delay > 0:
            delay *= 1 + self._rng.uniform(-JITTER_FRACTION, JITTER_FRACTION)
        if isinstance(error, RateLimitExceededError) and error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return delay

    def is_retryable(self, error: Exception) -> bool:
        """Check whether an error is worth another attempt."""
        if classify_error(error) in self.retryable_kinds:
            return True
        status = error_status(error)
        return status is not None and status >= 500

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.attempt_timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=self.attempt_timeout)
        except asyncio.TimeoutError as e:
            raise CallTimeoutError("Attempt timed out", timeout_seconds=self.attempt_timeout) from e

    async def execute(self, operation: Callable[[], Awaitable[Any]], name: str = "operation") -> RetryOutcome:
        """Run an operation with retries.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            name: Operation name for logging

        Returns:
            RetryOutcome with either the value or the final error
        """
        delays: list[float] = []

        for attempt in range(1, self.max_attempts + 1):
            try:
                value = await self._attempt(operation)
            except Exception as e:
                if not self.is_retryable(e):
                    log.info(
                        "retry_not_attempted",
                        operation=name,
                        attempt=attempt,
                        error_kind=str(classify_error(e)),
                        error=str(e),
                    )
                    return RetryOutcome(error=e, attempts=attempt, delays=tuple(delays))

                if attempt == self.max_attempts:
                    log.error(
                        "retry_exhausted",
                        operation=name,
                        attempts=attempt,
                        error=str(e),
                    )
                    return RetryOutcome(error=e, attempts=attempt, delays=tuple(delays))

                delay = self.compute_delay(attempt, e)
                log.warning(
                    "retry_attempt",
                    operation=name,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=round(delay, 3),
                    error=str(e),
                )
                delays.append(delay)
                await self._sleep(delay)
            else:
                return RetryOutcome(value=value, attempts=attempt, delays=tuple(delays))

        raise RuntimeError("Retry logic error")

    async def call(self, operation: Callable[[], Awaitable[T]], name: str = "operation") -> T:
        """Run an operation with retries, raising the final error."""
        outcome = await self.execute(operation, name=name)
        if outcome.error is not None:
            raise outcome.error
        value: T = outcome.value
        return value


def async_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    multiplier: float = 2.0,
    jitter: bool = True,
    retryable_kinds: Iterable[ErrorKind] | None = None,
    policy: RetryPolicy | None = None,
) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
    """Decorator for async functions with exponential backoff retry logic.

    Wraps an async function so transient failures are retried according to
    a RetryPolicy. Non-retryable errors propagate after the first attempt,
    exhausted retries re-raise the last error.

    Args:
        max_attempts: Maximum number of attempts before giving up
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
        multiplier: Exponential growth factor
        jitter: Perturb each delay by up to +/-25%
        retryable_kinds: Error kinds worth another attempt
        policy: Use this policy instead of building one from the arguments

    Example:
        >>> @async_retry(max_attempts=5, base_delay=0.5)
        ... async def fetch_health():
        ...     return await client.get("/health")
    """
    retry_policy = policy or RetryPolicy(
        max_attempts=max_attempts,
        base_delay=base_delay,
        max_delay=max_delay,
        multiplier=multiplier,
        jitter=jitter,
        retryable_kinds=retryable_kinds,
    )

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await retry_policy.call(lambda: func(*args, **kwargs), name=func.__name__)

        return wrapper

    return decorator
