"""Tests for the retry policy and the async_retry decorator."""

import asyncio
import random

import pytest

from autopilot.config.settings import RetryConfig
from autopilot.enums import ErrorKind
from autopilot.exceptions import (
    AuthenticationError,
    BackendError,
    CallTimeoutError,
    NetworkError,
    RateLimitExceededError,
    ValidationError,
)
from autopilot.utils.retry import RetryPolicy, async_retry


class FailingOperation:
    """Async operation that raises the queued errors before succeeding."""

    def __init__(self, *errors: Exception, result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _policy(fake_sleep, **kwargs) -> RetryPolicy:
    kwargs.setdefault("jitter", False)
    return RetryPolicy(sleep=fake_sleep, **kwargs)


class TestDelays:
    """Backoff delay computation."""

    def test_exponential_growth(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=100.0, jitter=False)
        assert [policy.compute_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=False)
        assert policy.compute_delay(10) == 5.0

    def test_jitter_stays_within_quarter(self):
        policy = RetryPolicy(base_delay=4.0, multiplier=1.0, max_delay=4.0, jitter=True, rng=random.Random(7))
        for _ in range(100):
            assert 3.0 <= policy.compute_delay(1) <= 5.0

    def test_rate_limit_retry_after_is_respected(self):
        policy = RetryPolicy(base_delay=1.0, jitter=False)
        error = RateLimitExceededError("slow down", retry_after=9.0)
        assert policy.compute_delay(1, error) == 9.0

    def test_from_config(self):
        config = RetryConfig(max_attempts=2, base_delay=2.0, max_delay=8.0, backoff_multiplier=3.0, jitter=False)
        policy = RetryPolicy.from_config(config)
        assert policy.max_attempts == 2
        assert policy.multiplier == 3.0
        assert policy.retryable_kinds == frozenset(
            {ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED}
        )


class TestRetryDecisions:
    """Which errors consume further attempts."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, fake_sleep):
        operation = FailingOperation()
        outcome = await _policy(fake_sleep).execute(operation)

        assert outcome.success
        assert outcome.value == "ok"
        assert outcome.attempts == 1
        assert outcome.delays == ()

    @pytest.mark.asyncio
    async def test_validation_error_never_retried(self, fake_sleep):
        operation = FailingOperation(ValidationError("bad input"))
        outcome = await _policy(fake_sleep, max_attempts=5).execute(operation)

        assert not outcome.success
        assert isinstance(outcome.error, ValidationError)
        assert outcome.attempts == 1
        assert operation.calls == 1
        assert fake_sleep.calls == []

    @pytest.mark.asyncio
    async def test_authentication_error_never_retried(self, fake_sleep):
        operation = FailingOperation(AuthenticationError("bad token"))
        outcome = await _policy(fake_sleep).execute(operation)

        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_network_error_retried_with_increasing_delays(self, fake_sleep):
        operation = FailingOperation(*(NetworkError("reset") for _ in range(4)))
        outcome = await _policy(fake_sleep, max_attempts=4, base_delay=0.5, max_delay=60.0).execute(operation)

        assert not outcome.success
        assert outcome.attempts == 4
        assert operation.calls == 4
        assert list(outcome.delays) == [0.5, 1.0, 2.0]
        assert all(a < b for a, b in zip(outcome.delays, outcome.delays[1:]))

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, fake_sleep):
        operation = FailingOperation(NetworkError("reset"))
        outcome = await _policy(fake_sleep).execute(operation)

        assert outcome.success
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_server_fault_retried_even_if_kind_not_listed(self, fake_sleep):
        operation = FailingOperation(BackendError("unavailable", status_code=503))
        outcome = await _policy(fake_sleep).execute(operation)

        assert outcome.success
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_client_fault_not_retried(self, fake_sleep):
        operation = FailingOperation(BackendError("unprocessable", status_code=422))
        outcome = await _policy(fake_sleep).execute(operation)

        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_custom_retryable_kinds(self, fake_sleep):
        operation = FailingOperation(RateLimitExceededError("slow down"))
        policy = _policy(fake_sleep, retryable_kinds=[ErrorKind.NETWORK])
        outcome = await policy.execute(operation)

        assert outcome.attempts == 1


class TestAttemptTimeout:
    @pytest.mark.asyncio
    async def test_timeout_is_retryable_call_timeout(self):
        calls = 0

        async def slow() -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "done"

        policy = RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0, jitter=False, attempt_timeout=0.01)
        outcome = await policy.execute(slow)

        assert outcome.success
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_timeout_exhausts_attempts(self):
        async def hang() -> None:
            await asyncio.sleep(1)

        policy = RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0, jitter=False, attempt_timeout=0.01)
        outcome = await policy.execute(hang)

        assert isinstance(outcome.error, CallTimeoutError)
        assert outcome.attempts == 2


class TestAsyncRetryDecorator:
    @pytest.mark.asyncio
    async def test_retries_then_returns(self, fake_sleep):
        operation = FailingOperation(NetworkError("reset"), result="fetched")

        @async_retry(policy=_policy(fake_sleep))
        async def fetch() -> str:
            return await operation()

        assert await fetch() == "fetched"
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_reraises_final_error(self, fake_sleep):
        operation = FailingOperation(ValidationError("bad"))

        @async_retry(policy=_policy(fake_sleep))
        async def fetch() -> str:
            return await operation()

        with pytest.raises(ValidationError):
            await fetch()

    def test_preserves_function_name(self):
        @async_retry(max_attempts=2)
        async def fetch_health() -> None:
            pass

        assert fetch_health.__name__ == "fetch_health"
