"""Circuit breaker for protected call sites.

Tracks consecutive failures of one external capability and stops calling it
while it is consistently failing:

    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN --(recovery_timeout elapsed)--> HALF_OPEN (one trial call at a time)
    HALF_OPEN --(success_threshold consecutive successes)--> CLOSED
    HALF_OPEN --(any failure)--> OPEN

Errors that say nothing about backend health (validation, authentication)
are not counted as failures.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from autopilot.config.settings import CircuitBreakerConfig
from autopilot.enums import CircuitState, ErrorKind
from autopilot.exceptions import CircuitOpenError, classify_error

log = structlog.get_logger(__name__)

T = TypeVar("T")

NON_FAULT_KINDS = frozenset({ErrorKind.VALIDATION, ErrorKind.AUTHENTICATION})


class CircuitBreaker:
    """Closed / Open / Half-Open breaker for one call site.

    Example:
        >>> breaker = CircuitBreaker("analyzer", failure_threshold=3)
        >>> result = await breaker.call(lambda: analyzer.analyze(issue))
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._half_open_successes = 0
        self._opened_at: float | None = None
        self._last_failure_at: float | None = None
        self._trial_in_flight = False

        self._total_failures = 0
        self._total_successes = 0
        self._rejected_calls = 0
        self._times_opened = 0

    @classmethod
    def from_config(
        cls, name: str, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic
    ) -> CircuitBreaker:
        return cls(
            name,
            failure_threshold=config.failure_threshold,
            recovery_timeout=config.recovery_timeout,
            success_threshold=config.success_threshold,
            clock=clock,
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def time_until_retry(self) -> float:
        """Seconds until an open circuit admits a trial call."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._times_opened += 1
        if new_state != CircuitState.HALF_OPEN:
            self._half_open_successes = 0
            self._trial_in_flight = False
        if new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._opened_at = None
        log.info(
            "circuit_state_changed",
            circuit=self.name,
            from_state=str(old_state),
            to_state=str(new_state),
        )

    def allow_request(self) -> bool:
        """Check whether a call may proceed, admitting a trial when due.

        An admitted half-open trial must be followed by exactly one of
        record_success, record_failure or record_ignored.
        """
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self.time_until_retry > 0:
                return False
            self._transition(CircuitState.HALF_OPEN)

        if self._trial_in_flight:
            return False
        self._trial_in_flight = True
        return True

    def before_call(self) -> None:
        """Gate a call.

        Raises:
            CircuitOpenError: If the call must not be attempted
        """
        if not self.allow_request():
            self._rejected_calls += 1
            log.debug("circuit_rejected_call", circuit=self.name, state=str(self._state))
            raise CircuitOpenError(self.name, self.time_until_retry)

    def record_success(self) -> None:
        self._total_successes += 1
        if self._state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._half_open_successes += 1
            if self._half_open_successes >= self.success_threshold:
                self._transition(CircuitState.CLOSED)
        else:
            self._consecutive_failures = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        """Record a failed call.

        Args:
            error: The failure; non-fault errors are not counted
        """
        if error is not None and classify_error(error) in NON_FAULT_KINDS:
            self.record_ignored()
            return

        self._total_failures += 1
        self._last_failure_at = self._clock()

        if self._state == CircuitState.HALF_OPEN:
            log.warning("circuit_trial_failed", circuit=self.name, error=str(error) if error else None)
            self._transition(CircuitState.OPEN)
            return

        self._consecutive_failures += 1
        if self._state == CircuitState.CLOSED and self._consecutive_failures >= self.failure_threshold:
            log.warning(
                "circuit_opened",
                circuit=self.name,
                consecutive_failures=self._consecutive_failures,
                recovery_timeout=self.recovery_timeout,
            )
            self._transition(CircuitState.OPEN)

    def record_ignored(self) -> None:
        """Release a half-open trial slot without counting the outcome."""
        if self._state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation through the breaker.

        Raises:
            CircuitOpenError: If the circuit rejects the call
        """
        self.before_call()
        try:
            result = await operation()
        except Exception as e:
            self.record_failure(e)
            raise
        except BaseException:
            self.record_ignored()
            raise
        self.record_success()
        return result

    def get_status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": str(self._state),
            "consecutive_failures": self._consecutive_failures,
            "half_open_successes": self._half_open_successes,
            "failure_threshold": self.failure_threshold,
            "success_threshold": self.success_threshold,
            "time_until_retry": round(self.time_until_retry, 3),
            "last_failure_at": self._last_failure_at,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
            "rejected_calls": self._rejected_calls,
            "times_opened": self._times_opened,
        }

    def reset(self) -> None:
        """Force the circuit closed and clear its counters."""
        self._transition(CircuitState.CLOSED)
        self._last_failure_at = None
        self._total_failures = 0
        self._total_successes = 0
        self._rejected_calls = 0
        self._times_opened = 0
