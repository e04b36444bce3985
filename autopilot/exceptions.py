"""Custom exception hierarchy for the autopilot workflow system.

Every failure that crosses the resilience layer is expressed as one of these
exceptions, so callers can tell "needs a human" apart from "the system
itself broke" and the retry policy can decide what is worth another attempt.

Exception Hierarchy:
    AutopilotError (base)
    ├── ConfigurationError
    ├── ValidationError
    ├── AuthenticationError
    ├── RateLimitExceededError
    ├── NetworkError
    │   └── CallTimeoutError
    ├── BackendError
    │   ├── AnalysisError
    │   └── PublicationError
    ├── CircuitOpenError
    └── WorkflowError
        ├── DuplicateWorkflowError
        ├── WorkflowNotFoundError
        ├── WorkflowTimeoutError
        └── WorkflowCancelledError

Example Usage:
    >>> from autopilot.exceptions import BackendError
    >>> try:
    ...     response.raise_for_status()
    ... except httpx.HTTPStatusError as e:
    ...     raise BackendError("Analyzer rejected request", status_code=e.response.status_code) from e
"""

import asyncio

import httpx

from autopilot.enums import ErrorKind


class AutopilotError(Exception):
    """Base exception for all autopilot errors.

    Attributes:
        message: Human-readable error description
        kind: Classification used by the retry policy and the error log
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(AutopilotError):
    """Configuration file is missing, unreadable or invalid."""

    kind = ErrorKind.VALIDATION


class ValidationError(AutopilotError):
    """Bad input. Never retried.

    Examples:
        - Empty issue title
        - Collaborator rejected the request as malformed (HTTP 4xx)
    """

    kind = ErrorKind.VALIDATION


class AuthenticationError(AutopilotError):
    """Credentials were rejected. Never retried; requires operator action."""

    kind = ErrorKind.AUTHENTICATION


class RateLimitExceededError(AutopilotError):
    """Quota or concurrency ceiling reached.

    Raised locally by the rate limiter (hard rejects for daily, per-minute and
    concurrency ceilings) and for remote HTTP 429 responses.

    Attributes:
        retry_after: Seconds until the limit is expected to clear, if known
        limit: Which ceiling was hit (e.g. "per_minute", "per_day", "concurrency")
    """

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        limit: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            retry_after: Seconds until the limit clears
            limit: Name of the ceiling that was hit
        """
        self.retry_after = retry_after
        self.limit = limit
        full_message = message
        if retry_after is not None:
            full_message = f"{message} (retry after {retry_after:.1f}s)"
        super().__init__(full_message)
        self.message = message


class NetworkError(AutopilotError):
    """Transport-level failure. Retried with backoff."""

    kind = ErrorKind.NETWORK


class CallTimeoutError(NetworkError):
    """A single attempt exceeded its timeout. Retried like any network error.

    Attributes:
        timeout_seconds: The timeout that was exceeded
    """

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, timeout_seconds: float | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            timeout_seconds: The timeout that was exceeded
        """
        self.timeout_seconds = timeout_seconds
        if timeout_seconds is not None and "timeout" not in message.lower():
            message = f"{message} (timeout: {timeout_seconds}s)"
        super().__init__(message)


class BackendError(AutopilotError):
    """The collaborator backend failed or spoke an unexpected protocol.

    Retried only when ``status_code`` suggests a transient server fault
    (500 and above).

    Attributes:
        status_code: HTTP-equivalent status code (if applicable)
        response_text: Response body text (if applicable)
    """

    kind = ErrorKind.BACKEND

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
        """
        self.status_code = status_code
        self.response_text = response_text

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class AnalysisError(BackendError):
    """Issue analysis failed on malformed input or backend failure."""

    pass


class PublicationError(BackendError):
    """The publication backend rejected the change request."""

    pass


class CircuitOpenError(AutopilotError):
    """The circuit for a call site is open; the call was not attempted.

    Attributes:
        circuit_name: Name of the protected call site
        time_until_retry: Seconds until a trial call will be admitted
    """

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, circuit_name: str, time_until_retry: float) -> None:
        """Initialize exception.

        Args:
            circuit_name: Name of the protected call site
            time_until_retry: Seconds until the circuit goes half-open
        """
        self.circuit_name = circuit_name
        self.time_until_retry = time_until_retry
        super().__init__(f"Circuit {circuit_name} is open. Retry in {time_until_retry:.1f}s")


class WorkflowError(AutopilotError):
    """Orchestrator-level workflow errors.

    Attributes:
        issue_id: Issue the workflow was running for
    """

    def __init__(self, message: str, issue_id: int | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            issue_id: Issue the workflow was running for
        """
        self.issue_id = issue_id
        full_message = message if issue_id is None else f"{message} (issue: {issue_id})"
        super().__init__(full_message)
        self.message = message


class DuplicateWorkflowError(WorkflowError):
    """A run for this issue is already active."""

    kind = ErrorKind.VALIDATION


class WorkflowNotFoundError(WorkflowError):
    """No active or remembered run has the requested workflow id."""

    kind = ErrorKind.VALIDATION

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class WorkflowTimeoutError(WorkflowError):
    """The whole run exceeded its maximum execution time.

    Attributes:
        timeout_seconds: The configured maximum
    """

    kind = ErrorKind.WORKFLOW_TIMEOUT

    def __init__(self, message: str, issue_id: int | None = None, timeout_seconds: float | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        if timeout_seconds is not None:
            message = f"{message} after {timeout_seconds}s"
        super().__init__(message, issue_id=issue_id)


class WorkflowCancelledError(WorkflowError):
    """The run was cancelled on request.

    Attributes:
        reason: Reason given by the caller
    """

    kind = ErrorKind.WORKFLOW_CANCELLED

    def __init__(self, message: str, issue_id: int | None = None, reason: str | None = None) -> None:
        self.reason = reason
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, issue_id=issue_id)


# =============================================================================
# Classification
# =============================================================================


def error_status(error: BaseException) -> int | None:
    """Extract an HTTP-equivalent status code from an error, if it carries one."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def classify_error(error: BaseException) -> ErrorKind:
    """Map any exception onto the error taxonomy.

    Autopilot exceptions carry their own kind. Foreign exceptions raised by
    collaborators or transports are mapped by type and status code:

    - ``httpx.TimeoutException``, ``asyncio.TimeoutError`` -> TIMEOUT
    - ``httpx.TransportError``, ``ConnectionError``, ``OSError`` -> NETWORK
    - ``httpx.HTTPStatusError`` -> by status (401/403, 429, 5xx, other 4xx)
    - ``ValueError``, ``TypeError`` -> VALIDATION

    Args:
        error: The exception to classify

    Returns:
        The ErrorKind for the exception, UNKNOWN if nothing matches.
    """
    if isinstance(error, AutopilotError):
        return error.kind
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status in (401, 403):
            return ErrorKind.AUTHENTICATION
        if status == 429:
            return ErrorKind.RATE_LIMITED
        if status >= 500:
            return ErrorKind.BACKEND
        return ErrorKind.VALIDATION
    if isinstance(error, (httpx.TransportError, ConnectionError, OSError)):
        return ErrorKind.NETWORK
    if isinstance(error, (ValueError, TypeError)):
        return ErrorKind.VALIDATION
    return ErrorKind.UNKNOWN
