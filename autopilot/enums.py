"""Enumerations for workflow, circuit and error classification."""

from enum import Enum


class WorkflowState(str, Enum):
    """States of a single workflow run.

    The happy path is:
    INITIALIZING -> ANALYZING_ISSUE -> CHECKING_FEASIBILITY ->
    GENERATING_SOLUTION -> REVIEWING_CODE -> CREATING_PUBLICATION -> COMPLETE

    REQUIRES_HUMAN_REVIEW, FAILED and CANCELLED can be reached from any
    non-terminal state.
    """

    INITIALIZING = "initializing"
    ANALYZING_ISSUE = "analyzing_issue"
    CHECKING_FEASIBILITY = "checking_feasibility"
    GENERATING_SOLUTION = "generating_solution"
    REVIEWING_CODE = "reviewing_code"
    CREATING_PUBLICATION = "creating_publication"
    COMPLETE = "complete"
    REQUIRES_HUMAN_REVIEW = "requires_human_review"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if no further transition may follow this state."""
        return self in (
            WorkflowState.COMPLETE,
            WorkflowState.REQUIRES_HUMAN_REVIEW,
            WorkflowState.FAILED,
            WorkflowState.CANCELLED,
        )


class StageName(str, Enum):
    """Pipeline stages that call an external collaborator."""

    ANALYSIS = "analysis"
    RESOLUTION = "resolution"
    REVIEW = "review"
    PUBLICATION = "publication"

    def __str__(self) -> str:
        return self.value


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __str__(self) -> str:
        return self.value


class ErrorKind(str, Enum):
    """Classification of failures crossing the resilience layer.

    The kind decides how a failure is treated:
    - VALIDATION, AUTHENTICATION: never retried
    - RATE_LIMITED: retried only after the stated wait
    - NETWORK, TIMEOUT: retried with backoff
    - BACKEND: retried when the status suggests a transient server fault
    - CIRCUIT_OPEN: synthetic, the call was not attempted
    - WORKFLOW_TIMEOUT, WORKFLOW_CANCELLED: synthetic, orchestrator-level
    """

    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    BACKEND = "backend"
    CIRCUIT_OPEN = "circuit_open"
    WORKFLOW_TIMEOUT = "workflow_timeout"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    UNKNOWN = "unknown"

    def __str__(self) -> str:
        return self.value


class AlertType(str, Enum):
    """What an operational alert is about."""

    WORKFLOW_FAILURE = "workflow_failure"
    PERFORMANCE_ISSUE = "performance_issue"

    def __str__(self) -> str:
        return self.value


class AlertSeverity(str, Enum):
    """How urgently an alert needs attention."""

    MEDIUM = "medium"
    HIGH = "high"

    def __str__(self) -> str:
        return self.value
