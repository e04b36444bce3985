"""
Domain models for workflow runs.

This module contains the data classes the orchestrator uses to track a run
from creation to its terminal state, and the result handed back to callers.

Example:
    Inspecting a finished run::

        result = await orchestrator.process_issue(123, "Test Issue", "Body")
        if result.requires_human_review:
            notify_maintainers(result.issue_id, result.error)
        elif not result.success:
            page_operator(result.errors)
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from autopilot.enums import ErrorKind, StageName, WorkflowState


@dataclass(frozen=True)
class ErrorRecord:
    """One entry of a run's error log."""

    timestamp: datetime
    kind: ErrorKind
    message: str
    stage: StageName | None = None

    def summary(self) -> str:
        prefix = f"[{self.stage}] " if self.stage else ""
        return f"{prefix}{self.kind}: {self.message}"


@dataclass
class StageResult:
    """Output of one pipeline stage.

    Either ``success`` with a payload, or a failure carrying the final
    classified error. ``attempts`` is the number of calls the resilient
    client made (0 when served from cache or rejected before calling).
    """

    stage: StageName
    success: bool
    payload: Any = None
    error: Exception | None = None
    duration: float = 0.0
    attempts: int = 0
    from_cache: bool = False


@dataclass
class WorkflowRun:
    """A single live execution of the pipeline for one issue.

    Mutated only by the orchestrator. Once ``state`` is terminal, no further
    transition takes effect.
    """

    issue_id: int
    workflow_id: str
    title: str
    body: str
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_monotonic: float = 0.0
    state: WorkflowState = WorkflowState.INITIALIZING
    stage_started_at: dict[StageName, datetime] = field(default_factory=dict)
    stage_durations: dict[StageName, float] = field(default_factory=dict)
    stage_attempts: dict[StageName, int] = field(default_factory=dict)
    errors: list[ErrorRecord] = field(default_factory=list)
    outputs: dict[StageName, Any] = field(default_factory=dict)
    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event)
    cancellation_reason: str | None = None
    escalation_reason: str | None = None

    def record_error(self, kind: ErrorKind, message: str, stage: StageName | None = None) -> ErrorRecord:
        record = ErrorRecord(timestamp=datetime.now(UTC), kind=kind, message=message, stage=stage)
        self.errors.append(record)
        return record


@dataclass
class WorkflowResult:
    """Terminal outcome of a run, as returned by ``process_issue``.

    ``requires_human_review`` separates escalations (the system worked, a
    human has to decide) from failures (the system itself broke).
    """

    success: bool
    issue_id: int
    workflow_id: str
    final_state: WorkflowState
    requires_human_review: bool = False
    error: str | None = None
    errors: list[str] = field(default_factory=list)
    error_records: list[ErrorRecord] = field(default_factory=list)
    execution_time_ms: float = 0.0
    stage_attempts: dict[StageName, int] = field(default_factory=dict)
    stage_durations: dict[StageName, float] = field(default_factory=dict)
    outputs: dict[StageName, Any] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Serialize for CLI output and logs."""
        return {
            "success": self.success,
            "issue_id": self.issue_id,
            "workflow_id": self.workflow_id,
            "final_state": str(self.final_state),
            "requires_human_review": self.requires_human_review,
            "error": self.error,
            "errors": list(self.errors),
            "execution_time_ms": round(self.execution_time_ms, 1),
            "stage_attempts": {str(stage): count for stage, count in self.stage_attempts.items()},
            "completed_at": self.completed_at.isoformat(),
        }


@dataclass
class WorkflowInsights:
    """Performance assessment of one run, active or completed.

    ``performance_score`` runs from 0 to 100 and drops for long runs,
    retried stages and recorded errors. Phase timings are in milliseconds.
    """

    workflow_id: str
    issue_id: int
    state: WorkflowState
    active: bool
    performance_score: int
    execution_time_ms: float
    retry_count: int
    error_count: int
    bottlenecks: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    phase_timings: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "issue_id": self.issue_id,
            "state": str(self.state),
            "active": self.active,
            "performance_score": self.performance_score,
            "execution_time_ms": round(self.execution_time_ms, 1),
            "retry_count": self.retry_count,
            "error_count": self.error_count,
            "bottlenecks": list(self.bottlenecks),
            "recommendations": list(self.recommendations),
            "phase_timings": dict(self.phase_timings),
        }
