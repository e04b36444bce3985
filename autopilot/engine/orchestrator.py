"""
Workflow orchestrator for the issue-to-change-request pipeline.

This module provides the WorkflowOrchestrator class, the state machine that
turns an incoming issue into a reviewed, published change request. For each
issue it drives:

    initializing -> analyzing_issue -> checking_feasibility ->
    generating_solution -> reviewing_code -> creating_publication -> complete

with side exits to requires_human_review (deterministic escalation), failed
(the system broke) and cancelled.

Architecture Overview:
    Each of the four collaborators (analyzer, resolver, reviewer, publisher)
    sits behind its own ResilientClient, shared by every run. The
    orchestrator never retries a stage itself; retries, rate limiting,
    caching and circuit breaking all happen inside the clients. The
    orchestrator only decides between "advance", "escalate to a human" and
    "fail the run".

Timeouts and Cancellation:
    A whole-run timeout forces the run to failed while the outstanding stage
    is abandoned: it keeps running in the background and its result is
    discarded when it arrives. Cancellation is cooperative in the same way.
    Once a run is terminal, no later stage completion can change its state.

Example:
    >>> orchestrator = WorkflowOrchestrator(settings, analyzer, resolver, reviewer, publisher)
    >>> async with orchestrator:
    ...     result = await orchestrator.process_issue(123, "Test Issue", "Steps to reproduce...")
    >>> result.final_state
    <WorkflowState.COMPLETE: 'complete'>
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import structlog

from autopilot.config.settings import AutomationSettings
from autopilot.engine.resilient_client import Cacheable, ResilientClient
from autopilot.enums import AlertSeverity, AlertType, ErrorKind, StageName, WorkflowState
from autopilot.exceptions import (
    DuplicateWorkflowError,
    ValidationError,
    WorkflowCancelledError,
    WorkflowNotFoundError,
    WorkflowTimeoutError,
    classify_error,
)
from autopilot.models.collaborators import (
    ChangeSet,
    IssueAnalysis,
    IssueComplexity,
    IssueReport,
    Publication,
    Resolution,
    ReviewResult,
)
from autopilot.models.domain import StageResult, WorkflowInsights, WorkflowResult, WorkflowRun
from autopilot.monitoring.alerts import AlertManager
from autopilot.monitoring.metrics import MetricsCollector
from autopilot.providers.base import Analyzer, Publisher, Resolver, Reviewer
from autopilot.utils.caching import CacheKeyBuilder

log = structlog.get_logger(__name__)

COLLABORATORS = ("analyzer", "resolver", "reviewer", "publisher")

STAGE_COLLABORATOR = {
    StageName.ANALYSIS: "analyzer",
    StageName.RESOLUTION: "resolver",
    StageName.REVIEW: "reviewer",
    StageName.PUBLICATION: "publisher",
}

# Health thresholds over completed runs
UNHEALTHY_SUCCESS_RATE = 0.7
DEGRADED_SUCCESS_RATE = 0.9
UNHEALTHY_ERROR_COUNT = 10
DEGRADED_AVERAGE_MS = 30_000.0

# Insight scoring: (seconds over which, points deducted), checked longest first
DURATION_PENALTIES = ((60.0, 40), (30.0, 20), (15.0, 10))
MAX_RETRY_PENALTY = 30
MAX_ERROR_PENALTY = 20


class _RunAbandoned(Exception):
    """The run reached a terminal state while its pipeline was still going."""


class WorkflowOrchestrator:
    """Drive issues through the pipeline and track every run.

    Attributes:
        settings: Workflow thresholds and per-collaborator resilience settings.
        clients: Resilient client per collaborator name, shared by all runs.
        alerts: Alerts raised for failed, cancelled and slow runs.

    Example:
        >>> orchestrator = WorkflowOrchestrator(settings, analyzer, resolver, reviewer, publisher)
        >>> result = await orchestrator.process_issue(42, "Crash on save", "...")
        >>> if result.requires_human_review:
        ...     print("Escalated:", result.error)
        >>> await orchestrator.aclose()
    """

    def __init__(
        self,
        settings: AutomationSettings,
        analyzer: Analyzer,
        resolver: Resolver,
        reviewer: Reviewer,
        publisher: Publisher,
        clients: dict[str, ResilientClient] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Automation settings.
            analyzer: Issue analysis collaborator.
            resolver: Solution generation collaborator.
            reviewer: Code review collaborator.
            publisher: Change request publication collaborator.
            clients: Pre-built resilient clients by collaborator name; any
                missing client is built from the matching settings section.
            clock: Monotonic clock used for durations.
        """
        self.settings = settings
        self.analyzer = analyzer
        self.resolver = resolver
        self.reviewer = reviewer
        self.publisher = publisher
        self._clock = clock

        provided = clients or {}
        self.clients: dict[str, ResilientClient] = {
            name: provided.get(name) or ResilientClient.from_config(name, settings.collaborator(name))
            for name in COLLABORATORS
        }

        self._active: dict[int, WorkflowRun] = {}
        self._history: deque[WorkflowResult] = deque(maxlen=settings.workflow.history_size)
        self._abandoned: set[asyncio.Task[None]] = set()
        self.alerts = AlertManager(max_alerts=settings.workflow.max_alerts)

        self._total_workflows = 0
        self._outcomes: dict[str, int] = {str(state): 0 for state in WorkflowState if state.is_terminal}
        self._total_execution_ms = 0.0
        self._errors_by_kind: dict[str, int] = {}
        self._failure_reasons: dict[str, int] = {}
        self._stage_time_totals: dict[StageName, float] = {}
        self._stage_time_counts: dict[StageName, int] = {}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start background maintenance for every client."""
        for client in self.clients.values():
            client.start()

    async def aclose(self) -> None:
        """Cancel abandoned stage work and stop client maintenance."""
        pending = [task for task in self._abandoned if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._abandoned.clear()
        for client in self.clients.values():
            await client.aclose()

    async def __aenter__(self) -> WorkflowOrchestrator:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def process_issue(self, issue_id: int, title: str, body: str = "") -> WorkflowResult:
        """Run the full pipeline for one issue.

        Args:
            issue_id: Issue identifier, unique among active runs.
            title: Issue title (must not be empty).
            body: Issue body.

        Returns:
            WorkflowResult describing the terminal state.

        Raises:
            ValidationError: If the title is empty.
            DuplicateWorkflowError: If a run for the issue is already active.
        """
        if not title or not title.strip():
            raise ValidationError("Issue title must not be empty")
        if issue_id in self._active:
            raise DuplicateWorkflowError("A workflow is already active for this issue", issue_id=issue_id)

        run = WorkflowRun(
            issue_id=issue_id,
            workflow_id=f"wf-{issue_id}-{uuid.uuid4().hex[:8]}",
            title=title,
            body=body,
            started_monotonic=self._clock(),
        )
        self._active[issue_id] = run
        MetricsCollector.update_active_workflows(len(self._active))

        with structlog.contextvars.bound_contextvars(workflow_id=run.workflow_id, issue_id=issue_id):
            log.info("workflow_started", title=title)
            try:
                await self._supervise(run)
            finally:
                result = self._finish(run)
            log.info(
                "workflow_finished",
                final_state=str(result.final_state),
                success=result.success,
                execution_time_ms=round(result.execution_time_ms, 1),
            )
        return result

    async def _supervise(self, run: WorkflowRun) -> None:
        """Race the pipeline against the whole-run timeout and cancellation."""
        timeout = self.settings.workflow.max_workflow_seconds
        pipeline = asyncio.create_task(self._run_pipeline(run), name=f"pipeline-{run.workflow_id}")
        cancel_wait = asyncio.create_task(run.cancel_requested.wait())

        try:
            done, _ = await asyncio.wait(
                {pipeline, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            pipeline.cancel()
            self._terminate(run, WorkflowState.CANCELLED)
            raise
        finally:
            cancel_wait.cancel()

        if pipeline in done:
            return

        if cancel_wait not in done:
            error = WorkflowTimeoutError(
                "Workflow exceeded maximum execution time", issue_id=run.issue_id, timeout_seconds=timeout
            )
            if self._terminate(run, WorkflowState.FAILED):
                run.record_error(error.kind, str(error))
                log.error("workflow_timeout", timeout_seconds=timeout, state_at_timeout=str(run.state))

        self._abandon(pipeline)

    def _abandon(self, task: asyncio.Task[None]) -> None:
        if task.done():
            return
        self._abandoned.add(task)
        task.add_done_callback(self._on_abandoned_done)
        if self.settings.workflow.cancel_abandoned_stages:
            task.cancel()
        log.warning("stage_abandoned", cancelled=self.settings.workflow.cancel_abandoned_stages)

    def _on_abandoned_done(self, task: asyncio.Task[None]) -> None:
        self._abandoned.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning("abandoned_stage_error", error=str(task.exception()))

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _transition(self, run: WorkflowRun, new_state: WorkflowState) -> None:
        """Advance a run; a run that is already terminal never moves again."""
        if run.state.is_terminal:
            raise _RunAbandoned(str(run.state))
        old_state = run.state
        run.state = new_state
        log.info("workflow_state_changed", from_state=str(old_state), to_state=str(new_state))

    def _terminate(self, run: WorkflowRun, state: WorkflowState) -> bool:
        """Force a terminal state from outside the pipeline.

        Returns:
            False if the run had already reached a terminal state
        """
        if run.state.is_terminal:
            return False
        self._transition(run, state)
        return True

    def _escalate(self, run: WorkflowRun, reason: str) -> None:
        self._transition(run, WorkflowState.REQUIRES_HUMAN_REVIEW)
        run.escalation_reason = reason
        log.info("workflow_escalated", reason=reason)

    def _fail(self, run: WorkflowRun, result: StageResult) -> None:
        self._transition(run, WorkflowState.FAILED)
        log.error("stage_failed", stage=str(result.stage), error=str(result.error), attempts=result.attempts)

    async def _run_pipeline(self, run: WorkflowRun) -> None:
        try:
            await self._pipeline(run)
        except _RunAbandoned:
            return
        except Exception as e:
            if run.state.is_terminal:
                log.warning("late_stage_error", error=str(e), state=str(run.state))
                return
            run.record_error(classify_error(e), f"Unexpected error: {e}")
            log.error("workflow_unexpected_error", error=str(e), exc_info=True)
            self._transition(run, WorkflowState.FAILED)

    async def _pipeline(self, run: WorkflowRun) -> None:
        issue = IssueReport(number=run.issue_id, title=run.title, body=run.body)

        # Analysis
        self._transition(run, WorkflowState.ANALYZING_ISSUE)
        result = await self._run_stage(
            run,
            StageName.ANALYSIS,
            CacheKeyBuilder.build_namespaced_key("analysis", issue.number, issue.title, issue.body),
            lambda: self.analyzer.analyze(issue),
        )
        if not result.success:
            self._fail(run, result)
            return
        analysis: IssueAnalysis = result.payload

        # Feasibility
        self._transition(run, WorkflowState.CHECKING_FEASIBILITY)
        reason = self.escalation_reason(analysis)
        if reason is not None:
            self._escalate(run, reason)
            return

        # Solution generation
        self._transition(run, WorkflowState.GENERATING_SOLUTION)
        result = await self._run_stage(
            run,
            StageName.RESOLUTION,
            CacheKeyBuilder.build_namespaced_key(
                "resolution", issue.number, issue.title, issue.body, analysis.model_dump_json()
            ),
            lambda: self.resolver.resolve(issue, analysis),
            cacheable=lambda resolution: resolution.success,
        )
        if not result.success:
            self._fail(run, result)
            return
        resolution: Resolution = result.payload
        if not resolution.success or resolution.change_set is None:
            self._escalate(run, f"Solution generation was unsuccessful: {resolution.reasoning or 'no reason given'}")
            return
        change_set: ChangeSet = resolution.change_set

        # Review
        self._transition(run, WorkflowState.REVIEWING_CODE)
        result = await self._run_stage(
            run,
            StageName.REVIEW,
            CacheKeyBuilder.build_namespaced_key("review", issue.number, change_set.model_dump_json()),
            lambda: self.reviewer.review(change_set, issue),
        )
        if not result.success:
            self._fail(run, result)
            return
        review: ReviewResult = result.payload
        threshold = self.settings.workflow.approval_threshold
        if not review.approved:
            self._escalate(run, f"Review rejected the change (score {review.score:.2f})")
            return
        if review.score < threshold:
            self._escalate(run, f"Review score {review.score:.2f} below approval threshold {threshold:.2f}")
            return

        # Publication
        self._transition(run, WorkflowState.CREATING_PUBLICATION)
        result = await self._run_stage(
            run,
            StageName.PUBLICATION,
            None,
            lambda: self.publisher.publish(change_set, issue),
            cacheable=False,
        )
        if not result.success:
            self._fail(run, result)
            return
        publication: Publication = result.payload
        log.info("change_request_published", identifier=publication.identifier, url=publication.url)

        self._transition(run, WorkflowState.COMPLETE)

    async def _run_stage(
        self,
        run: WorkflowRun,
        stage: StageName,
        key: str | None,
        operation: Callable[[], Awaitable[Any]],
        cacheable: Cacheable = True,
    ) -> StageResult:
        """Call one collaborator through its resilient client."""
        client = self.clients[STAGE_COLLABORATOR[stage]]
        run.stage_started_at[stage] = datetime.now(UTC)
        started = self._clock()
        log.info("stage_started", stage=str(stage))

        outcome = await client.execute(key, operation, cacheable=cacheable, partition=str(run.issue_id))
        duration = self._clock() - started

        if run.state.is_terminal:
            log.warning(
                "late_stage_completion",
                stage=str(stage),
                success=outcome.success,
                final_state=str(run.state),
            )
            raise _RunAbandoned(str(run.state))

        run.stage_durations[stage] = duration
        run.stage_attempts[stage] = outcome.attempts
        self._stage_time_totals[stage] = self._stage_time_totals.get(stage, 0.0) + duration
        self._stage_time_counts[stage] = self._stage_time_counts.get(stage, 0) + 1
        MetricsCollector.record_stage_duration(str(stage), duration)

        if outcome.success:
            run.outputs[stage] = outcome.value
        elif outcome.error is not None:
            run.record_error(classify_error(outcome.error), str(outcome.error), stage=stage)

        log.info(
            "stage_finished",
            stage=str(stage),
            success=outcome.success,
            attempts=outcome.attempts,
            from_cache=outcome.from_cache,
            duration=round(duration, 3),
        )
        return StageResult(
            stage=stage,
            success=outcome.success,
            payload=outcome.value,
            error=outcome.error,
            duration=duration,
            attempts=outcome.attempts,
            from_cache=outcome.from_cache,
        )

    def escalation_reason(self, analysis: IssueAnalysis) -> str | None:
        """Decide whether an analyzed issue needs a human.

        Returns:
            The reason for escalation, or None if the pipeline may continue
        """
        config = self.settings.workflow
        if not analysis.feasible:
            return "Analysis marked the issue as not feasible for automation"
        if analysis.confidence < config.feasibility_threshold:
            return (
                f"Analysis confidence {analysis.confidence:.2f} "
                f"below feasibility threshold {config.feasibility_threshold:.2f}"
            )
        if analysis.complexity == IssueComplexity.CRITICAL:
            return "Critical complexity issues require human review"
        if analysis.complexity == IssueComplexity.HIGH and analysis.confidence < config.high_complexity_confidence:
            return (
                f"High complexity issue with confidence {analysis.confidence:.2f} "
                f"below {config.high_complexity_confidence:.2f}"
            )
        if analysis.category.lower() in {category.lower() for category in config.escalate_categories}:
            return f"Issues in category '{analysis.category}' require human review"
        return None

    # -------------------------------------------------------------------------
    # Completion and metrics
    # -------------------------------------------------------------------------

    def _finish(self, run: WorkflowRun) -> WorkflowResult:
        if not run.state.is_terminal:
            run.record_error(ErrorKind.UNKNOWN, "Workflow ended without reaching a terminal state")
            run.state = WorkflowState.FAILED

        execution_time_ms = (self._clock() - run.started_monotonic) * 1000
        final_state = run.state
        success = final_state == WorkflowState.COMPLETE

        result = WorkflowResult(
            success=success,
            issue_id=run.issue_id,
            workflow_id=run.workflow_id,
            final_state=final_state,
            requires_human_review=final_state == WorkflowState.REQUIRES_HUMAN_REVIEW,
            error=None if success else self._summarize(run),
            errors=[record.summary() for record in run.errors],
            error_records=list(run.errors),
            execution_time_ms=execution_time_ms,
            stage_attempts=dict(run.stage_attempts),
            stage_durations=dict(run.stage_durations),
            outputs=dict(run.outputs),
        )

        self._active.pop(run.issue_id, None)
        self._history.append(result)
        for client in self.clients.values():
            client.discard_partition(str(run.issue_id))
        self._update_metrics(run, result)
        self._check_alerts(run, result)
        return result

    @staticmethod
    def _summarize(run: WorkflowRun) -> str:
        if run.state == WorkflowState.REQUIRES_HUMAN_REVIEW and run.escalation_reason:
            return run.escalation_reason
        if run.errors:
            return run.errors[0].summary()
        return f"Workflow ended in state {run.state}"

    def _update_metrics(self, run: WorkflowRun, result: WorkflowResult) -> None:
        self._total_workflows += 1
        state = str(result.final_state)
        self._outcomes[state] = self._outcomes.get(state, 0) + 1
        self._total_execution_ms += result.execution_time_ms

        for record in run.errors:
            kind = str(record.kind)
            self._errors_by_kind[kind] = self._errors_by_kind.get(kind, 0) + 1
            MetricsCollector.record_error(kind, str(record.stage) if record.stage else "workflow")

        if result.final_state == WorkflowState.FAILED:
            reason = str(run.errors[0].kind) if run.errors else str(ErrorKind.UNKNOWN)
            self._failure_reasons[reason] = self._failure_reasons.get(reason, 0) + 1

        MetricsCollector.record_workflow_outcome(state, result.execution_time_ms / 1000)
        MetricsCollector.update_active_workflows(len(self._active))

    def _check_alerts(self, run: WorkflowRun, result: WorkflowResult) -> None:
        config = self.settings.workflow
        if result.final_state == WorkflowState.FAILED:
            self.alerts.raise_alert(
                f"workflow-failed-{result.workflow_id}",
                AlertType.WORKFLOW_FAILURE,
                AlertSeverity.HIGH,
                f"Workflow {result.workflow_id} failed: {result.error}",
                workflow_id=result.workflow_id,
            )
        elif result.final_state == WorkflowState.CANCELLED:
            self.alerts.raise_alert(
                f"workflow-cancelled-{result.workflow_id}",
                AlertType.WORKFLOW_FAILURE,
                AlertSeverity.MEDIUM,
                f"Workflow for issue {result.issue_id} cancelled: {run.cancellation_reason or 'task cancelled'}",
                workflow_id=result.workflow_id,
            )

        seconds = result.execution_time_ms / 1000
        if seconds > config.slow_workflow_seconds:
            self.alerts.raise_alert(
                f"workflow-slow-{result.workflow_id}",
                AlertType.PERFORMANCE_ISSUE,
                AlertSeverity.MEDIUM,
                f"Workflow {result.workflow_id} took {seconds:.1f}s",
                workflow_id=result.workflow_id,
            )

        total = self._total_workflows
        success_rate = self._outcomes.get(str(WorkflowState.COMPLETE), 0) / total
        if total > config.alert_min_workflows and success_rate < config.alert_success_rate:
            self.alerts.raise_alert(
                "low-success-rate",
                AlertType.WORKFLOW_FAILURE,
                AlertSeverity.HIGH,
                f"Workflow success rate is {success_rate * 100:.1f}%",
            )

    # -------------------------------------------------------------------------
    # Queries and control
    # -------------------------------------------------------------------------

    def get_current_state(self, issue_id: int) -> WorkflowState | None:
        """State of the active run for an issue, None when no run is active."""
        run = self._active.get(issue_id)
        return run.state if run else None

    def get_active_workflows(self) -> list[dict[str, Any]]:
        return [
            {
                "issue_id": run.issue_id,
                "workflow_id": run.workflow_id,
                "state": run.state,
                "started_at": run.started_at,
            }
            for run in self._active.values()
        ]

    def get_completed_workflows(self, limit: int | None = None) -> list[WorkflowResult]:
        """Most recent completed runs, newest last."""
        history = list(self._history)
        if limit is None:
            return history
        return history[-limit:] if limit > 0 else []

    def get_global_metrics(self) -> dict[str, Any]:
        """Aggregate metrics over every completed run.

        Times are in milliseconds. ``error_count`` is the number of failed
        runs; escalations are counted in ``human_intervention_count``.
        """
        total = self._total_workflows
        completed = self._outcomes.get(str(WorkflowState.COMPLETE), 0)
        return {
            "total_workflows": total,
            "success_rate": completed / total if total else 0.0,
            "error_count": self._outcomes.get(str(WorkflowState.FAILED), 0),
            "average_execution_time": self._total_execution_ms / total if total else 0.0,
            "component_execution_times": {
                str(stage): (self._stage_time_totals[stage] / self._stage_time_counts[stage]) * 1000
                for stage in self._stage_time_totals
            },
            "concurrent_workflows": len(self._active),
            "human_intervention_count": self._outcomes.get(str(WorkflowState.REQUIRES_HUMAN_REVIEW), 0),
            "outcomes": dict(self._outcomes),
            "failure_reasons": dict(self._failure_reasons),
            "errors_by_kind": dict(self._errors_by_kind),
        }

    def get_system_health(self) -> dict[str, Any]:
        """Overall health from run metrics and collaborator circuits.

        Returns:
            Dictionary with ``status`` (healthy, degraded or unhealthy), the
            global metrics, each collaborator client's health snapshot and
            the unacknowledged alerts
        """
        metrics = self.get_global_metrics()
        collaborators = {name: client.get_health() for name, client in self.clients.items()}

        status = "healthy"
        if metrics["total_workflows"]:
            if (
                metrics["success_rate"] < UNHEALTHY_SUCCESS_RATE
                or metrics["error_count"] > UNHEALTHY_ERROR_COUNT
            ):
                status = "unhealthy"
            elif (
                metrics["success_rate"] < DEGRADED_SUCCESS_RATE
                or metrics["average_execution_time"] > DEGRADED_AVERAGE_MS
            ):
                status = "degraded"
        if status == "healthy" and any(health["circuit_state"] != "closed" for health in collaborators.values()):
            status = "degraded"

        return {
            "status": status,
            "metrics": metrics,
            "collaborators": collaborators,
            "alerts": [alert.to_dict() for alert in self.alerts.get_active_alerts()],
        }

    def get_workflow_insights(self, workflow_id: str) -> WorkflowInsights:
        """Score a run and point out where it struggled.

        Active runs are looked up first, then the completed history.

        Raises:
            WorkflowNotFoundError: If no active or remembered run has the id
        """
        run = next((r for r in self._active.values() if r.workflow_id == workflow_id), None)
        if run is not None:
            return self._insights(
                workflow_id,
                run.issue_id,
                run.state,
                active=True,
                execution_time_ms=(self._clock() - run.started_monotonic) * 1000,
                stage_attempts=run.stage_attempts,
                stage_durations=run.stage_durations,
                error_count=len(run.errors),
            )

        for result in reversed(self._history):
            if result.workflow_id == workflow_id:
                return self._insights(
                    workflow_id,
                    result.issue_id,
                    result.final_state,
                    active=False,
                    execution_time_ms=result.execution_time_ms,
                    stage_attempts=result.stage_attempts,
                    stage_durations=result.stage_durations,
                    error_count=len(result.error_records),
                )

        raise WorkflowNotFoundError(workflow_id)

    def _insights(
        self,
        workflow_id: str,
        issue_id: int,
        state: WorkflowState,
        active: bool,
        execution_time_ms: float,
        stage_attempts: dict[StageName, int],
        stage_durations: dict[StageName, float],
        error_count: int,
    ) -> WorkflowInsights:
        seconds = execution_time_ms / 1000
        retry_count = sum(max(0, attempts - 1) for attempts in stage_attempts.values())

        score = 100
        for limit, penalty in DURATION_PENALTIES:
            if seconds > limit:
                score -= penalty
                break
        score -= min(MAX_RETRY_PENALTY, retry_count * 10)
        score -= min(MAX_ERROR_PENALTY, error_count * 5)

        bottlenecks: list[str] = []
        recommendations: list[str] = []
        if seconds > self.settings.workflow.slow_workflow_seconds:
            bottlenecks.append("Long execution time")
            recommendations.append("Consider optimizing workflow for faster execution")
            recommendations.append("Check for performance bottlenecks in collaborator calls")
        if retry_count > 2:
            bottlenecks.append("Multiple retries required")
            recommendations.append("Review retry policies and error handling")
            recommendations.append("Consider increasing timeouts or improving collaborator reliability")
        if error_count > 1:
            bottlenecks.append("Multiple errors occurred")

        return WorkflowInsights(
            workflow_id=workflow_id,
            issue_id=issue_id,
            state=state,
            active=active,
            performance_score=max(0, score),
            execution_time_ms=execution_time_ms,
            retry_count=retry_count,
            error_count=error_count,
            bottlenecks=bottlenecks,
            recommendations=recommendations,
            phase_timings={str(stage): duration * 1000 for stage, duration in stage_durations.items()},
        )

    def cancel_workflow(self, issue_id: int, reason: str = "Cancelled by request") -> bool:
        """Cancel an active run.

        Cancellation is cooperative: the run becomes ``cancelled`` at once
        and the waiting caller is released, while any in-flight collaborator
        call is left to finish and its result ignored.

        Returns:
            True if an active run was cancelled
        """
        run = self._active.get(issue_id)
        if run is None or run.state.is_terminal:
            return False

        error = WorkflowCancelledError("Workflow cancelled", issue_id=issue_id, reason=reason)
        run.cancellation_reason = reason
        with structlog.contextvars.bound_contextvars(workflow_id=run.workflow_id, issue_id=issue_id):
            self._transition(run, WorkflowState.CANCELLED)
            run.record_error(error.kind, str(error))
            log.info("workflow_cancelled", reason=reason)
        run.cancel_requested.set()
        return True
