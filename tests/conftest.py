"""Pytest configuration and shared fixtures."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from autopilot.config.settings import AutomationSettings, CollaboratorConfig, RetryConfig, WorkflowConfig
from autopilot.engine.orchestrator import WorkflowOrchestrator
from autopilot.models.collaborators import (
    ChangeSet,
    FileChange,
    IssueAnalysis,
    IssueComplexity,
    Publication,
    Resolution,
    ReviewResult,
)
from autopilot.providers.base import Analyzer, Publisher, Resolver, Reviewer


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Fake monotonic clock."""
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock):
    """Sleep function that advances the fake clock and records each delay."""
    slept: list[float] = []

    async def sleep(seconds: float) -> None:
        slept.append(seconds)
        clock.advance(seconds)
        await asyncio.sleep(0)

    sleep.calls = slept  # type: ignore[attr-defined]
    return sleep


def _fast_collaborator(**overrides) -> CollaboratorConfig:
    config = CollaboratorConfig(
        retry=RetryConfig(max_attempts=3, base_delay=0.001, max_delay=0.01, jitter=False, attempt_timeout=5.0)
    )
    return config.model_copy(update=overrides)


@pytest.fixture
def fast_settings() -> AutomationSettings:
    """Settings with near-zero retry delays."""
    return AutomationSettings(
        workflow=WorkflowConfig(max_workflow_seconds=5.0),
        analyzer=_fast_collaborator(),
        resolver=_fast_collaborator(),
        reviewer=_fast_collaborator(),
        publisher=_fast_collaborator(),
    )


@pytest.fixture
def sample_analysis() -> IssueAnalysis:
    """Feasible, confident analysis."""
    return IssueAnalysis(
        category="bug",
        complexity=IssueComplexity.LOW,
        feasible=True,
        confidence=0.9,
        reasoning="Clear reproduction steps",
    )


@pytest.fixture
def sample_change_set() -> ChangeSet:
    return ChangeSet(
        summary="Fix off-by-one in pagination",
        files=[FileChange(path="app/pagination.py", action="modify", content="...")],
        branch="autopilot/issue-123",
    )


@pytest.fixture
def call_log() -> list[str]:
    """Order in which collaborators were invoked."""
    return []


@pytest.fixture
def mock_analyzer(call_log: list[str], sample_analysis: IssueAnalysis) -> AsyncMock:
    analyzer = AsyncMock(spec=Analyzer)

    async def analyze(issue):
        call_log.append("analyze")
        return sample_analysis

    analyzer.analyze = AsyncMock(side_effect=analyze)
    return analyzer


@pytest.fixture
def mock_resolver(call_log: list[str], sample_change_set: ChangeSet) -> AsyncMock:
    resolver = AsyncMock(spec=Resolver)

    async def resolve(issue, analysis):
        call_log.append("resolve")
        return Resolution(success=True, change_set=sample_change_set, confidence=0.85, reasoning="Patched bounds")

    resolver.resolve = AsyncMock(side_effect=resolve)
    return resolver


@pytest.fixture
def mock_reviewer(call_log: list[str]) -> AsyncMock:
    reviewer = AsyncMock(spec=Reviewer)

    async def review(change_set, issue):
        call_log.append("review")
        return ReviewResult(approved=True, score=0.9, issues=[], recommendations=["Add a regression test"])

    reviewer.review = AsyncMock(side_effect=review)
    return reviewer


@pytest.fixture
def mock_publisher(call_log: list[str]) -> AsyncMock:
    publisher = AsyncMock(spec=Publisher)

    async def publish(change_set, issue):
        call_log.append("publish")
        return Publication(identifier="PR-7", url="https://git.example.com/owner/repo/pulls/7")

    publisher.publish = AsyncMock(side_effect=publish)
    return publisher


@pytest.fixture
def orchestrator(
    fast_settings: AutomationSettings,
    mock_analyzer: AsyncMock,
    mock_resolver: AsyncMock,
    mock_reviewer: AsyncMock,
    mock_publisher: AsyncMock,
) -> WorkflowOrchestrator:
    """Orchestrator wired to mock collaborators."""
    return WorkflowOrchestrator(fast_settings, mock_analyzer, mock_resolver, mock_reviewer, mock_publisher)
