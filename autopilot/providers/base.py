"""
Abstract base classes for collaborators.

This module defines the narrow interfaces through which the orchestrator
consumes the four external collaborators: analysis, resolution, review and
publication. The logic behind each one (issue classification, code
generation, review scoring, change request creation) lives outside this
package; implementations only have to honor these contracts.
"""

from abc import ABC, abstractmethod

from autopilot.models.collaborators import (
    ChangeSet,
    IssueAnalysis,
    IssueReport,
    Publication,
    Resolution,
    ReviewResult,
)


class Analyzer(ABC):
    """Classifies an issue and judges whether it can be handled automatically."""

    @abstractmethod
    async def analyze(self, issue: IssueReport) -> IssueAnalysis:
        """Analyze an issue.

        Args:
            issue: The incoming issue report.

        Returns:
            IssueAnalysis with category, complexity, feasibility and a
            confidence between 0 and 1.

        Raises:
            AnalysisError: On malformed input or backend failure.
            NetworkError: If the analyzer could not be reached.
        """
        pass


class Resolver(ABC):
    """Generates a candidate change set for an analyzed issue."""

    @abstractmethod
    async def resolve(self, issue: IssueReport, analysis: IssueAnalysis) -> Resolution:
        """Produce a change set for the issue.

        Args:
            issue: The incoming issue report.
            analysis: Result of the analysis stage.

        Returns:
            Resolution. ``success=False`` is a normal outcome meaning no
            change could be produced; it is not an error.

        Raises:
            BackendError: If the resolver backend failed.
            NetworkError: If the resolver could not be reached.
        """
        pass


class Reviewer(ABC):
    """Scores a change set and approves or rejects it."""

    @abstractmethod
    async def review(self, change_set: ChangeSet, issue: IssueReport) -> ReviewResult:
        """Review a change set.

        Args:
            change_set: Candidate change produced by the resolver.
            issue: The issue the change is meant to resolve.

        Returns:
            ReviewResult with an approval flag, a score between 0 and 1,
            and the issues and recommendations found.

        Raises:
            BackendError: If the reviewer backend failed.
        """
        pass


class Publisher(ABC):
    """Opens a reviewable change request for an approved change set."""

    @abstractmethod
    async def publish(self, change_set: ChangeSet, issue: IssueReport) -> Publication:
        """Publish a change set.

        Args:
            change_set: The approved change set.
            issue: The issue being resolved.

        Returns:
            Publication with the identifier and URL of the change request.

        Raises:
            PublicationError: If the backend rejected the change request.
        """
        pass
