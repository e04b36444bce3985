"""
Payload models exchanged with the external collaborators.

Every collaborator response is parsed into one of these pydantic models, so
the orchestrator only ever sees validated, typed payloads. A response that
does not fit its model is a protocol error, not a business outcome.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class IssueComplexity(str, Enum):
    """Complexity level assigned by the analyzer."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    def __str__(self) -> str:
        return self.value


class IssueReport(BaseModel):
    """The incoming issue as handed to collaborators."""

    model_config = ConfigDict(frozen=True)

    number: int
    title: str = Field(..., min_length=1)
    body: str = ""


class IssueAnalysis(BaseModel):
    """Analyzer verdict on an issue."""

    category: str = Field(..., description="Issue category, e.g. bug, feature, question")
    complexity: IssueComplexity = IssueComplexity.MEDIUM
    feasible: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""


class FileChange(BaseModel):
    """A single file modification within a change set."""

    path: str
    action: str = Field(default="modify", pattern="^(create|modify|delete)$")
    content: str | None = None


class ChangeSet(BaseModel):
    """Candidate change produced by the resolver."""

    summary: str = ""
    files: list[FileChange] = Field(default_factory=list)
    branch: str | None = None


class Resolution(BaseModel):
    """Resolver outcome.

    ``success=False`` is a normal result meaning the resolver could not
    produce a change, not that it crashed.
    """

    success: bool
    change_set: ChangeSet | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""

    @model_validator(mode="after")
    def validate_change_set(self) -> "Resolution":
        if self.success and self.change_set is None:
            raise ValueError("successful resolution must include a change_set")
        return self


class ReviewResult(BaseModel):
    """Reviewer verdict on a change set."""

    approved: bool
    score: float = Field(..., ge=0.0, le=1.0)
    issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class Publication(BaseModel):
    """The reviewable change request opened by the publisher."""

    identifier: str
    url: str
