"""Data models for the autopilot workflow system.

Key Models:
    - WorkflowRun: Live state of one run
    - WorkflowResult: Terminal outcome returned to callers
    - StageResult: Output of one pipeline stage
    - ErrorRecord: Timestamped entry of a run's error log

Collaborator payloads (pydantic):
    - IssueReport, IssueAnalysis, Resolution, ChangeSet, ReviewResult, Publication

Example:
    >>> from autopilot.models.collaborators import IssueAnalysis
    >>> analysis = IssueAnalysis(category="bug", feasible=True, confidence=0.9)
"""
