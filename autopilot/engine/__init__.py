"""Workflow engine.

Modules:
    orchestrator: WorkflowOrchestrator state machine
    resilient_client: ResilientClient composing cache, rate limiter,
        circuit breaker and retry around one collaborator
"""
