"""Configuration system for autopilot.

This package provides type-safe configuration management using Pydantic.

Key Components:
    - AutomationSettings: Main configuration container with YAML loading support
    - WorkflowConfig: Escalation thresholds and whole-run timeout
    - CollaboratorConfig: Resilience settings for one external collaborator
    - RetryConfig, CircuitBreakerConfig, RateLimitConfig, CacheConfig

Example:
    >>> from autopilot.config.settings import AutomationSettings
    >>> settings = AutomationSettings.from_yaml("autopilot.yaml")
    >>> settings.workflow.approval_threshold
    0.8
"""
