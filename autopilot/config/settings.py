"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the workflow orchestrator and
for the resilience layer (retry, circuit breaker, rate limiter, cache) that
protects each external collaborator.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, HttpUrl, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from autopilot.enums import ErrorKind
from autopilot.exceptions import ConfigurationError


class RetryConfig(BaseModel):
    """Retry-with-backoff configuration for one collaborator."""

    max_attempts: int = Field(default=3, ge=1, le=20, description="Maximum tries, including the first")
    base_delay: float = Field(default=1.0, ge=0.0, description="Delay in seconds before the second attempt")
    max_delay: float = Field(default=30.0, ge=0.0, description="Upper bound for any single delay")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Exponential growth factor")
    jitter: bool = Field(default=True, description="Perturb delays by up to +/-25%")
    attempt_timeout: float | None = Field(default=30.0, gt=0.0, description="Per-attempt timeout in seconds")
    retryable_errors: list[ErrorKind] = Field(
        default_factory=lambda: [ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED],
        description="Error kinds that are retried; server faults (status >= 500) are always retried",
    )

    @model_validator(mode="after")
    def validate_delays(self) -> RetryConfig:
        """Keep the delay bounds consistent."""
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker thresholds for one protected call site."""

    failure_threshold: int = Field(default=5, ge=1, description="Consecutive failures that open the circuit")
    recovery_timeout: float = Field(default=60.0, ge=0.0, description="Seconds before a trial call is admitted")
    success_threshold: int = Field(default=2, ge=1, description="Half-open successes needed to close")


class RateLimitConfig(BaseModel):
    """Token bucket and quota limits for one collaborator."""

    requests_per_minute: int = Field(default=60, ge=1, description="Hard ceiling per rolling minute")
    requests_per_day: int = Field(default=10_000, ge=1, description="Hard ceiling per rolling day")
    max_concurrent: int = Field(default=5, ge=1, description="Maximum in-flight requests")
    refill_rate: float = Field(default=1.0, gt=0.0, description="Tokens added per second")
    bucket_capacity: int = Field(default=10, ge=1, description="Maximum tokens in the bucket")
    max_queue_size: int = Field(default=100, ge=0, description="Maximum acquirers waiting for a token")
    partition_by_issue: bool = Field(
        default=False,
        description="Add a per-issue limiter under the global one so no single issue starves the rest",
    )


class CacheConfig(BaseModel):
    """Response cache settings for one collaborator."""

    enabled: bool = Field(default=True, description="Disabled caches always miss")
    default_ttl: float = Field(default=300.0, ge=0.0, description="Default entry lifetime in seconds")
    max_size: int = Field(default=1000, ge=1, description="Maximum number of entries")
    cleanup_interval: float = Field(default=60.0, ge=0.0, description="Sweep interval in seconds, 0 disables")


class EndpointConfig(BaseModel):
    """HTTP endpoint of a remote collaborator."""

    base_url: HttpUrl = Field(..., description="Base URL of the collaborator service")
    api_token: SecretStr | None = Field(default=None, description="Bearer token sent with each request")
    timeout: float = Field(default=30.0, gt=0.0, description="Transport timeout in seconds")


class CollaboratorConfig(BaseModel):
    """Resilience settings for one external collaborator."""

    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    endpoint: EndpointConfig | None = Field(default=None, description="Remote endpoint (HTTP adapter only)")


def _analyzer_defaults() -> CollaboratorConfig:
    return CollaboratorConfig(retry=RetryConfig(max_attempts=3, base_delay=1.0, max_delay=5.0))


def _resolver_defaults() -> CollaboratorConfig:
    return CollaboratorConfig(
        retry=RetryConfig(max_attempts=2, base_delay=2.0, max_delay=8.0, attempt_timeout=120.0),
        cache=CacheConfig(enabled=False),
    )


def _reviewer_defaults() -> CollaboratorConfig:
    return CollaboratorConfig(retry=RetryConfig(max_attempts=3, base_delay=1.5, max_delay=6.0))


def _publisher_defaults() -> CollaboratorConfig:
    # Publication has side effects, so it is never served from cache.
    return CollaboratorConfig(
        retry=RetryConfig(max_attempts=2, base_delay=1.0, max_delay=5.0),
        cache=CacheConfig(enabled=False),
    )


class WorkflowConfig(BaseModel):
    """Workflow behavior configuration."""

    feasibility_threshold: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Minimum analysis confidence before escalating to a human"
    )
    high_complexity_confidence: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Minimum confidence for high-complexity issues"
    )
    escalate_categories: list[str] = Field(
        default_factory=lambda: ["question", "unknown"],
        description="Issue categories that always go to a human",
    )
    approval_threshold: float = Field(
        default=0.8, ge=0.0, le=1.0, description="Minimum review score for auto-approval"
    )
    max_workflow_seconds: float = Field(default=300.0, gt=0.0, description="Whole-run timeout")
    cancel_abandoned_stages: bool = Field(
        default=False,
        description="Cancel stage work left behind by a timeout or cancellation instead of letting it finish",
    )
    history_size: int = Field(default=100, ge=0, description="Completed runs kept for inspection")
    slow_workflow_seconds: float = Field(
        default=60.0, gt=0.0, description="Runs taking longer than this raise a performance alert"
    )
    alert_success_rate: float = Field(
        default=0.8, ge=0.0, le=1.0, description="Success rate below which a workflow failure alert is raised"
    )
    alert_min_workflows: int = Field(
        default=5, ge=0, description="Completed runs needed before the success rate alert is evaluated"
    )
    max_alerts: int = Field(default=100, ge=1, description="Alerts kept in memory")


class AutomationSettings(BaseSettings):
    """Main autopilot settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOPILOT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    log_level: str = Field(default="INFO", description="Minimum log level")
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    analyzer: CollaboratorConfig = Field(default_factory=_analyzer_defaults)
    resolver: CollaboratorConfig = Field(default_factory=_resolver_defaults)
    reviewer: CollaboratorConfig = Field(default_factory=_reviewer_defaults)
    publisher: CollaboratorConfig = Field(default_factory=_publisher_defaults)

    def collaborator(self, name: str) -> CollaboratorConfig:
        """Get the resilience settings for a collaborator by name.

        Raises:
            ConfigurationError: If the name is not a known collaborator
        """
        if name not in ("analyzer", "resolver", "reviewer", "publisher"):
            raise ConfigurationError(f"Unknown collaborator: {name}")
        config: CollaboratorConfig = getattr(self, name)
        return config

    @classmethod
    def from_yaml(cls, config_path: str) -> AutomationSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} syntax for environment variable substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            AutomationSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left untouched.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
