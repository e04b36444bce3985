"""Tests for autopilot/config/settings.py Pydantic models.

Tests cover:
- Resilience section defaults and validation
- Per-collaborator defaults
- WorkflowConfig boundaries
- AutomationSettings loading from YAML and environment variables
- Environment variable interpolation
"""

import pytest
from pydantic import ValidationError

from autopilot.config.settings import (
    AutomationSettings,
    CollaboratorConfig,
    EndpointConfig,
    RateLimitConfig,
    RetryConfig,
    WorkflowConfig,
)
from autopilot.enums import ErrorKind
from autopilot.exceptions import ConfigurationError


class TestRetryConfig:
    """Test RetryConfig defaults and validation."""

    def test_defaults(self):
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.base_delay == 1.0
        assert config.max_delay == 30.0
        assert config.backoff_multiplier == 2.0
        assert config.jitter is True
        assert config.retryable_errors == [ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED]

    def test_max_delay_below_base_delay_rejected(self):
        with pytest.raises(ValidationError, match="max_delay"):
            RetryConfig(base_delay=5.0, max_delay=1.0)

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValidationError):
            RetryConfig(max_attempts=0)

    def test_retryable_errors_from_strings(self):
        config = RetryConfig(retryable_errors=["network", "backend"])

        assert config.retryable_errors == [ErrorKind.NETWORK, ErrorKind.BACKEND]


class TestRateLimitConfig:
    def test_defaults(self):
        config = RateLimitConfig()

        assert config.requests_per_minute == 60
        assert config.requests_per_day == 10_000
        assert config.max_concurrent == 5
        assert config.partition_by_issue is False

    def test_refill_rate_must_be_positive(self):
        with pytest.raises(ValidationError):
            RateLimitConfig(refill_rate=0)


class TestEndpointConfig:
    def test_token_is_secret(self):
        endpoint = EndpointConfig(base_url="https://analyzer.example.com", api_token="s3cret")

        assert "s3cret" not in repr(endpoint)
        assert endpoint.api_token.get_secret_value() == "s3cret"

    def test_invalid_url_rejected(self):
        with pytest.raises(ValidationError):
            EndpointConfig(base_url="not a url")


class TestWorkflowConfig:
    def test_defaults(self):
        config = WorkflowConfig()

        assert config.feasibility_threshold == 0.5
        assert config.approval_threshold == 0.8
        assert config.max_workflow_seconds == 300.0
        assert config.escalate_categories == ["question", "unknown"]
        assert config.slow_workflow_seconds == 60.0
        assert config.alert_success_rate == 0.8
        assert config.alert_min_workflows == 5

    @pytest.mark.parametrize("value", [-0.1, 1.1])
    def test_thresholds_bounded(self, value):
        with pytest.raises(ValidationError):
            WorkflowConfig(approval_threshold=value)


class TestAutomationSettings:
    """Test the combined settings object."""

    def test_per_collaborator_defaults(self):
        settings = AutomationSettings()

        assert settings.analyzer.retry.max_attempts == 3
        assert settings.resolver.retry.max_attempts == 2
        assert settings.resolver.retry.attempt_timeout == 120.0
        assert settings.resolver.cache.enabled is False
        assert settings.reviewer.retry.base_delay == 1.5
        assert settings.publisher.cache.enabled is False

    def test_collaborator_lookup(self):
        settings = AutomationSettings()

        assert settings.collaborator("reviewer") is settings.reviewer

    def test_unknown_collaborator(self):
        with pytest.raises(ConfigurationError, match="Unknown collaborator"):
            AutomationSettings().collaborator("deployer")

    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("AUTOPILOT_WORKFLOW__APPROVAL_THRESHOLD", "0.95")

        settings = AutomationSettings()

        assert settings.workflow.approval_threshold == 0.95


class TestFromYaml:
    """Test loading settings from YAML files."""

    def test_load_minimal_file(self, tmp_path):
        config_file = tmp_path / "autopilot.yaml"
        config_file.write_text("workflow:\n  approval_threshold: 0.9\n")

        settings = AutomationSettings.from_yaml(str(config_file))

        assert settings.workflow.approval_threshold == 0.9
        assert settings.analyzer.retry.max_attempts == 3

    def test_empty_file_uses_defaults(self, tmp_path):
        config_file = tmp_path / "autopilot.yaml"
        config_file.write_text("")

        settings = AutomationSettings.from_yaml(str(config_file))

        assert settings.workflow.feasibility_threshold == 0.5

    def test_collaborator_section(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ANALYZER_TOKEN", "tok-123")
        config_file = tmp_path / "autopilot.yaml"
        config_file.write_text(
            """
analyzer:
  endpoint:
    base_url: https://analyzer.example.com
    api_token: ${ANALYZER_TOKEN}
  rate_limit:
    requests_per_minute: 30
    partition_by_issue: true
  circuit_breaker:
    failure_threshold: 3
"""
        )

        settings = AutomationSettings.from_yaml(str(config_file))

        assert settings.analyzer.endpoint.api_token.get_secret_value() == "tok-123"
        assert settings.analyzer.rate_limit.requests_per_minute == 30
        assert settings.analyzer.rate_limit.partition_by_issue is True
        assert settings.analyzer.circuit_breaker.failure_threshold == 3
        # Sections not mentioned in the file fall back to model defaults
        assert settings.analyzer.retry == RetryConfig()

    def test_env_default_value(self, tmp_path, monkeypatch):
        monkeypatch.delenv("AUTOPILOT_TEST_TIMEOUT", raising=False)
        config_file = tmp_path / "autopilot.yaml"
        config_file.write_text("workflow:\n  max_workflow_seconds: ${AUTOPILOT_TEST_TIMEOUT:-120}\n")

        settings = AutomationSettings.from_yaml(str(config_file))

        assert settings.workflow.max_workflow_seconds == 120.0

    def test_missing_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MISSING_TOKEN", raising=False)
        config_file = tmp_path / "autopilot.yaml"
        config_file.write_text(
            "publisher:\n  endpoint:\n    base_url: https://git.example.com\n    api_token: ${MISSING_TOKEN}\n"
        )

        with pytest.raises(ConfigurationError, match="MISSING_TOKEN"):
            AutomationSettings.from_yaml(str(config_file))

    def test_comment_lines_not_interpolated(self, tmp_path, monkeypatch):
        monkeypatch.delenv("UNSET_IN_COMMENT", raising=False)
        config_file = tmp_path / "autopilot.yaml"
        config_file.write_text("# token: ${UNSET_IN_COMMENT}\nlog_level: DEBUG\n")

        settings = AutomationSettings.from_yaml(str(config_file))

        assert settings.log_level == "DEBUG"

    def test_file_not_found(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            AutomationSettings.from_yaml(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "autopilot.yaml"
        config_file.write_text("workflow: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            AutomationSettings.from_yaml(str(config_file))

    def test_non_mapping_rejected(self, tmp_path):
        config_file = tmp_path / "autopilot.yaml"
        config_file.write_text("- one\n- two\n")

        with pytest.raises(ConfigurationError, match="YAML object"):
            AutomationSettings.from_yaml(str(config_file))

    def test_invalid_values_rejected(self, tmp_path):
        config_file = tmp_path / "autopilot.yaml"
        config_file.write_text("resolver:\n  retry:\n    base_delay: 10\n    max_delay: 1\n")

        with pytest.raises(ConfigurationError, match="Failed to validate"):
            AutomationSettings.from_yaml(str(config_file))


def test_collaborator_config_endpoint_optional():
    assert CollaboratorConfig().endpoint is None
