"""Tests for autopilot/monitoring/metrics.py."""

from prometheus_client import REGISTRY

from autopilot.monitoring.metrics import MetricsCollector


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestMetricsCollector:
    """Tests for MetricsCollector static methods."""

    def test_record_workflow_outcome(self):
        """Should count outcomes per terminal state."""
        before = _sample("autopilot_workflow_outcomes_total", {"state": "complete"})

        MetricsCollector.record_workflow_outcome("complete", 1.5)

        assert _sample("autopilot_workflow_outcomes_total", {"state": "complete"}) == before + 1

    def test_update_active_workflows(self):
        """Should update active workflow gauge."""
        MetricsCollector.update_active_workflows(5)
        assert _sample("autopilot_active_workflows") == 5

        MetricsCollector.update_active_workflows(0)
        assert _sample("autopilot_active_workflows") == 0

    def test_record_collaborator_call(self):
        labels = {"collaborator": "reviewer", "status": "success"}
        before = _sample("autopilot_collaborator_calls_total", labels)

        MetricsCollector.record_collaborator_call("reviewer", "success", 0.2, attempts=2)

        assert _sample("autopilot_collaborator_calls_total", labels) == before + 1

    def test_circuit_state_values(self):
        MetricsCollector.update_circuit_state("publisher", "open")
        assert _sample("autopilot_circuit_state", {"collaborator": "publisher"}) == 2

        MetricsCollector.update_circuit_state("publisher", "closed")
        assert _sample("autopilot_circuit_state", {"collaborator": "publisher"}) == 0

    def test_record_error(self):
        """Should record error metric."""
        labels = {"kind": "network", "stage": "analysis"}
        before = _sample("autopilot_errors_total", labels)

        MetricsCollector.record_error("network", "analysis")

        assert _sample("autopilot_errors_total", labels) == before + 1

    def test_record_cache_lookup(self):
        hits = _sample("autopilot_cache_hits_total", {"cache_name": "analyzer"})
        misses = _sample("autopilot_cache_misses_total", {"cache_name": "analyzer"})

        MetricsCollector.record_cache_lookup("analyzer", hit=True)
        MetricsCollector.record_cache_lookup("analyzer", hit=False)

        assert _sample("autopilot_cache_hits_total", {"cache_name": "analyzer"}) == hits + 1
        assert _sample("autopilot_cache_misses_total", {"cache_name": "analyzer"}) == misses + 1

    def test_get_metrics(self):
        """Should export in Prometheus text format."""
        MetricsCollector.record_stage_duration("review", 0.3)

        output = MetricsCollector.get_metrics()

        assert isinstance(output, bytes)
        assert b"autopilot_stage_duration_seconds" in output

    def test_record_alert(self):
        labels = {"type": "performance_issue", "severity": "medium"}
        before = _sample("autopilot_alerts_total", labels)

        MetricsCollector.record_alert("performance_issue", "medium")

        assert _sample("autopilot_alerts_total", labels) == before + 1
