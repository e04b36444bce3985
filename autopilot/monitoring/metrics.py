"""
Metrics collection for monitoring workflow and collaborator performance.
Integrates with Prometheus for metrics export.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
import structlog

log = structlog.get_logger(__name__)

# Workflow metrics
workflow_outcomes = Counter(
    "autopilot_workflow_outcomes_total",
    "Workflow runs by terminal state",
    ["state"],
)

workflow_duration = Histogram(
    "autopilot_workflow_duration_seconds",
    "Whole-run execution duration",
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)

stage_duration = Histogram(
    "autopilot_stage_duration_seconds",
    "Pipeline stage duration",
    ["stage"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120),
)

active_workflows = Gauge("autopilot_active_workflows", "Number of currently active workflow runs")

# Collaborator call metrics
collaborator_calls = Counter(
    "autopilot_collaborator_calls_total",
    "Protected collaborator calls",
    ["collaborator", "status"],
)

collaborator_call_duration = Histogram(
    "autopilot_collaborator_call_duration_seconds",
    "Protected collaborator call latency, including retries",
    ["collaborator"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60),
)

collaborator_attempts = Counter(
    "autopilot_collaborator_attempts_total",
    "Attempts made against collaborators, including retries",
    ["collaborator"],
)

circuit_state = Gauge(
    "autopilot_circuit_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["collaborator"],
)

# Error metrics
errors_total = Counter("autopilot_errors_total", "Total errors", ["kind", "stage"])

# Cache metrics
cache_hits = Counter("autopilot_cache_hits_total", "Cache hits", ["cache_name"])

cache_misses = Counter("autopilot_cache_misses_total", "Cache misses", ["cache_name"])

# Alert metrics
alerts_total = Counter("autopilot_alerts_total", "Alerts raised", ["type", "severity"])

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsCollector:
    """Collect and export metrics."""

    @staticmethod
    def record_workflow_outcome(state: str, duration_seconds: float) -> None:
        """Record a finished workflow run."""
        workflow_outcomes.labels(state=state).inc()
        workflow_duration.observe(duration_seconds)
        log.debug("metric_recorded", metric="workflow_outcome", state=state)

    @staticmethod
    def record_stage_duration(stage: str, duration_seconds: float) -> None:
        stage_duration.labels(stage=stage).observe(duration_seconds)

    @staticmethod
    def update_active_workflows(count: int) -> None:
        """Update active workflow count."""
        active_workflows.set(count)

    @staticmethod
    def record_collaborator_call(collaborator: str, status: str, duration_seconds: float, attempts: int) -> None:
        """Record one protected call and the attempts it took."""
        collaborator_calls.labels(collaborator=collaborator, status=status).inc()
        collaborator_call_duration.labels(collaborator=collaborator).observe(duration_seconds)
        if attempts:
            collaborator_attempts.labels(collaborator=collaborator).inc(attempts)

    @staticmethod
    def update_circuit_state(collaborator: str, state: str) -> None:
        circuit_state.labels(collaborator=collaborator).set(_CIRCUIT_STATE_VALUES.get(state, 0))

    @staticmethod
    def record_error(kind: str, stage: str) -> None:
        """Record error occurrence."""
        errors_total.labels(kind=kind, stage=stage).inc()

    @staticmethod
    def record_cache_lookup(cache_name: str, hit: bool) -> None:
        if hit:
            cache_hits.labels(cache_name=cache_name).inc()
        else:
            cache_misses.labels(cache_name=cache_name).inc()

    @staticmethod
    def record_alert(alert_type: str, severity: str) -> None:
        alerts_total.labels(type=alert_type, severity=severity).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Get metrics in Prometheus exposition format."""
        return generate_latest()
