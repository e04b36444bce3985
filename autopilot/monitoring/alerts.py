"""
Operational alerts raised by the orchestrator.

Alerts are kept in memory, keyed by id. Raising an alert with an id that is
already present replaces the old entry, so a condition that keeps recurring
(such as a low success rate) shows up once with its latest message instead
of piling up.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from autopilot.enums import AlertSeverity, AlertType
from autopilot.monitoring.metrics import MetricsCollector

log = structlog.get_logger(__name__)


@dataclass
class Alert:
    """A single operational alert."""

    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    workflow_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    acknowledged: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": str(self.type),
            "severity": str(self.severity),
            "message": self.message,
            "workflow_id": self.workflow_id,
            "timestamp": self.timestamp.isoformat(),
            "acknowledged": self.acknowledged,
        }


class AlertManager:
    """Bounded store of alerts.

    Example:
        >>> alerts = AlertManager()
        >>> alerts.raise_alert("wf-1-failed", AlertType.WORKFLOW_FAILURE, AlertSeverity.HIGH, "boom")
        >>> [alert.id for alert in alerts.get_active_alerts()]
        ['wf-1-failed']
    """

    def __init__(self, max_alerts: int = 100) -> None:
        self.max_alerts = max_alerts
        self._alerts: OrderedDict[str, Alert] = OrderedDict()

    def raise_alert(
        self,
        alert_id: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        workflow_id: str | None = None,
    ) -> Alert:
        """Record an alert, replacing any earlier alert with the same id.

        The oldest alert is dropped once more than ``max_alerts`` are held.
        """
        alert = Alert(
            id=alert_id,
            type=alert_type,
            severity=severity,
            message=message,
            workflow_id=workflow_id,
        )
        self._alerts.pop(alert_id, None)
        self._alerts[alert_id] = alert
        while len(self._alerts) > self.max_alerts:
            self._alerts.popitem(last=False)

        log.warning(
            "alert_raised",
            alert_id=alert_id,
            alert_type=str(alert_type),
            severity=str(severity),
            message=message,
        )
        MetricsCollector.record_alert(str(alert_type), str(severity))
        return alert

    def get_active_alerts(self) -> list[Alert]:
        """Unacknowledged alerts, oldest first."""
        return [alert for alert in self._alerts.values() if not alert.acknowledged]

    def get_alerts(self) -> list[Alert]:
        return list(self._alerts.values())

    def acknowledge(self, alert_id: str) -> bool:
        """Mark an alert as seen.

        Returns:
            False if no alert has that id
        """
        alert = self._alerts.get(alert_id)
        if alert is None:
            return False
        alert.acknowledged = True
        log.info("alert_acknowledged", alert_id=alert_id)
        return True

    def clear(self) -> None:
        self._alerts.clear()
