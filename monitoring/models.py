"""
Monitoring - Alert Views and Notifications.

============================================================
PURPOSE
============================================================
Plain data passed out of the alert lifecycle manager:

- AlertView: detached snapshot of one alert row
- AlertNotification: what notification handlers receive
- AlertSummary: console counts (Total/Critical/High/Medium/Low)

ORM rows never leave the manager; callers get these instead.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from storage.models import Alert, AlertSeverity, AlertState


# ============================================================
# WELL-KNOWN ALERT TYPES
# ============================================================

class AlertType:
    """Alert type names raised by the engine itself."""

    DEVICE_OFFLINE = "DeviceOffline"
    ACTION_FAILED = "ActionFailed"
    HEALTH_THRESHOLD = "HealthThreshold"
    ENGINE_HALTED = "EngineHalted"


# ============================================================
# ALERT VIEW
# ============================================================

@dataclass
class AlertView:
    """Detached snapshot of an alert."""

    alert_id: int
    device_id: str
    alert_type: str
    severity: AlertSeverity
    state: AlertState
    title: str
    message: Optional[str]
    created_at: datetime
    last_occurred_at: datetime
    occurrence_count: int
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    auto_resolved: bool = False
    correlated_alert_id: Optional[int] = None
    action_id: Optional[int] = None

    @classmethod
    def from_model(cls, alert: Alert) -> "AlertView":
        """Snapshot an ORM row."""
        return cls(
            alert_id=alert.id,
            device_id=alert.device_id,
            alert_type=alert.alert_type,
            severity=alert.alert_severity,
            state=alert.state,
            title=alert.title,
            message=alert.message,
            created_at=alert.created_at,
            last_occurred_at=alert.last_occurred_at,
            occurrence_count=alert.occurrence_count,
            acknowledged_at=alert.acknowledged_at,
            acknowledged_by=alert.acknowledged_by,
            resolved_at=alert.resolved_at,
            resolved_by=alert.resolved_by,
            auto_resolved=alert.auto_resolved,
            correlated_alert_id=alert.correlated_alert_id,
            action_id=alert.action_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "alert_id": self.alert_id,
            "device_id": self.device_id,
            "alert_type": self.alert_type,
            "severity": self.severity.value,
            "state": self.state.value,
            "title": self.title,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "last_occurred_at": self.last_occurred_at.isoformat(),
            "occurrence_count": self.occurrence_count,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "auto_resolved": self.auto_resolved,
            "correlated_alert_id": self.correlated_alert_id,
            "action_id": self.action_id,
        }


# ============================================================
# NOTIFICATION
# ============================================================

@dataclass
class AlertNotification:
    """Payload handed to notification handlers."""

    alert: AlertView
    """The alert as it stands after the raise."""

    reason: str
    """new | repeat | escalated"""

    sent_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "sent_at": self.sent_at.isoformat(),
            "alert": self.alert.to_dict(),
        }


# ============================================================
# SUMMARY
# ============================================================

@dataclass
class AlertSummary:
    """Unresolved alert counts for the console."""

    total: int = 0
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    info: int = 0
    unacknowledged: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Total": self.total,
            "Critical": self.critical,
            "High": self.high,
            "Medium": self.medium,
            "Low": self.low,
            "Info": self.info,
            "Unacknowledged": self.unacknowledged,
        }
