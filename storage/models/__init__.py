"""
Storage Models Package.

This package contains all ORM models of the fleet store.

============================================================
MODEL ORGANIZATION
============================================================

Devices (devices.py)
- Device
- Metric
- DeviceSnapshot

Execution (execution.py)
- Action
- ArchivedAction

Monitoring (monitoring.py)
- Alert
- ArchivedAlert

Audit (audit.py)
- AuditLogEntry

============================================================
DESIGN PRINCIPLES
============================================================

- All models use explicit column definitions
- All timestamps are UTC (UTCDateTime)
- Foreign keys are explicitly defined
- No business logic in models

============================================================
"""

from storage.models.base import Base, TimestampMixin, UTCDateTime, utc_now
from storage.models.enums import (
    ActionStatus,
    AlertSeverity,
    AlertState,
    DeviceStatus,
    SnapshotType,
    TERMINAL_ACTION_STATES,
)
from storage.models.devices import Device, DeviceSnapshot, Metric
from storage.models.execution import Action, ArchivedAction
from storage.models.monitoring import Alert, ArchivedAlert, open_alert_key
from storage.models.audit import AuditLogEntry


__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "utc_now",
    "ActionStatus",
    "AlertSeverity",
    "AlertState",
    "DeviceStatus",
    "SnapshotType",
    "TERMINAL_ACTION_STATES",
    "Device",
    "DeviceSnapshot",
    "Metric",
    "Action",
    "ArchivedAction",
    "Alert",
    "ArchivedAlert",
    "open_alert_key",
    "AuditLogEntry",
]
