"""
Shared Status Enumerations.

Values are persisted as their string form; the enums live next
to the models so repositories and services agree on spelling.
"""

from enum import Enum
from typing import FrozenSet


class DeviceStatus(Enum):
    """Device health state."""

    UNKNOWN = "Unknown"
    ONLINE = "Online"
    OFFLINE = "Offline"
    WARNING = "Warning"
    CRITICAL = "Critical"
    MAINTENANCE = "Maintenance"
    DECOMMISSIONED = "Decommissioned"

    @property
    def is_managed_out(self) -> bool:
        """Maintenance and decommissioned devices are left alone."""
        return self in (DeviceStatus.MAINTENANCE, DeviceStatus.DECOMMISSIONED)


class ActionStatus(Enum):
    """
    Action lifecycle state.

    State Machine:

        PENDING ──dispatch──► RUNNING ──success──► COMPLETED
           │                     │
           │                     └──failure──► FAILED
           │
           └──cancel──► CANCELLED
    """

    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    def is_terminal(self) -> bool:
        """Check if state is terminal."""
        return self in TERMINAL_ACTION_STATES


TERMINAL_ACTION_STATES: FrozenSet[ActionStatus] = frozenset({
    ActionStatus.COMPLETED,
    ActionStatus.FAILED,
    ActionStatus.CANCELLED,
})


class AlertSeverity(Enum):
    """Alert severity, most severe first."""

    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFO = "Info"

    @property
    def rank(self) -> int:
        """Higher rank is more severe."""
        return {
            AlertSeverity.CRITICAL: 5,
            AlertSeverity.HIGH: 4,
            AlertSeverity.MEDIUM: 3,
            AlertSeverity.LOW: 2,
            AlertSeverity.INFO: 1,
        }[self]


class AlertState(Enum):
    """
    Alert lifecycle state.

    (none) ──raise──► ACTIVE ──acknowledge──► ACKNOWLEDGED ──resolve──► RESOLVED
                         └──────────────resolve──────────────────────────┘
    """

    ACTIVE = "Active"
    ACKNOWLEDGED = "Acknowledged"
    RESOLVED = "Resolved"


class SnapshotType(Enum):
    """Kinds of producer-written device documents."""

    INVENTORY = "inventory"
    CONFIGURATION = "configuration"
