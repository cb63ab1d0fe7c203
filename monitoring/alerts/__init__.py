"""
Alerts Package.

Alert lifecycle state machine and manager.
"""

from .state_machine import (
    VALID_TRANSITIONS,
    AlertTransitionGuard,
)
from .manager import (
    AlertLifecycleManager,
    NotificationHandler,
    SYSTEM_ACTOR,
)


__all__ = [
    # State machine
    "VALID_TRANSITIONS",
    "AlertTransitionGuard",

    # Manager
    "AlertLifecycleManager",
    "NotificationHandler",
    "SYSTEM_ACTOR",
]
