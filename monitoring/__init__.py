"""
Monitoring Package.

============================================================
PURPOSE
============================================================
Alert lifecycle for the fleet: raise, deduplicate, correlate,
acknowledge, resolve, notify.

PRINCIPLES:
1. ONE OPEN ALERT per (device, alert type)
2. DEDUPLICATED - repeats update, never duplicate
3. CORRELATED - symptoms of an offline device fold under it
4. RESILIENT - a failing notifier never blocks the lifecycle

============================================================
"""

from .models import (
    AlertType,
    AlertView,
    AlertNotification,
    AlertSummary,
)
from .alerts import (
    VALID_TRANSITIONS,
    AlertTransitionGuard,
    AlertLifecycleManager,
    NotificationHandler,
    SYSTEM_ACTOR,
)
from .notifications import (
    WebhookRateLimiter,
    WebhookNotifier,
)


__all__ = [
    # Models
    "AlertType",
    "AlertView",
    "AlertNotification",
    "AlertSummary",

    # Lifecycle
    "VALID_TRANSITIONS",
    "AlertTransitionGuard",
    "AlertLifecycleManager",
    "NotificationHandler",
    "SYSTEM_ACTOR",

    # Notifications
    "WebhookRateLimiter",
    "WebhookNotifier",
]
