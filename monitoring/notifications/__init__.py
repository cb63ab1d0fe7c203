"""
Notifications Package.

Notification handlers for alert lifecycle events.
"""

from .webhook import (
    WebhookRateLimiter,
    WebhookNotifier,
)


__all__ = [
    "WebhookRateLimiter",
    "WebhookNotifier",
]
