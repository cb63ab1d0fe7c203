"""
Webhook Notification Handler.

============================================================
PURPOSE
============================================================
POST alert notifications as JSON to an operator webhook
(chat bridge, incident tool, ...).

PRINCIPLES:
- Notification-only, nothing is read back
- Rate limiting to prevent floods during fleet-wide outages
- Failures are logged and reported as False, never raised

============================================================
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Optional

import aiohttp

from core.clock import ClockProtocol, SystemClock
from monitoring.models import AlertNotification
from storage.models import AlertSeverity


logger = logging.getLogger(__name__)


# ============================================================
# RATE LIMITER
# ============================================================

class WebhookRateLimiter:
    """
    Sliding one-minute window of sends.
    """

    def __init__(self, max_per_minute: int = 30, clock: Optional[ClockProtocol] = None):
        self._max_per_minute = max_per_minute
        self._clock = clock or SystemClock()
        self._window: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> bool:
        """Try to acquire a send slot."""
        async with self._lock:
            now = self._clock.timestamp()
            while self._window and now - self._window[0] >= 60.0:
                self._window.popleft()
            if len(self._window) >= self._max_per_minute:
                return False
            self._window.append(now)
            return True

    @property
    def remaining(self) -> int:
        return max(0, self._max_per_minute - len(self._window))


# ============================================================
# WEBHOOK NOTIFIER
# ============================================================

class WebhookNotifier:
    """
    Sends alert notifications to a webhook.

    Register `notifier.send` as a notification handler:
        manager.add_handler(notifier.send)
    """

    def __init__(
        self,
        url: Optional[str],
        timeout_seconds: float = 10.0,
        min_severity: AlertSeverity = AlertSeverity.MEDIUM,
        rate_limiter: Optional[WebhookRateLimiter] = None,
    ):
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._min_severity = min_severity
        self._rate_limiter = rate_limiter or WebhookRateLimiter()
        self._session: Optional[aiohttp.ClientSession] = None
        self._enabled = bool(url)

        if self._enabled:
            logger.info(f"WebhookNotifier enabled (min severity {min_severity.value})")
        else:
            logger.warning("WebhookNotifier NOT configured - alerts.webhook_url is empty")

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        """Close the notifier."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def send(self, notification: AlertNotification) -> bool:
        """
        Deliver one notification.

        Returns True if the webhook accepted it.
        """
        if not self._enabled:
            return False
        if notification.alert.severity.rank < self._min_severity.rank:
            return False
        if not await self._rate_limiter.acquire():
            logger.warning(
                f"Webhook rate limit reached, alert {notification.alert.alert_id} not sent"
            )
            return False

        try:
            session = await self._get_session()
            async with session.post(self._url, json=notification.to_dict()) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.error(f"Webhook rejected alert {notification.alert.alert_id}: "
                                 f"{response.status} {body[:200]}")
                    return False
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Webhook delivery failed for alert {notification.alert.alert_id}: {e}")
            return False
