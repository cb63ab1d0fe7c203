"""
Alert Lifecycle Manager.

============================================================
PURPOSE
============================================================
Raises, deduplicates, correlates, acknowledges and resolves
device alerts, and dispatches notifications.

PRINCIPLES:
- At most one unresolved alert per (device, alert type):
  per-pair lock here, unique open_key in the store
- Repeats update the open alert; severity only escalates
- The dedup window decides re-notification, nothing else
- An alert raised while its device has an open DeviceOffline
  alert is correlated under it and not notified separately
- Notification handler failures are logged, never propagated

============================================================
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Awaitable, Dict, List, Optional, Tuple

from core.clock import ClockProtocol, SystemClock
from core.config import ConfigProvider, FleetConfig
from core.exceptions import ConfigurationError
from monitoring.alerts.state_machine import AlertTransitionGuard
from monitoring.models import AlertNotification, AlertSummary, AlertType, AlertView
from storage.database import Database
from storage.models import Alert, AlertSeverity, AlertState
from storage.repositories import AlertRepository, DeviceRepository, IntegrityError


logger = logging.getLogger(__name__)


# Type for notification handlers
NotificationHandler = Callable[[AlertNotification], Awaitable[bool]]


SYSTEM_ACTOR = "system"


class AlertLifecycleManager:
    """
    Central alert coordination point.

    Usage:
        manager = AlertLifecycleManager(database)
        alert_id = await manager.raise_alert(
            "web-01", AlertType.DEVICE_OFFLINE, AlertSeverity.HIGH, "web-01 offline"
        )
        await manager.acknowledge(alert_id, by="alice")
        await manager.resolve(alert_id, by="alice")
    """

    def __init__(
        self,
        database: Database,
        clock: Optional[ClockProtocol] = None,
        config_provider: Optional[ConfigProvider] = None,
        notification_handlers: Optional[List[NotificationHandler]] = None,
    ):
        self._database = database
        self._clock = clock or SystemClock()
        self._config_provider = config_provider or FleetConfig
        self._handlers: List[NotificationHandler] = list(notification_handlers or [])
        self._pair_locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    # =========================================================
    # HANDLERS
    # =========================================================

    def add_handler(self, handler: NotificationHandler) -> None:
        """Add a notification handler."""
        self._handlers.append(handler)

    def remove_handler(self, handler: NotificationHandler) -> None:
        """Remove a notification handler."""
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def _dispatch(self, notification: AlertNotification) -> None:
        for handler in self._handlers:
            try:
                await handler(notification)
            except Exception as e:
                logger.error(f"Notification handler error: {e}")

    def _lock_for(self, device_id: str, alert_type: str) -> asyncio.Lock:
        key = (device_id, alert_type)
        lock = self._pair_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._pair_locks[key] = lock
        return lock

    # =========================================================
    # RAISE
    # =========================================================

    async def raise_alert(
        self,
        device_id: str,
        alert_type: str,
        severity: AlertSeverity,
        title: str,
        message: Optional[str] = None,
        action_id: Optional[int] = None,
    ) -> int:
        """
        Raise an alert, or fold it into the open one for the pair.

        Returns:
            The id of the open alert

        Raises:
            ConfigurationError: If the device is unknown
        """
        async with self._lock_for(device_id, alert_type):
            try:
                view, reason = self._raise_locked(
                    device_id, alert_type, severity, title, message, action_id
                )
            except IntegrityError:
                # Another writer opened the pair between our read and insert
                logger.warning(f"Open alert race on {device_id}/{alert_type}; folding into existing")
                view, reason = self._raise_locked(
                    device_id, alert_type, severity, title, message, action_id
                )

        if reason is not None:
            await self._dispatch(AlertNotification(alert=view, reason=reason, sent_at=self._clock.now()))
        return view.alert_id

    def _raise_locked(
        self,
        device_id: str,
        alert_type: str,
        severity: AlertSeverity,
        title: str,
        message: Optional[str],
        action_id: Optional[int],
    ) -> Tuple[AlertView, Optional[str]]:
        now = self._clock.now()
        window = self._config_provider().alerts.dedup_window_seconds

        with self._database.session_scope() as session:
            alerts = AlertRepository(session)
            if DeviceRepository(session).get(device_id) is None:
                raise ConfigurationError(
                    f"Cannot raise {alert_type} for unknown device {device_id}",
                    config_key="device_id",
                    actual_value=device_id,
                )

            existing = alerts.find_open(device_id, alert_type)
            if existing is not None:
                reason = self._fold_repeat(existing, severity, title, message, action_id, now, window)
                alerts.save(existing, "raise_repeat")
                logger.info(
                    f"Alert {existing.id} {device_id}/{alert_type} repeated "
                    f"(x{existing.occurrence_count}){' - notifying' if reason else ''}"
                )
                return AlertView.from_model(existing), reason

            root = None
            if alert_type != AlertType.DEVICE_OFFLINE:
                root = alerts.find_open(device_id, AlertType.DEVICE_OFFLINE)

            alert = alerts.create(
                device_id=device_id,
                alert_type=alert_type,
                severity=severity,
                title=title,
                message=message,
                now=now,
                action_id=action_id,
                correlated_alert_id=root.id if root is not None else None,
                notified=root is None,
            )
            if root is not None:
                logger.info(
                    f"Alert {alert.id} {device_id}/{alert_type} raised, "
                    f"correlated under DeviceOffline alert {root.id}"
                )
                return AlertView.from_model(alert), None

            logger.info(f"Alert {alert.id} raised: {device_id}/{alert_type} [{severity.value}] {title}")
            return AlertView.from_model(alert), "new"

    @staticmethod
    def _fold_repeat(
        alert: Alert,
        severity: AlertSeverity,
        title: str,
        message: Optional[str],
        action_id: Optional[int],
        now: datetime,
        window: float,
    ) -> Optional[str]:
        """Apply a repeat to the open alert; return the notify reason, if any."""
        alert.occurrence_count += 1
        alert.last_occurred_at = now
        if message is not None:
            alert.message = message
        if action_id is not None:
            alert.action_id = action_id

        escalated = severity.rank > alert.alert_severity.rank
        if escalated:
            alert.severity = severity.value
            alert.title = title

        if alert.correlated_alert_id is not None:
            return None

        last_notified = alert.last_notified_at or alert.created_at
        if escalated:
            alert.last_notified_at = now
            return "escalated"
        if (now - last_notified).total_seconds() >= window:
            alert.last_notified_at = now
            return "repeat"
        return None

    # =========================================================
    # ACKNOWLEDGE / RESOLVE
    # =========================================================

    def _pair_of(self, alert_id: int) -> Tuple[str, str]:
        with self._database.session_scope() as session:
            alert = AlertRepository(session).get_or_raise(alert_id)
            return alert.device_id, alert.alert_type

    async def acknowledge(self, alert_id: int, by: str) -> AlertView:
        """
        Active -> Acknowledged. Re-acknowledging is a no-op.

        Raises:
            RecordNotFoundError: If the alert does not exist
            InvalidTransitionError: If the alert is resolved
        """
        device_id, alert_type = self._pair_of(alert_id)
        async with self._lock_for(device_id, alert_type):
            with self._database.session_scope() as session:
                alerts = AlertRepository(session)
                alert = alerts.get_or_raise(alert_id)
                if AlertTransitionGuard.check(alert_id, alert.state, AlertState.ACKNOWLEDGED):
                    alert.acknowledged_at = self._clock.now()
                    alert.acknowledged_by = by
                    alerts.save(alert, "acknowledge")
                    logger.info(f"Alert {alert_id} acknowledged by {by}")
                return AlertView.from_model(alert)

    async def resolve(self, alert_id: int, by: str, auto: bool = False) -> AlertView:
        """
        Active | Acknowledged -> Resolved.

        Raises:
            RecordNotFoundError: If the alert does not exist
            InvalidTransitionError: If the alert is already resolved
        """
        device_id, alert_type = self._pair_of(alert_id)
        async with self._lock_for(device_id, alert_type):
            with self._database.session_scope() as session:
                alerts = AlertRepository(session)
                alert = alerts.get_or_raise(alert_id)
                AlertTransitionGuard.check(alert_id, alert.state, AlertState.RESOLVED)
                alerts.mark_resolved(alert, by=by, now=self._clock.now(), auto=auto)
                logger.info(f"Alert {alert_id} resolved by {by}{' (auto)' if auto else ''}")
                return AlertView.from_model(alert)

    async def auto_resolve(
        self,
        device_id: str,
        alert_type: str,
        reason: Optional[str] = None,
    ) -> Optional[int]:
        """
        Resolve the open alert of a pair, if there is one.

        Returns:
            The resolved alert id, or None when nothing was open
        """
        async with self._lock_for(device_id, alert_type):
            with self._database.session_scope() as session:
                alerts = AlertRepository(session)
                alert = alerts.find_open(device_id, alert_type)
                if alert is None:
                    return None
                alerts.mark_resolved(alert, by=SYSTEM_ACTOR, now=self._clock.now(), auto=True)
                logger.info(
                    f"Alert {alert.id} {device_id}/{alert_type} auto-resolved"
                    + (f": {reason}" if reason else "")
                )
                return alert.id

    # =========================================================
    # QUERIES
    # =========================================================

    def get(self, alert_id: int) -> AlertView:
        """
        Raises:
            RecordNotFoundError: If the alert does not exist
        """
        with self._database.session_scope() as session:
            return AlertView.from_model(AlertRepository(session).get_or_raise(alert_id))

    def get_open(self, device_id: str, alert_type: str) -> Optional[AlertView]:
        """The unresolved alert of a pair."""
        with self._database.session_scope() as session:
            alert = AlertRepository(session).find_open(device_id, alert_type)
            return AlertView.from_model(alert) if alert is not None else None

    def get_active(
        self,
        device_id: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> List[AlertView]:
        """Unresolved alerts, newest first."""
        with self._database.session_scope() as session:
            rows = AlertRepository(session).list_open(device_id=device_id, severity=severity)
            return [AlertView.from_model(a) for a in rows]

    def summary(self) -> AlertSummary:
        """Unresolved alert counts."""
        with self._database.session_scope() as session:
            alerts = AlertRepository(session)
            counts = alerts.count_open_by_severity()
            unacknowledged = alerts.count_unacknowledged()
            by_type: Dict[str, int] = {}
            for alert in alerts.list_open():
                by_type[alert.alert_type] = by_type.get(alert.alert_type, 0) + 1

        return AlertSummary(
            total=sum(counts.values()),
            critical=counts.get(AlertSeverity.CRITICAL.value, 0),
            high=counts.get(AlertSeverity.HIGH.value, 0),
            medium=counts.get(AlertSeverity.MEDIUM.value, 0),
            low=counts.get(AlertSeverity.LOW.value, 0),
            info=counts.get(AlertSeverity.INFO.value, 0),
            unacknowledged=unacknowledged,
            by_type=by_type,
        )

    def archive_resolved(self, older_than: datetime) -> int:
        """
        Move alerts resolved before a cutoff into the archive.

        Returns:
            Number of alerts archived
        """
        with self._database.session_scope() as session:
            return AlertRepository(session).archive_resolved(older_than)
