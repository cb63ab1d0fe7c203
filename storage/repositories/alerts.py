"""
Alert Repository.

============================================================
PURPOSE
============================================================
Data access for device alerts.

============================================================
DATA LIFECYCLE
============================================================
- Stage: MONITORING
- Alerts are never hard-deleted; resolved alerts are moved to
  alerts_archive once past retention
- open_key is populated while unresolved; the unique
  constraint rejects a second open alert for a pair

============================================================
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models import Alert, AlertSeverity, ArchivedAlert, open_alert_key, utc_now
from storage.repositories.base import BaseRepository


class AlertRepository(BaseRepository[Alert]):
    """
    Repository for Alert entities.
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session, Alert, "AlertRepository")

    # =========================================================
    # READS
    # =========================================================

    def get(self, alert_id: int) -> Optional[Alert]:
        """Get an alert by id."""
        return self._get_by_id(alert_id)

    def get_or_raise(self, alert_id: int) -> Alert:
        """Get an alert by id, raising RecordNotFoundError if absent."""
        return self._get_by_id_or_raise(alert_id, id_field="alert_id")

    def find_open(self, device_id: str, alert_type: str) -> Optional[Alert]:
        """The unresolved alert for a (device, type) pair, if any."""
        stmt = select(Alert).where(Alert.open_key == open_alert_key(device_id, alert_type))
        return self._execute_scalar(stmt)

    def list_open(
        self,
        device_id: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> List[Alert]:
        """Unresolved alerts, newest first."""
        stmt = select(Alert).where(Alert.resolved_at.is_(None))
        if device_id is not None:
            stmt = stmt.where(Alert.device_id == device_id)
        if severity is not None:
            stmt = stmt.where(Alert.severity == severity.value)
        stmt = stmt.order_by(Alert.created_at.desc(), Alert.id.desc())
        return self._execute_query(stmt)

    def list_for_device(self, device_id: str) -> List[Alert]:
        """All live alerts of a device, oldest first."""
        stmt = select(Alert).where(Alert.device_id == device_id).order_by(Alert.id)
        return self._execute_query(stmt)

    def count_open_by_severity(self) -> Dict[str, int]:
        """Unresolved alert count per severity value."""
        stmt = (
            select(Alert.severity, func.count())
            .where(Alert.resolved_at.is_(None))
            .group_by(Alert.severity)
        )
        try:
            return {severity: count for severity, count in self._session.execute(stmt).all()}
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count_open_by_severity")
            raise

    def count_unacknowledged(self) -> int:
        """Unresolved alerts nobody acknowledged yet."""
        return self._count(Alert.resolved_at.is_(None), Alert.acknowledged_at.is_(None))

    # =========================================================
    # WRITES
    # =========================================================

    def create(
        self,
        device_id: str,
        alert_type: str,
        severity: AlertSeverity,
        title: str,
        message: Optional[str],
        now: datetime,
        action_id: Optional[int] = None,
        correlated_alert_id: Optional[int] = None,
        notified: bool = True,
    ) -> Alert:
        """
        Insert an Active alert holding the pair's open key.

        Raises:
            IntegrityError: If an unresolved alert for the pair exists
        """
        alert = Alert(
            device_id=device_id,
            alert_type=alert_type,
            severity=severity.value,
            title=title,
            message=message,
            created_at=now,
            last_occurred_at=now,
            last_notified_at=now if notified else None,
            occurrence_count=1,
            auto_resolved=False,
            action_id=action_id,
            correlated_alert_id=correlated_alert_id,
            open_key=open_alert_key(device_id, alert_type),
        )
        return self._add(alert)

    def save(self, alert: Alert, operation: str = "save") -> Alert:
        """Flush changes made to a loaded alert."""
        self._flush(operation, {"alert_id": alert.id})
        return alert

    def mark_resolved(
        self,
        alert: Alert,
        by: str,
        now: datetime,
        auto: bool = False,
    ) -> Alert:
        """Resolve an alert and release its open key."""
        alert.resolved_at = now
        alert.resolved_by = by
        alert.auto_resolved = auto
        alert.open_key = None
        return self.save(alert, "resolve")

    # =========================================================
    # RETENTION
    # =========================================================

    def archive_resolved(self, older_than: datetime) -> int:
        """
        Move alerts resolved before `older_than` into the archive.

        Alerts still referenced as a correlation root by a live
        alert stay until the referencing alert is archived.
        """
        referenced = (
            select(Alert.correlated_alert_id)
            .where(Alert.correlated_alert_id.is_not(None), Alert.resolved_at.is_(None))
        )
        stmt = select(Alert).where(
            Alert.resolved_at.is_not(None),
            Alert.resolved_at < older_than,
            Alert.id.not_in(referenced),
        )
        alerts = self._execute_query(stmt)
        if not alerts:
            return 0

        archived_at = utc_now()
        for alert in alerts:
            self._session.add(ArchivedAlert(
                id=alert.id,
                device_id=alert.device_id,
                alert_type=alert.alert_type,
                severity=alert.severity,
                title=alert.title,
                message=alert.message,
                created_at=alert.created_at,
                acknowledged_at=alert.acknowledged_at,
                acknowledged_by=alert.acknowledged_by,
                resolved_at=alert.resolved_at,
                resolved_by=alert.resolved_by,
                auto_resolved=alert.auto_resolved,
                occurrence_count=alert.occurrence_count,
                archived_at=archived_at,
            ))
        self._flush("archive_resolved")

        ids = [alert.id for alert in alerts]
        # Resolved children pointing at an archived root lose the link
        for child in self._execute_query(select(Alert).where(Alert.correlated_alert_id.in_(ids))):
            child.correlated_alert_id = None
        self._flush("archive_resolved")

        self._execute_update(
            delete(Alert).where(Alert.id.in_(ids)).execution_options(synchronize_session=False),
            "archive_resolved",
        )
        for alert in alerts:
            self._session.expunge(alert)
        self._logger.info(f"Archived {len(ids)} resolved alerts")
        return len(ids)
