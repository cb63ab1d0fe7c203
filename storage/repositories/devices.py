"""
Device Repository.

============================================================
PURPOSE
============================================================
Data access for managed endpoints.

- Register / update devices
- Status and last-seen writes (execution and scoring engines)
- Fleet counts for the console summary
- Guarded deletion: explicit cascade or reassignment only

============================================================
"""

from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import case, delete, func, literal, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models import (
    Action,
    Alert,
    Device,
    DeviceSnapshot,
    DeviceStatus,
    Metric,
    UTCDateTime,
    open_alert_key,
    utc_now,
)
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import ReferencedRecordError


class DeviceRepository(BaseRepository[Device]):
    """
    Repository for Device entities.
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session, Device, "DeviceRepository")

    # =========================================================
    # READS
    # =========================================================

    def get(self, device_id: str) -> Optional[Device]:
        """Get a device by id."""
        return self._get_by_id(device_id)

    def get_or_raise(self, device_id: str) -> Device:
        """Get a device by id, raising RecordNotFoundError if absent."""
        return self._get_by_id_or_raise(device_id, id_field="device_id")

    def list_devices(
        self,
        site: Optional[str] = None,
        status: Optional[DeviceStatus] = None,
    ) -> List[Device]:
        """List devices ordered by id, optionally filtered."""
        stmt = select(Device).order_by(Device.id)
        if site is not None:
            stmt = stmt.where(Device.site == site)
        if status is not None:
            stmt = stmt.where(Device.status == status.value)
        return self._execute_query(stmt)

    def list_ids(self) -> List[str]:
        """All device ids."""
        try:
            return list(self._session.execute(select(Device.id).order_by(Device.id)).scalars())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "list_ids")
            raise

    def count_by_status(self) -> Dict[str, int]:
        """Device count per status value."""
        stmt = select(Device.status, func.count()).group_by(Device.status)
        try:
            return {status: count for status, count in self._session.execute(stmt).all()}
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count_by_status")
            raise

    # =========================================================
    # WRITES
    # =========================================================

    def register(
        self,
        device_id: str,
        hostname: str,
        ip_address: Optional[str] = None,
        mac_address: Optional[str] = None,
        site: Optional[str] = None,
        device_type: Optional[str] = None,
        status: DeviceStatus = DeviceStatus.UNKNOWN,
    ) -> Device:
        """
        Create a device, or update the descriptive fields of an existing one.

        Status of an existing device is left untouched.
        """
        device = self._get_by_id(device_id)
        if device is None:
            device = Device(
                id=device_id,
                hostname=hostname,
                ip_address=ip_address,
                mac_address=mac_address,
                site=site,
                device_type=device_type,
                status=status.value,
            )
            self._add(device)
            self._logger.info(f"Registered device {device_id} ({hostname})")
            return device

        device.hostname = hostname
        device.ip_address = ip_address or device.ip_address
        device.mac_address = mac_address or device.mac_address
        device.site = site or device.site
        device.device_type = device_type or device.device_type
        self._flush("register", {"device_id": device_id})
        return device

    def update_status(
        self,
        device_id: str,
        status: DeviceStatus,
        seen_at: Optional[datetime] = None,
        changed_at: Optional[datetime] = None,
    ) -> bool:
        """
        Set device status, optionally refreshing last_seen.

        status_changed_at moves only when the status value differs
        from the stored one.

        Args:
            device_id: Device to update
            status: New status
            seen_at: Contact time; also the default change time
            changed_at: Time of the change (default seen_at, then now)

        Returns:
            True if the device exists
        """
        at = changed_at or seen_at or utc_now()
        values = {
            "status": status.value,
            "updated_at": utc_now(),
            "status_changed_at": case(
                (Device.status != status.value, literal(at, UTCDateTime())),
                else_=Device.status_changed_at,
            ),
        }
        if seen_at is not None:
            values["last_seen"] = seen_at
        stmt = update(Device).where(Device.id == device_id).values(**values)
        changed = self._execute_update(stmt, "update_status") == 1
        if changed:
            self._logger.debug(f"Device {device_id} status -> {status.value}")
        return changed

    def record_health(self, device_id: str, total: int, scored_at: datetime) -> None:
        """Store the latest computed health total."""
        stmt = (
            update(Device)
            .where(Device.id == device_id)
            .values(health_score=total, health_scored_at=scored_at)
        )
        self._execute_update(stmt, "record_health")

    def delete(
        self,
        device_id: str,
        cascade_actions: bool = False,
        reassign_to: Optional[str] = None,
    ) -> None:
        """
        Delete a device.

        Args:
            device_id: Device to delete
            cascade_actions: Delete its actions too
            reassign_to: Move its actions and alerts to this device

        Raises:
            RecordNotFoundError: If the device (or reassignment target) is missing
            ReferencedRecordError: If rows still reference it and neither
                cascade nor reassignment was requested
        """
        self.get_or_raise(device_id)
        if reassign_to is not None:
            self.get_or_raise(reassign_to)
            self._execute_update(
                update(Action).where(Action.device_id == device_id).values(device_id=reassign_to),
                "reassign_actions",
            )
            self._reassign_alerts(device_id, reassign_to)
        else:
            action_count = self._count_references(Action, device_id)
            alert_count = self._count_references(Alert, device_id)
            if alert_count or (action_count and not cascade_actions):
                raise ReferencedRecordError(
                    repository_name=self._repository_name,
                    record_id=device_id,
                    references={"actions": action_count, "alerts": alert_count},
                )
            if action_count:
                self._execute_update(
                    delete(Action).where(Action.device_id == device_id),
                    "cascade_actions",
                )

        self._execute_update(delete(Metric).where(Metric.device_id == device_id), "delete_metrics")
        self._execute_update(
            delete(DeviceSnapshot).where(DeviceSnapshot.device_id == device_id),
            "delete_snapshots",
        )
        self._execute_update(delete(Device).where(Device.id == device_id), "delete")
        self._logger.info(f"Deleted device {device_id}")

    def _reassign_alerts(self, device_id: str, reassign_to: str) -> None:
        """
        Move alerts to another device.

        An open alert whose type is already open on the target is
        resolved on the way over, keeping one open alert per pair.
        """
        alerts = self._execute_query(select(Alert).where(Alert.device_id == device_id))
        open_on_target = set(self._execute_query(
            select(Alert.alert_type).where(
                Alert.device_id == reassign_to,
                Alert.open_key.is_not(None),
            )
        ))
        now = utc_now()
        for alert in alerts:
            alert.device_id = reassign_to
            if alert.open_key is None:
                continue
            if alert.alert_type in open_on_target:
                alert.open_key = None
                alert.resolved_at = now
                alert.resolved_by = "system"
                alert.auto_resolved = True
            else:
                alert.open_key = open_alert_key(reassign_to, alert.alert_type)
                open_on_target.add(alert.alert_type)
        self._flush("reassign_alerts", {"device_id": device_id, "reassign_to": reassign_to})

    def _count_references(self, model, device_id: str) -> int:
        stmt = select(func.count()).select_from(model).where(model.device_id == device_id)
        try:
            return self._session.execute(stmt).scalar() or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count_references")
            raise
