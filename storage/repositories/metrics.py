"""
Metric and Snapshot Repository.

Read side of the producer-written tables. Producers append
rows; the engine only ever reads the latest value per name.
The write helpers exist for producers and fixtures.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from storage.models import DeviceSnapshot, Metric, SnapshotType, utc_now
from storage.repositories.base import BaseRepository


class MetricRepository(BaseRepository[Metric]):
    """
    Repository for Metric and DeviceSnapshot rows.
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session, Metric, "MetricRepository")

    def latest_metrics(self, device_id: str) -> Dict[str, Metric]:
        """
        Most recent row per metric name for a device.

        Returns:
            Mapping of metric name to its latest Metric row
        """
        latest = (
            select(Metric.name, func.max(Metric.collected_at).label("collected_at"))
            .where(Metric.device_id == device_id)
            .group_by(Metric.name)
            .subquery()
        )
        stmt = (
            select(Metric)
            .join(
                latest,
                (Metric.name == latest.c.name) & (Metric.collected_at == latest.c.collected_at),
            )
            .where(Metric.device_id == device_id)
            .order_by(Metric.id)
        )
        # Ties on collected_at resolve to the highest id
        return {metric.name: metric for metric in self._execute_query(stmt)}

    def add_metric(
        self,
        device_id: str,
        category: str,
        name: str,
        value: Optional[float],
        collected_at: Optional[datetime] = None,
        unavailable_reason: Optional[str] = None,
    ) -> Metric:
        """Append a measurement."""
        return self._add(Metric(
            device_id=device_id,
            category=category,
            name=name,
            value=value,
            unavailable_reason=unavailable_reason,
            collected_at=collected_at or utc_now(),
        ))

    def latest_snapshot(
        self,
        device_id: str,
        snapshot_type: SnapshotType,
    ) -> Optional[DeviceSnapshot]:
        """Newest snapshot of a type for a device."""
        stmt = (
            select(DeviceSnapshot)
            .where(
                DeviceSnapshot.device_id == device_id,
                DeviceSnapshot.snapshot_type == snapshot_type.value,
            )
            .order_by(DeviceSnapshot.collected_at.desc(), DeviceSnapshot.id.desc())
            .limit(1)
        )
        return self._execute_scalar(stmt)

    def add_snapshot(
        self,
        device_id: str,
        snapshot_type: SnapshotType,
        data: Dict[str, Any],
        collected_at: Optional[datetime] = None,
    ) -> DeviceSnapshot:
        """Append an inventory or configuration document."""
        snapshot = DeviceSnapshot(
            device_id=device_id,
            snapshot_type=snapshot_type.value,
            data=data,
            collected_at=collected_at or utc_now(),
        )
        self._session.add(snapshot)
        self._flush("add_snapshot", {"device_id": device_id})
        return snapshot
