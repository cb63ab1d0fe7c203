"""
Monitoring Domain ORM Models.

============================================================
PURPOSE
============================================================
Models for device alerts and their retention archive.

============================================================
DATA LIFECYCLE ROLE
============================================================
- Alert: mutated only via raise (dedup update), acknowledge
  and resolve; never hard-deleted
- ArchivedAlert: retention copy of resolved alerts

============================================================
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, UTCDateTime, utc_now
from storage.models.enums import AlertSeverity, AlertState


def open_alert_key(device_id: str, alert_type: str) -> str:
    """Unique key held by the single unresolved alert of a pair."""
    return f"{device_id}|{alert_type}"


class Alert(Base):
    """
    A device incident.

    ============================================================
    INVARIANT
    ============================================================
    open_key is set while the alert is unresolved and cleared
    on resolve. The unique constraint on it guarantees at most
    one unresolved alert per (device, alert_type).
    ============================================================
    """

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    device_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("devices.id"),
        nullable=False,
    )

    alert_type: Mapped[str] = mapped_column(String(64), nullable=False)

    severity: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="Critical, High, Medium, Low, Info"
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    auto_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    last_notified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    correlated_alert_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("alerts.id"),
        nullable=True,
        comment="Root-cause alert this one was correlated under"
    )

    action_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Action whose failure raised this alert"
    )

    open_key: Mapped[Optional[str]] = mapped_column(String(140), nullable=True)

    __table_args__ = (
        UniqueConstraint("open_key", name="uq_alerts_open_key"),
        Index("ix_alerts_device_type", "device_id", "alert_type"),
        Index("ix_alerts_resolved_at", "resolved_at"),
    )

    @property
    def state(self) -> AlertState:
        """Lifecycle state derived from timestamps."""
        if self.resolved_at is not None:
            return AlertState.RESOLVED
        if self.acknowledged_at is not None:
            return AlertState.ACKNOWLEDGED
        return AlertState.ACTIVE

    @property
    def alert_severity(self) -> AlertSeverity:
        """Severity as enum."""
        return AlertSeverity(self.severity)

    def __repr__(self) -> str:
        return f"<Alert {self.id} {self.device_id}/{self.alert_type} {self.state.value}>"


class ArchivedAlert(Base):
    """Retention copy of a resolved alert."""

    __tablename__ = "alerts_archive"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, comment="Original alert id")
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    acknowledged_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resolved_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    auto_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    occurrence_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    archived_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
