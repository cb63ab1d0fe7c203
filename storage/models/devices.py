"""
Device Domain ORM Models.

============================================================
PURPOSE
============================================================
Models for managed endpoints and the data external producers
write about them: metrics and inventory/configuration
snapshots.

============================================================
DATA LIFECYCLE ROLE
============================================================
- Device: MUTABLE (status, health, timestamps)
- Metric: IMMUTABLE (append-only, producer-written)
- DeviceSnapshot: IMMUTABLE (append-only, producer-written)
- Consumers: execution engine, scoring engine, cache layer

============================================================
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text, Float
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, TimestampMixin, UTCDateTime, utc_now
from storage.models.enums import DeviceStatus


class Device(Base, TimestampMixin):
    """
    A managed endpoint.

    ============================================================
    DATA LIFECYCLE
    ============================================================
    - Mutability: MUTABLE
    - Status written by execution engine and scoring engine
    - Never deleted while actions or alerts reference it
      without an explicit cascade or reassignment
    ============================================================
    """

    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Unique device identifier"
    )

    hostname: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Network hostname (used as transport target)"
    )

    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    mac_address: Mapped[Optional[str]] = mapped_column(String(17), nullable=True)

    site: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Site / location classification"
    )

    device_type: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Workstation, Server, Laptop, ..."
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DeviceStatus.UNKNOWN.value,
        comment="Unknown, Online, Offline, Warning, Critical, Maintenance, Decommissioned"
    )

    health_score: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Last computed 0-100 health total"
    )

    health_scored_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    last_seen: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    status_changed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(),
        nullable=True,
        comment="When status last took a different value"
    )
    last_inventory: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_devices_site", "site"),
        Index("ix_devices_status", "status"),
        Index("ix_devices_hostname", "hostname"),
    )

    @property
    def device_status(self) -> DeviceStatus:
        """Status as enum."""
        return DeviceStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for console output."""
        return {
            "device_id": self.id,
            "hostname": self.hostname,
            "ip_address": self.ip_address,
            "mac_address": self.mac_address,
            "site": self.site,
            "device_type": self.device_type,
            "status": self.status,
            "health_score": self.health_score,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }

    def __repr__(self) -> str:
        return f"<Device {self.id} {self.hostname} {self.status}>"


class Metric(Base):
    """
    A single producer-reported measurement.

    A row with a null value and an unavailable_reason means the
    producer could not assess it on this platform/permission set.
    """

    __tablename__ = "metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    device_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("devices.id"),
        nullable=False,
    )

    category: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="availability, performance, security, compliance"
    )

    name: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="e.g. cpu_percent, firewall_enabled, policy_deviations"
    )

    value: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    unavailable_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    collected_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
    )

    __table_args__ = (
        Index("ix_metrics_device_name_collected", "device_id", "name", "collected_at"),
    )


class DeviceSnapshot(Base):
    """
    Inventory or configuration document written by a collector.
    """

    __tablename__ = "device_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    device_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("devices.id"),
        nullable=False,
    )

    snapshot_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="inventory or configuration"
    )

    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    collected_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
    )

    __table_args__ = (
        Index("ix_snapshots_device_type_collected", "device_id", "snapshot_type", "collected_at"),
    )
