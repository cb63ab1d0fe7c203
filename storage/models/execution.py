"""
Execution Domain ORM Models.

============================================================
PURPOSE
============================================================
Models for queued and completed remote actions.

============================================================
DATA LIFECYCLE ROLE
============================================================
- Stage: OPERATIONAL
- Mutability: state transitions only, by the execution engine
- Retention: until archived into actions_archive

============================================================
MODELS
============================================================
- Action: Live action queue and recent history
- ArchivedAction: Retention copy of terminal actions

============================================================
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, UTCDateTime, utc_now
from storage.models.enums import ActionStatus


class Action(Base):
    """
    A queued or completed remote operation.

    ============================================================
    DATA LIFECYCLE
    ============================================================
    - Created by any caller (Pending)
    - Pending -> Running is a single conditional UPDATE
    - Status, result and completed_at are written together
    ============================================================
    """

    __tablename__ = "actions"

    # Integer key doubles as insertion order for tie-breaking
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    device_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        ForeignKey("devices.id"),
        nullable=True,
        comment="Target device, null for broadcast"
    )

    action_type: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ActionStatus.PENDING.value,
    )

    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=5,
        comment="1 (most urgent) to 10"
    )

    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
    )

    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        Index("ix_actions_dispatch", "status", "priority", "created_at", "id"),
        Index("ix_actions_device_status", "device_id", "status"),
    )

    @property
    def action_status(self) -> ActionStatus:
        """Status as enum."""
        return ActionStatus(self.status)

    def __repr__(self) -> str:
        return f"<Action {self.id} {self.action_type} {self.status}>"


class ArchivedAction(Base):
    """
    Retention copy of a terminal action.

    Archival is a move: the live row is deleted in the same
    transaction that writes this one.
    """

    __tablename__ = "actions_archive"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, comment="Original action id")
    device_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    archived_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    archive_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
