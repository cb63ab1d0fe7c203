"""
Audit Trail ORM Model.

============================================================
PURPOSE
============================================================
Append-only record of every gated mutation.

- Mutability: IMMUTABLE once written
- Source: access_control.audit.AuditWriter
- Never updated, never deleted

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from storage.models.base import Base, UTCDateTime, utc_now


class AuditLogEntry(Base):
    """One audited operation."""

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    user: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False)

    action: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Operation name, e.g. action.enqueue"
    )

    targets: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    result: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Success, Failure, Denied"
    )

    source_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_audit_timestamp", "timestamp"),
        Index("ix_audit_user", "user"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for export."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "user": self.user,
            "role": self.role,
            "action": self.action,
            "targets": list(self.targets or []),
            "result": self.result,
            "source_address": self.source_address,
            "details": self.details,
        }
