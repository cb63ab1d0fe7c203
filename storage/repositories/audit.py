"""
Audit Repository.

Append-only: entries are inserted and read, never updated.
"""

from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from storage.models import AuditLogEntry
from storage.repositories.base import BaseRepository


class AuditRepository(BaseRepository[AuditLogEntry]):
    """
    Repository for AuditLogEntry rows.
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session, AuditLogEntry, "AuditRepository")

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Insert an audit entry."""
        return self._add(entry)

    def list_recent(self, limit: int = 100, user: Optional[str] = None) -> List[AuditLogEntry]:
        """Newest entries first."""
        stmt = select(AuditLogEntry)
        if user is not None:
            stmt = stmt.where(AuditLogEntry.user == user)
        stmt = stmt.order_by(AuditLogEntry.timestamp.desc(), AuditLogEntry.id.desc()).limit(limit)
        return self._execute_query(stmt)
