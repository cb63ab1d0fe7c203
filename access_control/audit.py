"""
Audit Trail Writer.

============================================================
PURPOSE
============================================================
Records every gated operation. An audit entry is never
dropped silently:

1. Write to the store (audit_log table)
2. If the store rejects it, append one JSON line to the
   local fallback file
3. If both fail, raise AuditWriteError

Entries are append-only; nothing here updates or deletes.

============================================================
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.clock import ClockProtocol, SystemClock
from core.config import ConfigProvider, FleetConfig
from core.exceptions import AuditWriteError
from storage.database import Database
from storage.models import AuditLogEntry
from storage.repositories import AuditRepository, RepositoryException


logger = logging.getLogger(__name__)


class AuditResult(str, Enum):
    """Outcome recorded for an audited operation."""
    SUCCESS = "Success"
    FAILURE = "Failure"
    DENIED = "Denied"


@dataclass(frozen=True)
class Actor:
    """Caller of a gated operation. The role is trusted as given."""
    user: str
    role: str
    source_address: Optional[str] = None


@dataclass
class AuditRecord:
    """One audit entry before it is written."""
    timestamp: datetime
    user: str
    role: str
    action: str
    targets: List[str]
    result: AuditResult
    source_address: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "user": self.user,
            "role": self.role,
            "action": self.action,
            "targets": list(self.targets),
            "result": self.result.value,
            "source_address": self.source_address,
            "details": self.details,
        }


class AuditWriter:
    """
    Writes audit records to the store with a local file fallback.
    """

    def __init__(
        self,
        database: Database,
        clock: Optional[ClockProtocol] = None,
        config_provider: Optional[ConfigProvider] = None,
    ):
        self._database = database
        self._clock = clock or SystemClock()
        self._config_provider = config_provider or FleetConfig
        self._fallback_writes = 0

    @property
    def fallback_writes(self) -> int:
        """Entries that went to the fallback file since startup."""
        return self._fallback_writes

    @property
    def fallback_path(self) -> Path:
        return Path(self._config_provider().audit.fallback_path)

    def write_audit(
        self,
        action: str,
        targets: List[str],
        result: AuditResult,
        details: Optional[Dict[str, Any]],
        actor: Actor,
    ) -> AuditRecord:
        """
        Record one audited operation.

        Raises:
            AuditWriteError: If neither the store nor the fallback file
                accepted the entry
        """
        record = AuditRecord(
            timestamp=self._clock.now(),
            user=actor.user,
            role=actor.role,
            action=action,
            targets=[str(t) for t in targets],
            result=AuditResult(result),
            source_address=actor.source_address,
            details=_json_safe(details or {}),
        )

        try:
            self._write_store(record)
            return record
        except (RepositoryException, SQLAlchemyError) as store_error:
            logger.error(f"Audit store write failed for {action}: {store_error}; using fallback file")
            try:
                self._write_fallback(record)
            except OSError as file_error:
                logger.critical(f"Audit fallback write failed for {action}: {file_error}")
                raise AuditWriteError(
                    f"Audit entry for {action} could not be written: "
                    f"store: {store_error}; file: {file_error}",
                    context=record.to_dict(),
                    cause=file_error,
                ) from file_error
            self._fallback_writes += 1
            return record

    def _write_store(self, record: AuditRecord) -> None:
        with self._database.session_scope() as session:
            AuditRepository(session).append(AuditLogEntry(
                timestamp=record.timestamp,
                user=record.user,
                role=record.role,
                action=record.action,
                targets=record.targets,
                result=record.result.value,
                source_address=record.source_address,
                details=record.details or None,
            ))

    def _write_fallback(self, record: AuditRecord) -> None:
        path = self.fallback_path
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record.to_dict(), sort_keys=True) + "\n")

    def read_fallback(self) -> List[Dict[str, Any]]:
        """Entries in the fallback file, oldest first."""
        path = self.fallback_path
        if not path.exists():
            return []
        with open(path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


def _json_safe(details: Dict[str, Any]) -> Dict[str, Any]:
    # Round-trip so non-JSON values (datetimes, enums) become strings
    return json.loads(json.dumps(details, default=str))
