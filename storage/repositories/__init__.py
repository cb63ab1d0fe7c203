"""
Repository Layer Package.

============================================================
PURPOSE
============================================================
The Repository Layer is the ONLY gateway to persistent storage.
All database access MUST go through repository classes.

============================================================
ARCHITECTURE PRINCIPLES
============================================================
1. DAO Pattern: One repository per domain
2. Session Injection: Sessions are injected, not created internally
3. Explicit Methods: No generic 'execute', clear method names
4. Guarded Transitions: state changes are conditional UPDATEs
5. Exception Handling: All DB errors wrapped in repository exceptions

============================================================
REPOSITORIES
============================================================
- DeviceRepository: Managed endpoints
- ActionRepository: Action queue and archive
- AlertRepository: Alerts and archive
- MetricRepository: Producer metrics and snapshots (read side)
- AuditRepository: Append-only audit trail

============================================================
"""

from storage.repositories.actions import ActionRepository
from storage.repositories.alerts import AlertRepository
from storage.repositories.audit import AuditRepository
from storage.repositories.base import BaseRepository
from storage.repositories.devices import DeviceRepository
from storage.repositories.exceptions import (
    ConnectionError,
    IntegrityError,
    QueryError,
    RecordNotFoundError,
    ReferencedRecordError,
    RepositoryException,
)
from storage.repositories.metrics import MetricRepository


__all__ = [
    "BaseRepository",
    "DeviceRepository",
    "ActionRepository",
    "AlertRepository",
    "MetricRepository",
    "AuditRepository",
    "RepositoryException",
    "RecordNotFoundError",
    "ReferencedRecordError",
    "IntegrityError",
    "ConnectionError",
    "QueryError",
]
