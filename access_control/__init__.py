"""
Access Control Package.

Permission checks and the audit trail wrapping every
console mutation.

Modules:
- rbac: Roles and permission matching
- audit: Store-backed audit writer with file fallback
- gate: Check + run + audit around one operation
"""

from .audit import Actor, AuditRecord, AuditResult, AuditWriter
from .gate import AccessGate
from .rbac import ALL_PERMISSIONS, BUILTIN_ROLES, Permission, RoleRegistry


__all__ = [
    "Actor",
    "AuditRecord",
    "AuditResult",
    "AuditWriter",
    "AccessGate",
    "ALL_PERMISSIONS",
    "BUILTIN_ROLES",
    "Permission",
    "RoleRegistry",
]
