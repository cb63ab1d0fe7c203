"""
Role-Based Access Control.

============================================================
PURPOSE
============================================================
Decides whether a role may perform an operation.

Rules:
- Permissions are plain strings ("device:write")
- "*" grants everything
- Matching is exact string comparison, no patterns
- Extra roles come from configuration, no code change

============================================================
BUILT-IN ROLES
============================================================
- Admin:    *
- Operator: device/action/alert read + write, report read
- Viewer:   read only

============================================================
"""

import logging
from typing import Dict, FrozenSet, List, Optional

from core.config import ConfigProvider, FleetConfig
from core.exceptions import AccessDeniedError, UnknownRoleError


logger = logging.getLogger(__name__)


ALL_PERMISSIONS = "*"


class Permission:
    """Permission names used by the console."""
    DEVICE_READ = "device:read"
    DEVICE_WRITE = "device:write"
    ACTION_READ = "action:read"
    ACTION_WRITE = "action:write"
    ALERT_READ = "alert:read"
    ALERT_WRITE = "alert:write"
    REPORT_READ = "report:read"
    SYSTEM_ADMIN = "system:admin"


BUILTIN_ROLES: Dict[str, FrozenSet[str]] = {
    "Admin": frozenset({ALL_PERMISSIONS}),
    "Operator": frozenset({
        Permission.DEVICE_READ,
        Permission.DEVICE_WRITE,
        Permission.ACTION_READ,
        Permission.ACTION_WRITE,
        Permission.ALERT_READ,
        Permission.ALERT_WRITE,
        Permission.REPORT_READ,
    }),
    "Viewer": frozenset({
        Permission.DEVICE_READ,
        Permission.ACTION_READ,
        Permission.ALERT_READ,
        Permission.REPORT_READ,
    }),
}


# ============================================================
# ROLE REGISTRY
# ============================================================

class RoleRegistry:
    """
    Resolves role names to permission sets.

    Configured roles are read on every lookup so a reloaded
    configuration takes effect immediately. A configured role
    with a built-in name replaces the built-in.
    """

    def __init__(self, config_provider: Optional[ConfigProvider] = None):
        self._config_provider = config_provider or FleetConfig

    def _roles(self) -> Dict[str, FrozenSet[str]]:
        roles = dict(BUILTIN_ROLES)
        for name, permissions in self._config_provider().roles.items():
            roles[name] = frozenset(permissions)
        return roles

    def role_names(self) -> List[str]:
        return sorted(self._roles())

    def permissions(self, role: str) -> FrozenSet[str]:
        """
        Raises:
            UnknownRoleError: If the role is not defined
        """
        roles = self._roles()
        if role not in roles:
            raise UnknownRoleError(role)
        return roles[role]

    def has_permission(self, role: str, permission: str) -> bool:
        try:
            granted = self.permissions(role)
        except UnknownRoleError:
            return False
        return ALL_PERMISSIONS in granted or permission in granted

    def assert_permission(self, permission: str, role: str) -> None:
        """
        Raises:
            AccessDeniedError: If the role lacks the permission (unknown
                roles hold no permissions)
        """
        if not self.has_permission(role, permission):
            logger.warning(f"Access denied: role '{role}' lacks '{permission}'")
            raise AccessDeniedError(permission, role)

