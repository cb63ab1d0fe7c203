"""
Access Gate.

Wraps a mutation with a permission check and an audit entry:

    denied    -> audit Denied, raise AccessDeniedError
    raised    -> audit Failure (error type + message), re-raise
    completed -> audit Success, return the result

An audit write that fails entirely raises AuditWriteError.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from core.exceptions import AccessDeniedError

from .audit import Actor, AuditResult, AuditWriter
from .rbac import RoleRegistry


logger = logging.getLogger(__name__)


Operation = Callable[[], Union[Any, Awaitable[Any]]]


class AccessGate:
    """
    Permission check + audit around a single operation.

    Usage:
        gate = AccessGate(RoleRegistry(), AuditWriter(database))
        ids = await gate.run(
            actor, Permission.ACTION_WRITE, "action.enqueue", ["web-01"],
            lambda: engine.enqueue(["web-01"], "Reboot"),
        )
    """

    def __init__(self, roles: RoleRegistry, audit: AuditWriter):
        self._roles = roles
        self._audit = audit

    @property
    def roles(self) -> RoleRegistry:
        return self._roles

    @property
    def audit(self) -> AuditWriter:
        return self._audit

    def check(self, actor: Actor, permission: str, action: str, targets: Iterable[Any]) -> None:
        """
        Assert a permission, auditing a denial.

        Raises:
            AccessDeniedError: If the actor's role lacks the permission
        """
        try:
            self._roles.assert_permission(permission, actor.role)
        except AccessDeniedError as e:
            self._audit.write_audit(
                action,
                list(targets),
                AuditResult.DENIED,
                {"permission": permission, "reason": e.message},
                actor,
            )
            raise

    async def run(
        self,
        actor: Actor,
        permission: str,
        action: str,
        targets: Iterable[Any],
        operation: Operation,
        details: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Run an operation if permitted, auditing the outcome.

        The operation may be a plain or an async callable.
        """
        targets = list(targets)
        self.check(actor, permission, action, targets)

        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.info(f"{action} by {actor.user} failed: {type(e).__name__}: {e}")
            failure = dict(details or {})
            failure.update({"error_type": type(e).__name__, "error": str(e)})
            self._audit.write_audit(action, targets, AuditResult.FAILURE, failure, actor)
            raise

        self._audit.write_audit(action, targets, AuditResult.SUCCESS, details, actor)
        return result
