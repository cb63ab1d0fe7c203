"""
Orchestrator - Console Facade.

Entry points a console (CLI, web handler) calls on behalf of a
user. Mutations go through the access gate and are audited;
reads only check the permission.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from access_control import AccessGate, Actor, Permission
from execution_engine import ActionStatusView, DispatchReport
from monitoring.models import AlertSummary, AlertView
from scoring_engine import FleetHealthSummary, HealthScore
from storage.models import AlertSeverity
from storage.repositories import DeviceRepository

from .core import FleetOrchestrator


class FleetConsole:
    """
    Gated operations over a FleetOrchestrator.

    Usage:
        console = FleetConsole(orchestrator)
        admin = Actor(user="alice", role="Admin", source_address="10.0.0.5")
        ids = await console.enqueue_actions(admin, ["web-01"], "Reboot")
    """

    def __init__(self, orchestrator: FleetOrchestrator):
        self._orchestrator = orchestrator
        self._gate: AccessGate = orchestrator.gate

    def _require(self, actor: Actor, permission: str) -> None:
        self._gate.roles.assert_permission(permission, actor.role)

    # --------------------------------------------------------
    # Actions
    # --------------------------------------------------------

    async def enqueue_actions(
        self,
        actor: Actor,
        device_ids: Sequence[Optional[str]],
        action_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 5,
        scheduled_at: Optional[datetime] = None,
    ) -> List[int]:
        engine = self._orchestrator.execution
        return await self._gate.run(
            actor,
            Permission.ACTION_WRITE,
            "action.enqueue",
            [d or "*" for d in device_ids],
            lambda: engine.enqueue(
                device_ids,
                action_type,
                payload=payload,
                priority=priority,
                scheduled_at=scheduled_at,
                created_by=actor.user,
            ),
            details={"action_type": action_type, "priority": priority},
        )

    async def cancel_action(self, actor: Actor, action_id: int) -> ActionStatusView:
        engine = self._orchestrator.execution
        return await self._gate.run(
            actor,
            Permission.ACTION_WRITE,
            "action.cancel",
            [action_id],
            lambda: engine.cancel(action_id, by=actor.user),
        )

    async def dispatch_now(self, actor: Actor, throttle_limit: Optional[int] = None) -> DispatchReport:
        engine = self._orchestrator.execution
        return await self._gate.run(
            actor,
            Permission.ACTION_WRITE,
            "action.dispatch",
            [],
            lambda: engine.dispatch_pending(throttle_limit),
            details={"throttle_limit": throttle_limit},
        )

    async def resume_execution(self, actor: Actor) -> None:
        engine = self._orchestrator.execution
        await self._gate.run(
            actor,
            Permission.SYSTEM_ADMIN,
            "execution.resume",
            [],
            lambda: engine.resume(by=actor.user),
            details={"halt_reason": engine.halt_reason},
        )

    def get_action(self, actor: Actor, action_id: int) -> ActionStatusView:
        self._require(actor, Permission.ACTION_READ)
        return self._orchestrator.execution.get_status(action_id)

    def recent_actions(self, actor: Actor, limit: int = 50) -> List[ActionStatusView]:
        self._require(actor, Permission.ACTION_READ)
        return self._orchestrator.execution.list_recent(limit)

    # --------------------------------------------------------
    # Alerts
    # --------------------------------------------------------

    async def acknowledge_alert(self, actor: Actor, alert_id: int) -> AlertView:
        alerts = self._orchestrator.alerts
        return await self._gate.run(
            actor,
            Permission.ALERT_WRITE,
            "alert.acknowledge",
            [alert_id],
            lambda: alerts.acknowledge(alert_id, actor.user),
        )

    async def resolve_alert(self, actor: Actor, alert_id: int) -> AlertView:
        alerts = self._orchestrator.alerts
        return await self._gate.run(
            actor,
            Permission.ALERT_WRITE,
            "alert.resolve",
            [alert_id],
            lambda: alerts.resolve(alert_id, actor.user),
        )

    def active_alerts(
        self,
        actor: Actor,
        device_id: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> List[AlertView]:
        self._require(actor, Permission.ALERT_READ)
        return self._orchestrator.alerts.get_active(device_id=device_id, severity=severity)

    def alert_summary(self, actor: Actor) -> AlertSummary:
        self._require(actor, Permission.ALERT_READ)
        return self._orchestrator.alerts.summary()

    # --------------------------------------------------------
    # Devices / health
    # --------------------------------------------------------

    async def score_fleet(self, actor: Actor, site: Optional[str] = None) -> List[HealthScore]:
        scoring = self._orchestrator.scoring
        return await self._gate.run(
            actor,
            Permission.DEVICE_WRITE,
            "device.score",
            [site or "*"],
            lambda: scoring.score_fleet(site),
        )

    def health_summary(self, actor: Actor, scores: Sequence[HealthScore]) -> FleetHealthSummary:
        self._require(actor, Permission.REPORT_READ)
        return self._orchestrator.scoring.fleet_summary(scores)

    def device_counts(self, actor: Actor) -> Dict[str, int]:
        """Devices per stored status."""
        self._require(actor, Permission.DEVICE_READ)
        with self._orchestrator.database.session_scope() as session:
            return DeviceRepository(session).count_by_status()

    async def delete_device(
        self,
        actor: Actor,
        device_id: str,
        cascade: bool = False,
        reassign_to: Optional[str] = None,
    ) -> None:
        """
        Delete a device. Without cascade or reassignment a device still
        referenced by actions or alerts is refused.
        """
        database = self._orchestrator.database
        reads = self._orchestrator.device_reads

        def _delete() -> None:
            with database.session_scope() as session:
                DeviceRepository(session).delete(device_id, cascade_actions=cascade, reassign_to=reassign_to)
            reads.invalidate_device(device_id)

        await self._gate.run(
            actor,
            Permission.DEVICE_WRITE,
            "device.delete",
            [device_id],
            _delete,
            details={"cascade": cascade, "reassign_to": reassign_to},
        )

    # --------------------------------------------------------
    # Transport
    # --------------------------------------------------------

    async def clear_allow_list(self, actor: Actor) -> List[str]:
        """Remove every allow-list entry this system added."""
        negotiator = self._orchestrator.negotiator
        return await self._gate.run(
            actor,
            Permission.SYSTEM_ADMIN,
            "transport.clear_allow_list",
            negotiator.allow_list.programmatic_entries(),
            negotiator.clear_programmatic_entries,
        )
