"""
Execution Engine - Action Execution Service.

============================================================
PURPOSE
============================================================
Pulls due Pending actions from the store and runs them on
their devices under a global concurrency bound.

============================================================
DESIGN PRINCIPLES
============================================================
- ATOMIC: a row is ours only after the conditional claim UPDATE
- BOUNDED: at most throttle_limit remote operations in flight
- SERIALIZED: non-reentrant actions on one device run as a lane,
  strictly one after another
- IDEMPOTENT RETRIES: only transient failures, bounded, with
  exponential backoff
- ISOLATED: one device's failure never aborts the round;
  only a fatal error halts the engine

============================================================
DISPATCH WORKFLOW
============================================================
1. Select due Pending rows (priority asc, created_at, id)
2. Group non-reentrant rows into per-device lanes; skip devices
   whose lane from an earlier round is still running
3. For each row: claim -> lease channel -> execute -> finish
4. On failure, classify and react:
   - Transient (exhausted) / Device: Failed, device Offline,
     one deduplicated DeviceOffline alert
   - Configuration: Failed, ActionFailed alert
   - Fatal: Failed, Critical alert, engine halted
5. On success, device Online, DeviceOffline auto-resolved

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set

from core.clock import ClockProtocol, SystemClock
from core.config import ConfigProvider, FleetConfig
from core.exceptions import (
    ClassifiedError,
    ConfigurationError,
    EngineHaltedError,
    ErrorCategory,
    InvalidTransitionError,
    OperationCancelledError,
    classify_error,
    describe_error,
)
from cache_layer.read_through import DeviceReadThrough
from monitoring.alerts.manager import AlertLifecycleManager
from monitoring.models import AlertType
from storage.database import Database
from storage.models import Action, ActionStatus, AlertSeverity, DeviceStatus
from storage.repositories import ActionRepository, DeviceRepository
from transport.device_transport import CancellationToken
from transport.session_pool import SessionPool

from .state_machine import TransitionGuard
from .types import (
    ActionPayload,
    ActionResult,
    ActionStatusView,
    ActionTypeRegistry,
    DispatchReport,
)


logger = logging.getLogger(__name__)


CANCELLED_WHILE_RUNNING = "cancelled while running"
SHUTDOWN_REASON = "engine shutdown"

OUTCOME_SKIPPED = "Skipped"
OUTCOME_LOST = "Lost"
OUTCOME_ERROR = "Error"


@dataclass
class _DueAction:
    """Detached copy of a selected row."""

    action_id: int
    device_id: Optional[str]
    action_type: str
    priority: int
    payload: Optional[Dict[str, Any]]

    @classmethod
    def from_model(cls, action: Action) -> "_DueAction":
        return cls(
            action_id=action.id,
            device_id=action.device_id,
            action_type=action.action_type,
            priority=action.priority,
            payload=dict(action.payload) if action.payload else None,
        )


# ============================================================
# ACTION EXECUTION ENGINE
# ============================================================

class ActionExecutionEngine:
    """
    Action queue executor.

    Usage:
        engine = ActionExecutionEngine(database, pool, alert_manager)
        ids = engine.enqueue(["web-01", "web-02"], "RestartService",
                             {"service_name": "spooler"}, priority=2)
        report = await engine.dispatch_pending()
    """

    def __init__(
        self,
        database: Database,
        session_pool: SessionPool,
        alert_manager: AlertLifecycleManager,
        clock: Optional[ClockProtocol] = None,
        config_provider: Optional[ConfigProvider] = None,
        registry: Optional[ActionTypeRegistry] = None,
        device_reads: Optional[DeviceReadThrough] = None,
    ):
        self._database = database
        self._pool = session_pool
        self._alerts = alert_manager
        self._clock = clock or SystemClock()
        self._config_provider = config_provider or FleetConfig
        self._registry = registry or ActionTypeRegistry(
            lambda: self._config_provider().execution
        )
        self._device_reads = device_reads

        # Devices whose non-reentrant lane is running
        self._busy_devices: Set[str] = set()
        # action_id -> token of the worker running it
        self._tokens: Dict[int, CancellationToken] = {}

        self._halted = False
        self._halt_reason: Optional[str] = None

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()

        self._stats = {
            "rounds": 0,
            "claimed": 0,
            "completed": 0,
            "failed": 0,
            "retries": 0,
            "lost_claims": 0,
        }

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def registry(self) -> ActionTypeRegistry:
        return self._registry

    @property
    def is_halted(self) -> bool:
        return self._halted

    @property
    def halt_reason(self) -> Optional[str]:
        return self._halt_reason

    @property
    def is_running(self) -> bool:
        return self._running

    def in_flight(self) -> List[int]:
        """Ids of actions currently owned by a worker."""
        return sorted(self._tokens)

    def stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "in_flight": len(self._tokens),
            "busy_devices": len(self._busy_devices),
            "halted": self._halted,
        }

    # --------------------------------------------------------
    # QUEUE
    # --------------------------------------------------------

    def enqueue(
        self,
        device_ids: Sequence[Optional[str]],
        action_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 5,
        scheduled_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> List[int]:
        """
        Queue one Pending action per device.

        A None device id queues a broadcast row, which fails at
        dispatch as a configuration error.

        Returns:
            The new action ids, in device_ids order

        Raises:
            ConfigurationError: Empty device list, bad priority,
                invalid payload or unknown device
        """
        if not device_ids:
            raise ConfigurationError("enqueue requires at least one device id", config_key="device_ids")
        if not isinstance(priority, int) or not 1 <= priority <= 10:
            raise ConfigurationError(
                "priority must be an integer from 1 (most urgent) to 10",
                config_key="priority",
                actual_value=priority,
            )
        stored = self._registry.parse(action_type, payload).to_dict()
        now = self._clock.now()

        with self._database.session_scope() as session:
            devices = DeviceRepository(session)
            unknown = sorted({d for d in device_ids if d is not None and devices.get(d) is None})
            if unknown:
                raise ConfigurationError(
                    f"Unknown devices: {', '.join(unknown)}",
                    config_key="device_ids",
                    actual_value=unknown,
                )
            actions = ActionRepository(session)
            ids = [
                actions.create(
                    device_id=device_id,
                    action_type=action_type,
                    payload=stored,
                    priority=priority,
                    scheduled_at=scheduled_at,
                    created_by=created_by,
                    created_at=now,
                ).id
                for device_id in device_ids
            ]

        logger.info(
            f"Enqueued {action_type} x{len(ids)} (priority {priority}"
            + (f", by {created_by}" if created_by else "")
            + ")"
        )
        return ids

    def get_status(self, action_id: int) -> ActionStatusView:
        """
        Raises:
            RecordNotFoundError: If the action does not exist
        """
        with self._database.session_scope() as session:
            return ActionStatusView.from_model(ActionRepository(session).get_or_raise(action_id))

    def list_recent(self, limit: int = 50) -> List[ActionStatusView]:
        """Most recent actions first."""
        with self._database.session_scope() as session:
            return [ActionStatusView.from_model(a) for a in ActionRepository(session).list_recent(limit)]

    def archive_terminal(self, older_than: datetime) -> int:
        """Move terminal actions completed before a cutoff into the archive."""
        with self._database.session_scope() as session:
            return ActionRepository(session).archive_terminal(older_than)

    def cancel(self, action_id: int, by: Optional[str] = None) -> ActionStatusView:
        """
        Cancel an action.

        Pending actions become Cancelled. Running actions are flagged;
        the worker observes the flag at the transport boundary and the
        action ends Failed ("cancelled while running").

        Raises:
            RecordNotFoundError: If the action does not exist
            InvalidTransitionError: If the action is already terminal
        """
        now = self._clock.now()
        with self._database.session_scope() as session:
            actions = ActionRepository(session)
            action = actions.get_or_raise(action_id)
            status = action.action_status

            if status is ActionStatus.PENDING:
                result = ActionResult(
                    success=False,
                    explanation=f"Cancelled by {by or 'operator'} before dispatch",
                )
                if actions.cancel_pending(action_id, now, result.to_dict()):
                    logger.info(f"Action {action_id} cancelled by {by or 'operator'}")
                    session.expire(action)
                    return ActionStatusView.from_model(action)
                # Claimed between our read and the update
                session.expire(action)
                status = action.action_status

            if status is ActionStatus.RUNNING:
                actions.request_cancel(action_id)
                token = self._tokens.get(action_id)
                if token is not None:
                    token.cancel(CANCELLED_WHILE_RUNNING)
                logger.info(f"Cancellation requested for running action {action_id} by {by or 'operator'}")
                session.expire(action)
                return ActionStatusView.from_model(action)

            TransitionGuard.require(action_id, status, ActionStatus.CANCELLED)
            return ActionStatusView.from_model(action)

    # --------------------------------------------------------
    # DISPATCH
    # --------------------------------------------------------

    async def dispatch_pending(self, throttle_limit: Optional[int] = None) -> DispatchReport:
        """
        Run one dispatch round and wait for it to finish.

        Raises:
            EngineHaltedError: If a fatal error halted the engine
            ConfigurationError: If throttle_limit is out of range
        """
        if self._halted:
            raise EngineHaltedError(f"Execution engine is halted: {self._halt_reason}")

        config = self._config_provider().execution
        limit = throttle_limit if throttle_limit is not None else config.throttle_limit
        if not 1 <= limit <= config.max_throttle_limit:
            raise ConfigurationError(
                f"throttle_limit must be between 1 and {config.max_throttle_limit}",
                config_key="throttle_limit",
                actual_value=limit,
            )

        report = DispatchReport(throttle_limit=limit)
        self._stats["rounds"] += 1

        with self._database.session_scope() as session:
            due = [
                _DueAction.from_model(a)
                for a in ActionRepository(session).select_due(self._clock.now(), config.batch_size)
            ]
        report.selected = len(due)
        if not due:
            return report

        semaphore = asyncio.Semaphore(limit)
        units = []
        lanes: Dict[str, List[_DueAction]] = {}
        for item in due:
            if item.device_id is None or self._registry.is_reentrant(item.action_type):
                units.append(self._run_single(item, semaphore, report))
            else:
                lanes.setdefault(item.device_id, []).append(item)

        for device_id, lane in lanes.items():
            if device_id in self._busy_devices:
                logger.debug(f"Device {device_id} lane still running; {len(lane)} actions wait")
                report.skipped_busy += len(lane)
                for item in lane:
                    report.outcomes[item.action_id] = OUTCOME_SKIPPED
                continue
            self._busy_devices.add(device_id)
            units.append(self._run_lane(device_id, lane, semaphore, report))

        await asyncio.gather(*units)

        report.halted = self._halted
        logger.info(
            f"Dispatch round: selected={report.selected} claimed={report.claimed} "
            f"completed={report.completed} failed={report.failed} "
            f"skipped_busy={report.skipped_busy} lost={report.lost_claims}"
            + (" HALTED" if report.halted else "")
        )
        return report

    async def _run_single(self, item: _DueAction, semaphore: asyncio.Semaphore, report: DispatchReport) -> None:
        async with semaphore:
            await self._run_unit(item, report)

    async def _run_lane(
        self,
        device_id: str,
        lane: List[_DueAction],
        semaphore: asyncio.Semaphore,
        report: DispatchReport,
    ) -> None:
        try:
            for item in lane:
                async with semaphore:
                    await self._run_unit(item, report)
        finally:
            self._busy_devices.discard(device_id)

    async def _run_unit(self, item: _DueAction, report: DispatchReport) -> None:
        if self._halted:
            report.outcomes[item.action_id] = OUTCOME_SKIPPED
            return

        try:
            outcome = await self._process(item)
        except Exception as e:
            outcome = await self._on_processing_error(item, e)

        report.outcomes[item.action_id] = outcome
        if outcome == OUTCOME_LOST:
            report.lost_claims += 1
            self._stats["lost_claims"] += 1
            return
        if outcome in (ActionStatus.COMPLETED.value, ActionStatus.FAILED.value, OUTCOME_ERROR):
            report.claimed += 1
            self._stats["claimed"] += 1
        if outcome == ActionStatus.COMPLETED.value:
            report.completed += 1
            self._stats["completed"] += 1
        elif outcome == ActionStatus.FAILED.value:
            report.failed += 1
            self._stats["failed"] += 1

    async def _on_processing_error(self, item: _DueAction, error: Exception) -> str:
        """Errors outside the remote operation itself (store, alerting)."""
        category = classify_error(error)
        logger.error(f"Action {item.action_id} processing error ({category.value}): {error}")
        if category is ErrorCategory.FATAL:
            await self._halt(f"Action {item.action_id}: {error}", item)
        return OUTCOME_ERROR

    async def _process(self, item: _DueAction) -> str:
        with self._database.session_scope() as session:
            claimed = ActionRepository(session).claim(item.action_id, self._clock.now())
        if not claimed:
            logger.debug(f"Action {item.action_id} claimed elsewhere")
            return OUTCOME_LOST

        token = CancellationToken()
        self._tokens[item.action_id] = token
        try:
            return await self._execute(item, token)
        finally:
            self._tokens.pop(item.action_id, None)

    # --------------------------------------------------------
    # EXECUTION
    # --------------------------------------------------------

    def _resolve_target(self, item: _DueAction) -> str:
        if item.device_id is None:
            raise ConfigurationError(
                f"{item.action_type} action {item.action_id} has no target device",
                config_key="device_id",
            )
        with self._database.session_scope() as session:
            device = DeviceRepository(session).get(item.device_id)
            if device is None:
                raise ConfigurationError(
                    f"Device {item.device_id} no longer exists",
                    config_key="device_id",
                    actual_value=item.device_id,
                )
            return device.hostname or device.id

    async def _execute(self, item: _DueAction, token: CancellationToken) -> str:
        attempted = f"{item.action_type} on {item.device_id or 'broadcast'}"
        try:
            target = self._resolve_target(item)
            payload = self._registry.parse(item.action_type, item.payload)
        except ConfigurationError as e:
            return await self._fail(item, None, describe_error(e, attempted), attempts=0)

        attempted = f"{item.action_type} on {target}"
        config = self._config_provider().execution
        attempts = 0

        while True:
            attempts += 1
            self._record_attempt(item.action_id, attempts, token)
            try:
                output = await self._attempt(target, item.action_type, payload, token)
            except OperationCancelledError:
                return self._finish_cancelled(item, attempted, token, attempts)
            except Exception as e:
                classified = describe_error(e, attempted)
                if classified.category.is_retryable and attempts <= config.max_retries:
                    delay = config.backoff_delay(attempts)
                    self._stats["retries"] += 1
                    logger.warning(
                        f"Action {item.action_id}: {classified.explanation} "
                        f"(attempt {attempts}/{config.max_retries + 1}); retrying in {delay:g}s"
                    )
                    try:
                        await self._backoff(token, delay)
                    except OperationCancelledError:
                        return self._finish_cancelled(item, attempted, token, attempts)
                    continue
                return await self._fail(item, target, classified, attempts)

            return await self._succeed(item, target, attempted, output, attempts)

    def _record_attempt(self, action_id: int, attempts: int, token: CancellationToken) -> None:
        with self._database.session_scope() as session:
            actions = ActionRepository(session)
            actions.record_attempt(action_id, attempts)
            if actions.is_cancel_requested(action_id):
                token.cancel(CANCELLED_WHILE_RUNNING)

    async def _attempt(
        self,
        target: str,
        action_type: str,
        payload: ActionPayload,
        token: CancellationToken,
    ) -> Dict[str, Any]:
        token.raise_if_cancelled()
        timeout = self._config_provider().execution.operation_timeout_seconds
        async with self._pool.lease(target) as channel:
            return await channel.execute(
                action_type, payload.to_dict(), timeout=timeout, cancel_token=token
            )

    @staticmethod
    async def _backoff(token: CancellationToken, delay: float) -> None:
        """
        Sleep between retries, waking early on cancellation.

        Waits on the event loop (wall time), not the injected clock;
        tests keep retry delays near zero through config.
        """
        waiter = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({waiter}, timeout=delay)
        finally:
            if not waiter.done():
                waiter.cancel()
        token.raise_if_cancelled()

    # --------------------------------------------------------
    # OUTCOMES
    # --------------------------------------------------------

    def _finish(self, session, item: _DueAction, status: ActionStatus, result: ActionResult) -> bool:
        actions = ActionRepository(session)
        if actions.finish(item.action_id, status, result.to_dict(), self._clock.now(), result.attempts):
            return True
        action = actions.get(item.action_id)
        current = action.action_status if action is not None else None
        error = InvalidTransitionError("action", item.action_id, current, status)
        logger.error(f"{error.message}; result discarded")
        return False

    async def _succeed(
        self,
        item: _DueAction,
        target: str,
        attempted: str,
        output: Any,
        attempts: int,
    ) -> str:
        result = ActionResult(
            success=True,
            explanation=f"{attempted} completed",
            output=output if isinstance(output, dict) else {"output": output},
            attempts=attempts,
        )
        now = self._clock.now()
        with self._database.session_scope() as session:
            if not self._finish(session, item, ActionStatus.COMPLETED, result):
                return OUTCOME_ERROR
            devices = DeviceRepository(session)
            device = devices.get(item.device_id)
            if device is not None:
                status = device.device_status if device.device_status.is_managed_out else DeviceStatus.ONLINE
                devices.update_status(item.device_id, status, seen_at=now)

        self._invalidate_device(item.device_id)
        await self._alerts.auto_resolve(
            item.device_id, AlertType.DEVICE_OFFLINE, reason=f"action {item.action_id} succeeded"
        )
        logger.info(f"Action {item.action_id} completed: {attempted} (attempts={attempts})")
        return ActionStatus.COMPLETED.value

    def _finish_cancelled(
        self,
        item: _DueAction,
        attempted: str,
        token: CancellationToken,
        attempts: int,
    ) -> str:
        explanation = f"{attempted} {CANCELLED_WHILE_RUNNING}"
        if token.reason and token.reason != CANCELLED_WHILE_RUNNING:
            explanation += f" ({token.reason})"
        result = ActionResult(
            success=False,
            explanation=explanation,
            error_type=OperationCancelledError.__name__,
            attempts=attempts,
        )
        with self._database.session_scope() as session:
            if not self._finish(session, item, ActionStatus.FAILED, result):
                return OUTCOME_ERROR
        logger.info(f"Action {item.action_id}: {explanation}")
        return ActionStatus.FAILED.value

    async def _fail(
        self,
        item: _DueAction,
        target: Optional[str],
        classified: ClassifiedError,
        attempts: int,
    ) -> str:
        category = classified.category
        result = ActionResult(
            success=False,
            explanation=classified.explanation,
            error_category=category.value,
            error_type=classified.error_type,
            attempts=attempts,
        )
        mark_offline = category.marks_device_offline and item.device_id is not None

        with self._database.session_scope() as session:
            if not self._finish(session, item, ActionStatus.FAILED, result):
                return OUTCOME_ERROR
            if mark_offline:
                devices = DeviceRepository(session)
                device = devices.get(item.device_id)
                if device is not None and not device.device_status.is_managed_out:
                    devices.update_status(
                        item.device_id, DeviceStatus.OFFLINE, changed_at=self._clock.now()
                    )

        logger.warning(f"Action {item.action_id} failed: {classified.explanation}")
        label = target or item.device_id

        if mark_offline:
            await self._pool.invalidate(target or item.device_id)
            self._invalidate_device(item.device_id)
            await self._raise_alert(
                item,
                AlertType.DEVICE_OFFLINE,
                AlertSeverity.HIGH,
                f"{label} offline",
                classified.explanation,
            )
        elif category is ErrorCategory.FATAL:
            await self._halt(classified.explanation, item)
        elif item.device_id is not None:
            await self._raise_alert(
                item,
                AlertType.ACTION_FAILED,
                AlertSeverity.MEDIUM,
                f"{item.action_type} failed on {label}",
                classified.explanation,
            )
        return ActionStatus.FAILED.value

    async def _raise_alert(
        self,
        item: _DueAction,
        alert_type: str,
        severity: AlertSeverity,
        title: str,
        message: str,
    ) -> None:
        try:
            await self._alerts.raise_alert(
                item.device_id, alert_type, severity, title, message=message, action_id=item.action_id
            )
        except ConfigurationError as e:
            logger.error(f"Could not raise {alert_type} for action {item.action_id}: {e.message}")

    def _invalidate_device(self, device_id: Optional[str]) -> None:
        if self._device_reads is not None and device_id is not None:
            self._device_reads.invalidate_device(device_id)

    # --------------------------------------------------------
    # HALT
    # --------------------------------------------------------

    async def _halt(self, reason: str, item: Optional[_DueAction] = None) -> None:
        if self._halted:
            return
        self._halted = True
        self._halt_reason = reason
        self._wake.set()
        logger.critical(f"Execution engine HALTED: {reason}")

        if item is not None and item.device_id is not None:
            try:
                await self._alerts.raise_alert(
                    item.device_id,
                    AlertType.ENGINE_HALTED,
                    AlertSeverity.CRITICAL,
                    "Execution engine halted",
                    message=reason,
                    action_id=item.action_id,
                )
            except Exception as e:
                logger.critical(f"Could not raise EngineHalted alert: {e}")

    def resume(self, by: Optional[str] = None) -> None:
        """Clear a halt after the operator fixed its cause."""
        if not self._halted:
            return
        logger.warning(f"Execution engine resumed by {by or 'operator'} (was: {self._halt_reason})")
        self._halted = False
        self._halt_reason = None

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    def recover_orphans(self) -> int:
        """
        Fail Running rows left behind by a previous process.

        Returns:
            Number of rows failed
        """
        result = ActionResult(
            success=False,
            explanation="Interrupted: the engine stopped while the action was running",
            error_category=ErrorCategory.TRANSIENT.value,
        )
        with self._database.session_scope() as session:
            count = ActionRepository(session).fail_orphaned_running(
                self._clock.now(), result.to_dict(), exclude_ids=self.in_flight()
            )
        if count:
            logger.warning(f"Failed {count} orphaned Running actions")
        return count

    async def start(self) -> None:
        """Recover orphans and start the background dispatch loop."""
        if self._running:
            return
        logger.info("Starting Action Execution Engine...")
        self.recover_orphans()
        self._running = True
        self._wake = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run())
        logger.info("Action Execution Engine started")

    async def stop(self) -> None:
        """Stop the loop after the current round finishes."""
        if not self._running:
            return
        logger.info("Stopping Action Execution Engine...")
        self._running = False
        self._wake.set()
        if self._loop_task:
            await self._loop_task
            self._loop_task = None
        logger.info("Action Execution Engine stopped")

    async def shutdown(self) -> None:
        """Abort in-flight work, stop the loop and close sessions."""
        for token in list(self._tokens.values()):
            token.cancel(SHUTDOWN_REASON)
        await self.stop()
        await self._pool.close_all()

    async def _run(self) -> None:
        """Background dispatch loop."""
        while self._running:
            try:
                await self.dispatch_pending()
            except EngineHaltedError as e:
                logger.critical(f"Dispatch loop stopping: {e.message}")
                self._running = False
                break
            except Exception as e:
                logger.error(f"Dispatch round error: {e}")

            interval = self._config_provider().execution.dispatch_interval_seconds
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
