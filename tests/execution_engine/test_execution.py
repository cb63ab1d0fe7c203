"""
Tests for the Action Execution Engine.

============================================================
PURPOSE
============================================================
Verifies dispatch semantics against the mock transport:
- Claim, run, finish and per-category failure handling
- Transient retries bounded by max_retries
- Per-device lanes and the global throttle
- Cancellation, fatal halt and resume, orphan recovery

============================================================
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import exc as sa_exc

from core.exceptions import ConfigurationError, EngineHaltedError, InvalidTransitionError
from execution_engine import (
    CANCELLED_WHILE_RUNNING,
    ActionTypeRegistry,
    GenericPayload,
    RestartServicePayload,
    TransitionGuard,
)
from monitoring.models import AlertType
from storage.models import ActionStatus, AlertSeverity, DeviceStatus
from storage.repositories import ActionRepository, DeviceRepository


SPOOLER = {"service_name": "spooler"}


def device_status(database, device_id):
    with database.session_scope() as session:
        return DeviceRepository(session).get(device_id).device_status


# ============================================================
# STATE MACHINE TESTS
# ============================================================

class TestTransitionGuard:
    """Tests for the action state machine."""

    @pytest.mark.parametrize("from_state, to_state", [
        (ActionStatus.PENDING, ActionStatus.RUNNING),
        (ActionStatus.PENDING, ActionStatus.CANCELLED),
        (ActionStatus.RUNNING, ActionStatus.COMPLETED),
        (ActionStatus.RUNNING, ActionStatus.FAILED),
    ])
    def test_valid_transitions(self, from_state, to_state):
        """Test that the lifecycle edges are allowed."""
        allowed, _ = TransitionGuard.can_transition(from_state, to_state)
        assert allowed

    @pytest.mark.parametrize("from_state", [
        ActionStatus.COMPLETED,
        ActionStatus.FAILED,
        ActionStatus.CANCELLED,
    ])
    def test_terminal_states_are_final(self, from_state):
        """Test that nothing leaves a terminal state."""
        allowed, reason = TransitionGuard.can_transition(from_state, ActionStatus.RUNNING)

        assert not allowed
        assert "terminal" in reason

    def test_require_raises(self):
        """Test that require() raises InvalidTransitionError."""
        with pytest.raises(InvalidTransitionError):
            TransitionGuard.require(1, ActionStatus.PENDING, ActionStatus.COMPLETED)


class TestActionTypeRegistry:
    """Tests for payload parsing."""

    def test_known_payload(self):
        """Test that a known type parses into its variant."""
        payload = ActionTypeRegistry().parse("RestartService", SPOOLER)

        assert isinstance(payload, RestartServicePayload)
        assert payload.to_dict() == {"service_name": "spooler", "force": False}

    def test_missing_required_field(self):
        """Test that a required field must be present."""
        with pytest.raises(ConfigurationError):
            ActionTypeRegistry().parse("RestartService", {})

    def test_unknown_field(self):
        """Test that unknown fields are rejected for known types."""
        with pytest.raises(ConfigurationError):
            ActionTypeRegistry().parse("Reboot", {"when": "now"})

    def test_unknown_type_is_generic(self):
        """Test that unmodelled types pass their payload through."""
        payload = ActionTypeRegistry().parse("RotateLogs", {"keep": 3})

        assert isinstance(payload, GenericPayload)
        assert payload.to_dict() == {"keep": 3}

    def test_reentrancy_from_config(self, fleet_config):
        """Test that the reentrant list is read from configuration."""
        registry = ActionTypeRegistry(lambda: fleet_config.execution)

        assert registry.is_reentrant("HealthCheck")
        assert not registry.is_reentrant("Reboot")

        fleet_config.execution.reentrant_action_types.append("Reboot")
        assert registry.is_reentrant("Reboot")


# ============================================================
# ENQUEUE TESTS
# ============================================================

class TestEnqueue:
    """Tests for enqueue validation."""

    def test_one_row_per_device(self, execution_engine, register_device):
        """Test that one Pending action is created per device, in order."""
        register_device("web-01")
        register_device("web-02")

        ids = execution_engine.enqueue(["web-01", "web-02"], "RestartService", SPOOLER, priority=2, created_by="alice")

        views = [execution_engine.get_status(i) for i in ids]
        assert [v.device_id for v in views] == ["web-01", "web-02"]
        assert all(v.status is ActionStatus.PENDING for v in views)
        assert views[0].priority == 2
        assert views[0].created_by == "alice"

    @pytest.mark.parametrize("device_ids, priority, payload", [
        ([], 5, SPOOLER),
        (["web-01"], 0, SPOOLER),
        (["web-01"], 11, SPOOLER),
        (["web-01"], 5, {}),
        (["ghost"], 5, SPOOLER),
    ])
    def test_rejects_invalid_requests(self, execution_engine, register_device, device_ids, priority, payload):
        """Test that bad device lists, priorities and payloads are configuration errors."""
        register_device("web-01")

        with pytest.raises(ConfigurationError):
            execution_engine.enqueue(device_ids, "RestartService", payload, priority=priority)


# ============================================================
# DISPATCH OUTCOME TESTS
# ============================================================

class TestDispatchOutcomes:
    """Tests for success and the failure categories."""

    @pytest.mark.asyncio
    async def test_success(self, execution_engine, transport, database, clock, register_device):
        """Test that a successful action completes and marks the device Online."""
        register_device("web-01", status=DeviceStatus.UNKNOWN)
        transport.script("web-01", {"output": "restarted"})
        [action_id] = execution_engine.enqueue(["web-01"], "RestartService", SPOOLER)

        report = await execution_engine.dispatch_pending()

        view = execution_engine.get_status(action_id)
        assert report.completed == 1
        assert view.status is ActionStatus.COMPLETED
        assert view.attempts == 1
        assert view.result.success
        assert view.result.output == {"output": "restarted"}
        assert view.started_at is not None and view.completed_at is not None
        assert device_status(database, "web-01") is DeviceStatus.ONLINE
        with database.session_scope() as session:
            assert DeviceRepository(session).get("web-01").last_seen == clock.now()

    @pytest.mark.asyncio
    async def test_transient_retries_exhausted(self, execution_engine, transport, alert_manager, database, register_device):
        """Test that transient failures retry max_retries times, then take the device offline."""
        register_device("web-01")
        transport.script("web-01", *[TimeoutError("blip") for _ in range(5)])
        [action_id] = execution_engine.enqueue(["web-01"], "RestartService", SPOOLER)

        await execution_engine.dispatch_pending()

        view = execution_engine.get_status(action_id)
        assert view.status is ActionStatus.FAILED
        assert view.attempts == 4
        assert view.result.error_category == "Transient"
        assert len(transport.executions_for("web-01")) == 4
        assert device_status(database, "web-01") is DeviceStatus.OFFLINE

        offline = alert_manager.get_open("web-01", AlertType.DEVICE_OFFLINE)
        assert offline.severity is AlertSeverity.HIGH
        assert offline.title == "web-01 offline"
        assert offline.action_id == action_id
        assert len(alert_manager.get_active("web-01")) == 1

    @pytest.mark.asyncio
    async def test_transient_then_success(self, execution_engine, transport, register_device):
        """Test that a blip followed by success completes on the second attempt."""
        register_device("web-01")
        transport.script("web-01", ConnectionResetError("reset"), {"output": "ok"})
        [action_id] = execution_engine.enqueue(["web-01"], "RestartService", SPOOLER)

        await execution_engine.dispatch_pending()

        view = execution_engine.get_status(action_id)
        assert view.status is ActionStatus.COMPLETED
        assert view.attempts == 2

    @pytest.mark.asyncio
    async def test_repeated_offline_deduplicated(self, execution_engine, transport, alert_manager, register_device):
        """Test that a second device failure folds into the open DeviceOffline alert."""
        register_device("web-01")
        transport.script("web-01", ConnectionRefusedError("refused"), ConnectionRefusedError("refused"))
        execution_engine.enqueue(["web-01"], "RestartService", SPOOLER)
        await execution_engine.dispatch_pending()
        execution_engine.enqueue(["web-01"], "RestartService", SPOOLER)
        await execution_engine.dispatch_pending()

        alerts = alert_manager.get_active("web-01")
        assert len(alerts) == 1
        assert alerts[0].occurrence_count == 2

    @pytest.mark.asyncio
    async def test_device_error_not_retried(self, execution_engine, transport, session_pool, database, register_device):
        """Test that a device error fails immediately and drops the pooled session."""
        register_device("web-01")
        transport.script("web-01", ConnectionRefusedError("refused"))
        [action_id] = execution_engine.enqueue(["web-01"], "RestartService", SPOOLER)

        await execution_engine.dispatch_pending()

        view = execution_engine.get_status(action_id)
        assert view.attempts == 1
        assert view.result.error_category == "Device"
        assert "RestartService on web-01 failed (Device): refused" == view.result.explanation
        assert device_status(database, "web-01") is DeviceStatus.OFFLINE
        assert session_pool.stats()["active"] == 0

    @pytest.mark.asyncio
    async def test_configuration_error(self, execution_engine, transport, alert_manager, database, register_device):
        """Test that a configuration failure raises ActionFailed and leaves the device status alone."""
        register_device("web-01")
        transport.script("web-01", ValueError("unknown service"))
        [action_id] = execution_engine.enqueue(["web-01"], "RestartService", SPOOLER)

        await execution_engine.dispatch_pending()

        view = execution_engine.get_status(action_id)
        assert view.status is ActionStatus.FAILED
        assert view.attempts == 1
        assert view.result.error_category == "Configuration"
        assert device_status(database, "web-01") is DeviceStatus.ONLINE

        failed = alert_manager.get_open("web-01", AlertType.ACTION_FAILED)
        assert failed.severity is AlertSeverity.MEDIUM
        assert failed.title == "RestartService failed on web-01"

    @pytest.mark.asyncio
    async def test_broadcast_fails_without_alert(self, execution_engine, transport, alert_manager):
        """Test that an action with no target fails as a configuration error."""
        [action_id] = execution_engine.enqueue([None], "HealthCheck")

        await execution_engine.dispatch_pending()

        view = execution_engine.get_status(action_id)
        assert view.status is ActionStatus.FAILED
        assert view.attempts == 0
        assert view.result.error_category == "Configuration"
        assert transport.executions == []
        assert alert_manager.summary().total == 0

    @pytest.mark.asyncio
    async def test_success_resolves_offline_alert(self, execution_engine, alert_manager, database, register_device):
        """Test that a device coming back auto-resolves its DeviceOffline alert."""
        register_device("web-01", status=DeviceStatus.OFFLINE)
        alert_id = await alert_manager.raise_alert(
            "web-01", AlertType.DEVICE_OFFLINE, AlertSeverity.HIGH, "web-01 offline"
        )
        execution_engine.enqueue(["web-01"], "HealthCheck")

        await execution_engine.dispatch_pending()

        resolved = alert_manager.get(alert_id)
        assert resolved.auto_resolved
        assert resolved.resolved_by == "system"
        assert device_status(database, "web-01") is DeviceStatus.ONLINE

    @pytest.mark.asyncio
    async def test_managed_out_device_keeps_status(self, execution_engine, transport, database, register_device):
        """Test that Maintenance devices are neither taken offline nor brought online."""
        register_device("web-01", status=DeviceStatus.MAINTENANCE)
        register_device("web-02", status=DeviceStatus.DECOMMISSIONED)
        transport.script("web-01", ConnectionRefusedError("refused"))
        execution_engine.enqueue(["web-01", "web-02"], "HealthCheck")

        await execution_engine.dispatch_pending()

        assert device_status(database, "web-01") is DeviceStatus.MAINTENANCE
        assert device_status(database, "web-02") is DeviceStatus.DECOMMISSIONED

    @pytest.mark.asyncio
    async def test_future_schedule_not_dispatched(self, execution_engine, clock, register_device):
        """Test that actions scheduled later stay Pending until due."""
        register_device("web-01")
        [action_id] = execution_engine.enqueue(
            ["web-01"], "HealthCheck", scheduled_at=clock.now() + timedelta(minutes=5)
        )

        report = await execution_engine.dispatch_pending()
        assert report.selected == 0

        clock.advance(minutes=5)
        await execution_engine.dispatch_pending()
        assert execution_engine.get_status(action_id).status is ActionStatus.COMPLETED


# ============================================================
# CONCURRENCY TESTS
# ============================================================

class TestDispatchConcurrency:
    """Tests for lanes and the throttle."""

    @pytest.mark.asyncio
    async def test_non_reentrant_actions_serialized(self, execution_engine, transport, register_device):
        """Test that RestartService actions on one device run one at a time in queue order."""
        register_device("web-01")
        transport.set_latency(0.05)
        for service in ("spooler", "w32time", "bits"):
            execution_engine.enqueue(["web-01"], "RestartService", {"service_name": service})

        await execution_engine.dispatch_pending(throttle_limit=50)

        runs = transport.executions_for("web-01")
        assert [r.payload["service_name"] for r in runs] == ["spooler", "w32time", "bits"]
        for earlier, later in zip(runs, runs[1:]):
            assert earlier.finished <= later.started

    @pytest.mark.asyncio
    async def test_reentrant_actions_overlap(self, execution_engine, transport, register_device):
        """Test that reentrant actions on one device may run together."""
        register_device("web-01")
        transport.set_latency(0.05)
        execution_engine.enqueue(["web-01", "web-01"], "HealthCheck")

        await execution_engine.dispatch_pending()

        first, second = transport.executions_for("web-01")
        assert second.started < first.finished

    @pytest.mark.asyncio
    async def test_priority_order_under_throttle(self, execution_engine, transport, register_device):
        """Test that lower priority numbers run first."""
        for device_id in ("web-a", "web-b", "web-c"):
            register_device(device_id)
        execution_engine.enqueue(["web-a"], "RestartService", SPOOLER, priority=9)
        execution_engine.enqueue(["web-b"], "RestartService", SPOOLER, priority=1)
        execution_engine.enqueue(["web-c"], "RestartService", SPOOLER, priority=5)

        await execution_engine.dispatch_pending(throttle_limit=1)

        assert [r.target for r in transport.executions] == ["web-b", "web-c", "web-a"]

    @pytest.mark.asyncio
    async def test_throttle_bounds_in_flight(self, execution_engine, transport, register_device):
        """Test that no more than throttle_limit operations run at once."""
        ids = [register_device(f"web-{n:02d}") for n in range(6)]
        transport.set_latency(0.03)
        execution_engine.enqueue(ids, "HealthCheck")

        await execution_engine.dispatch_pending(throttle_limit=2)

        events = sorted(
            [(r.started, 1) for r in transport.executions] + [(r.finished, -1) for r in transport.executions],
            key=lambda e: (e[0], e[1]),
        )
        running = peak = 0
        for _, delta in events:
            running += delta
            peak = max(peak, running)
        assert peak <= 2

    @pytest.mark.asyncio
    async def test_throttle_limit_validated(self, execution_engine):
        """Test that an out-of-range throttle limit is rejected."""
        with pytest.raises(ConfigurationError):
            await execution_engine.dispatch_pending(throttle_limit=0)


# ============================================================
# CANCELLATION TESTS
# ============================================================

class TestCancellation:
    """Tests for cancel()."""

    def test_cancel_pending(self, execution_engine, register_device):
        """Test that a Pending action becomes Cancelled."""
        register_device("web-01")
        [action_id] = execution_engine.enqueue(["web-01"], "HealthCheck")

        view = execution_engine.cancel(action_id, by="alice")

        assert view.status is ActionStatus.CANCELLED
        assert "alice" in view.result.explanation

    @pytest.mark.asyncio
    async def test_cancel_terminal_raises(self, execution_engine, register_device):
        """Test that a finished action cannot be cancelled."""
        register_device("web-01")
        [action_id] = execution_engine.enqueue(["web-01"], "HealthCheck")
        await execution_engine.dispatch_pending()

        with pytest.raises(InvalidTransitionError):
            execution_engine.cancel(action_id)

    @pytest.mark.asyncio
    async def test_cancel_running(self, execution_engine, transport, register_device):
        """Test that a running action is aborted and ends Failed."""
        register_device("web-01")
        transport.set_latency(1.0)
        [action_id] = execution_engine.enqueue(["web-01"], "RestartService", SPOOLER)

        dispatch = asyncio.create_task(execution_engine.dispatch_pending())
        while not transport.executions:
            await asyncio.sleep(0.01)

        flagged = execution_engine.cancel(action_id, by="alice")
        await dispatch

        assert flagged.status is ActionStatus.RUNNING
        assert flagged.cancel_requested
        view = execution_engine.get_status(action_id)
        assert view.status is ActionStatus.FAILED
        assert CANCELLED_WHILE_RUNNING in view.result.explanation
        assert transport.executions[0].outcome == "cancelled"


# ============================================================
# HALT / RECOVERY TESTS
# ============================================================

class TestHaltAndRecovery:
    """Tests for the fatal halt, resume and orphan recovery."""

    @pytest.mark.asyncio
    async def test_fatal_error_halts(self, execution_engine, transport, alert_manager, register_device):
        """Test that a fatal error halts dispatch until resumed."""
        register_device("web-01")
        register_device("web-02")
        transport.script("web-01", sa_exc.IntegrityError("INSERT", {}, Exception("corrupt")))
        [fatal_id] = execution_engine.enqueue(["web-01"], "RestartService", SPOOLER, priority=1)
        [waiting_id] = execution_engine.enqueue(["web-02"], "RestartService", SPOOLER, priority=2)

        report = await execution_engine.dispatch_pending(throttle_limit=1)

        assert report.halted
        assert execution_engine.is_halted
        assert execution_engine.get_status(fatal_id).status is ActionStatus.FAILED
        assert execution_engine.get_status(waiting_id).status is ActionStatus.PENDING
        halted = alert_manager.get_open("web-01", AlertType.ENGINE_HALTED)
        assert halted.severity is AlertSeverity.CRITICAL

        with pytest.raises(EngineHaltedError):
            await execution_engine.dispatch_pending()

        execution_engine.resume(by="alice")
        await execution_engine.dispatch_pending()
        assert execution_engine.get_status(waiting_id).status is ActionStatus.COMPLETED

    def test_recover_orphans(self, execution_engine, database, clock, register_device):
        """Test that Running rows from a previous process are failed."""
        register_device("web-01")
        [action_id] = execution_engine.enqueue(["web-01"], "HealthCheck")
        with database.session_scope() as session:
            assert ActionRepository(session).claim(action_id, clock.now())

        assert execution_engine.recover_orphans() == 1

        view = execution_engine.get_status(action_id)
        assert view.status is ActionStatus.FAILED
        assert view.result.explanation.startswith("Interrupted")

    @pytest.mark.asyncio
    async def test_background_loop(self, execution_engine, fleet_config, register_device):
        """Test that start() dispatches in the background and stop() ends the loop."""
        fleet_config.execution.dispatch_interval_seconds = 0.01
        register_device("web-01")
        [action_id] = execution_engine.enqueue(["web-01"], "HealthCheck")

        await execution_engine.start()
        try:
            for _ in range(100):
                if execution_engine.get_status(action_id).status is ActionStatus.COMPLETED:
                    break
                await asyncio.sleep(0.01)
        finally:
            await execution_engine.stop()

        assert execution_engine.get_status(action_id).status is ActionStatus.COMPLETED
        assert not execution_engine.is_running
