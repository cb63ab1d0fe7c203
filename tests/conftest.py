"""
Shared fixtures for the fleet orchestration tests.

Every fixture builds on an in-memory SQLite store, a MockClock
and the scriptable MockDeviceTransport, so no test touches the
network or the wall clock for TTL decisions.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from cache_layer import DeviceReadThrough, TTLCache
from core.clock import MockClock
from core.config import FleetConfig
from execution_engine import ActionExecutionEngine
from monitoring.alerts import AlertLifecycleManager
from scoring_engine import HealthScoringEngine
from storage.database import Database
from storage.models import DeviceStatus
from storage.repositories import DeviceRepository, MetricRepository
from transport import (
    InMemoryAllowListStore,
    InMemorySecretStore,
    PortProber,
    ProbeOutcome,
    SessionPool,
    StaticHostEnvironment,
    TransportNegotiator,
    normalize_target,
)
from transport.mock import MockDeviceTransport


START_TIME = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


# ============================================================
# TEST DOUBLES
# ============================================================

class FakeProber(PortProber):
    """Port prober answering from a table instead of the network."""

    def __init__(self, default: ProbeOutcome = ProbeOutcome.CLOSED):
        super().__init__()
        self._default = default
        self._outcomes: Dict[Tuple[str, int], ProbeOutcome] = {}
        self.calls: List[Tuple[str, int, bool]] = []

    def set(self, host: str, port: int, outcome: ProbeOutcome) -> None:
        self._outcomes[(normalize_target(host), port)] = outcome

    async def probe(self, host: str, port: int, timeout: float, secure: bool = False) -> ProbeOutcome:
        self.calls.append((host, port, secure))
        return self._outcomes.get((normalize_target(host), port), self._default)


# ============================================================
# CONFIGURATION / CLOCK / STORE
# ============================================================

@pytest.fixture
def fleet_config():
    """Test configuration: in-memory store, fast retries."""
    return FleetConfig.for_testing()


@pytest.fixture
def config_provider(fleet_config):
    """Provider returning the (mutable) test configuration."""
    return lambda: fleet_config


@pytest.fixture
def clock():
    """Deterministic clock."""
    return MockClock(START_TIME)


@pytest.fixture
def database(fleet_config):
    """Fresh in-memory store with all tables."""
    db = Database(fleet_config.database)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def register_device(database):
    """Register a device; hostname defaults to the device id."""

    def _register(
        device_id: str,
        status: DeviceStatus = DeviceStatus.ONLINE,
        site: Optional[str] = None,
        hostname: Optional[str] = None,
        last_seen: Optional[datetime] = None,
    ) -> str:
        with database.session_scope() as session:
            devices = DeviceRepository(session)
            devices.register(device_id, hostname or device_id, site=site, status=status)
            if last_seen is not None:
                devices.update_status(device_id, status, seen_at=last_seen)
        return device_id

    return _register


@pytest.fixture
def add_metrics(database, clock):
    """Append metric rows: add_metrics("web-01", cpu_percent=("performance", 40))."""

    def _add(device_id: str, at: Optional[datetime] = None, **metrics) -> None:
        collected_at = at or clock.now()
        with database.session_scope() as session:
            repo = MetricRepository(session)
            for name, (category, value, *reason) in metrics.items():
                repo.add_metric(
                    device_id,
                    category,
                    name,
                    value,
                    collected_at=collected_at,
                    unavailable_reason=reason[0] if reason else None,
                )

    return _add


# ============================================================
# TRANSPORT
# ============================================================

@pytest.fixture
def transport():
    return MockDeviceTransport()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def allow_list():
    return InMemoryAllowListStore()


@pytest.fixture
def negotiator(allow_list, prober, fleet_config):
    """Domain-joined negotiator: every target negotiates Integrated."""
    return TransportNegotiator(
        allow_list,
        StaticHostEnvironment(domain_joined=True),
        prober=prober,
        config_provider=lambda: fleet_config.session,
    )


@pytest.fixture
def session_pool(negotiator, transport, clock, config_provider):
    return SessionPool(
        negotiator,
        transport,
        secret_store=InMemorySecretStore(),
        clock=clock,
        config_provider=config_provider,
    )


# ============================================================
# ENGINES
# ============================================================

@pytest.fixture
def alert_manager(database, clock, config_provider):
    return AlertLifecycleManager(database, clock=clock, config_provider=config_provider)


@pytest.fixture
def device_reads(database, clock, config_provider):
    return DeviceReadThrough(TTLCache(clock=clock, config_provider=config_provider), database)


@pytest.fixture
def execution_engine(database, session_pool, alert_manager, clock, config_provider, device_reads):
    return ActionExecutionEngine(
        database,
        session_pool,
        alert_manager,
        clock=clock,
        config_provider=config_provider,
        device_reads=device_reads,
    )


@pytest.fixture
def scoring_engine(database, alert_manager, clock, config_provider, device_reads):
    return HealthScoringEngine(
        database,
        alert_manager,
        clock=clock,
        config_provider=config_provider,
        device_reads=device_reads,
    )


@pytest.fixture
def recent(clock):
    """A last_seen value well inside the offline window."""
    return clock.now() - timedelta(seconds=30)
