"""
Orchestrator - Core.

============================================================
RESPONSIBILITY
============================================================
Wires the fleet components together and runs them.

- Builds store, transport, cache, alerts, execution, scoring
  and access control from one configuration
- Runs the background loops:
  - dispatch (inside the execution engine)
  - fleet scoring
  - maintenance: session eviction, config reload, retention
- Handles signals (SIGINT, SIGTERM)

============================================================
ARCHITECTURAL POSITION
============================================================
- This orchestrator has NO business logic
- It ONLY constructs and coordinates components

============================================================
"""

import asyncio
import json
import logging
import signal
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from access_control import AccessGate, AuditWriter, RoleRegistry
from cache_layer import DeviceReadThrough, TTLCache
from core.clock import ClockProtocol, SystemClock
from core.config import ConfigManager, FleetConfig
from core.exceptions import ErrorCategory, classify_error
from execution_engine import ActionExecutionEngine, ActionTypeRegistry
from monitoring.alerts import AlertLifecycleManager
from monitoring.notifications import WebhookNotifier
from scoring_engine import HealthScoringEngine
from storage.database import Database
from transport import (
    AllowListStore,
    DeviceTransport,
    EnvSecretStore,
    HostEnvironment,
    InMemoryAllowListStore,
    JsonFileAllowListStore,
    SecretStore,
    SessionPool,
    SystemHostEnvironment,
    TransportNegotiator,
)
from transport.agent_http import AgentHttpTransport


# ============================================================
# LOGGING SETUP
# ============================================================

class JsonLogFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(level: str = "INFO", log_format: str = "text") -> logging.Logger:
    """
    Set up process logging on stdout.

    Args:
        level: Log level
        log_format: Output format (json or text)

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter: logging.Formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("orchestrator")


logger = logging.getLogger(__name__)


MAINTENANCE_INTERVAL_SECONDS = 60.0


# ============================================================
# ORCHESTRATOR
# ============================================================

class FleetOrchestrator:
    """
    Owns every fleet component and the background loops.

    Usage:
        orchestrator = FleetOrchestrator(ConfigManager(path=Path("fleet.yaml")))
        await orchestrator.run_forever()
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        transport: Optional[DeviceTransport] = None,
        environment: Optional[HostEnvironment] = None,
        allow_list: Optional[AllowListStore] = None,
        secret_store: Optional[SecretStore] = None,
        clock: Optional[ClockProtocol] = None,
        database: Optional[Database] = None,
    ):
        self._config_manager = config_manager
        provider = config_manager.get
        config = provider()

        self._clock = clock or SystemClock()
        self._database = database or Database(config.database)

        if allow_list is None:
            path = config.session.allow_list_path
            allow_list = JsonFileAllowListStore(Path(path)) if path else InMemoryAllowListStore()
        self._transport = transport or AgentHttpTransport(config_provider=lambda: provider().session)
        self._negotiator = TransportNegotiator(
            allow_list,
            environment or SystemHostEnvironment(),
            config_provider=lambda: provider().session,
        )
        self._session_pool = SessionPool(
            self._negotiator,
            self._transport,
            secret_store=secret_store or EnvSecretStore(),
            clock=self._clock,
            config_provider=provider,
        )

        self._cache = TTLCache(clock=self._clock, config_provider=provider)
        self._device_reads = DeviceReadThrough(self._cache, self._database)

        self._alerts = AlertLifecycleManager(self._database, clock=self._clock, config_provider=provider)
        self._webhook: Optional[WebhookNotifier] = None
        if config.alerts.webhook_url:
            self._webhook = WebhookNotifier(
                config.alerts.webhook_url,
                timeout_seconds=config.alerts.webhook_timeout_seconds,
            )
            self._alerts.add_handler(self._webhook.send)

        self._execution = ActionExecutionEngine(
            self._database,
            self._session_pool,
            self._alerts,
            clock=self._clock,
            config_provider=provider,
            registry=ActionTypeRegistry(lambda: provider().execution),
            device_reads=self._device_reads,
        )
        self._scoring = HealthScoringEngine(
            self._database,
            self._alerts,
            clock=self._clock,
            config_provider=provider,
            device_reads=self._device_reads,
        )

        self._roles = RoleRegistry(provider)
        self._audit = AuditWriter(self._database, clock=self._clock, config_provider=provider)
        self._gate = AccessGate(self._roles, self._audit)

        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []
        self._last_scoring_error: Optional[str] = None

        logger.info(f"Fleet orchestrator initialized | store={config.database.url.split('@')[-1]}")

    # --------------------------------------------------------
    # Properties
    # --------------------------------------------------------

    @property
    def config(self) -> FleetConfig:
        return self._config_manager.get()

    @property
    def config_manager(self) -> ConfigManager:
        return self._config_manager

    @property
    def database(self) -> Database:
        return self._database

    @property
    def negotiator(self) -> TransportNegotiator:
        return self._negotiator

    @property
    def session_pool(self) -> SessionPool:
        return self._session_pool

    @property
    def cache(self) -> TTLCache:
        return self._cache

    @property
    def device_reads(self) -> DeviceReadThrough:
        return self._device_reads

    @property
    def alerts(self) -> AlertLifecycleManager:
        return self._alerts

    @property
    def execution(self) -> ActionExecutionEngine:
        return self._execution

    @property
    def scoring(self) -> HealthScoringEngine:
        return self._scoring

    @property
    def gate(self) -> AccessGate:
        return self._gate

    @property
    def is_running(self) -> bool:
        return self._running

    # --------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------

    def init_db(self) -> None:
        """Create missing tables."""
        self._database.create_all()

    async def start(self) -> None:
        """Start the execution engine and the background loops."""
        if self._running:
            logger.warning("Orchestrator already running")
            return

        logger.info("=== FLEET ORCHESTRATOR STARTUP ===")
        self._stop_event = asyncio.Event()
        await self._execution.start()
        self._tasks = [
            asyncio.create_task(self._scoring_loop(), name="fleet-scoring"),
            asyncio.create_task(self._maintenance_loop(), name="fleet-maintenance"),
        ]
        self._running = True
        logger.info("=== FLEET ORCHESTRATOR STARTED ===")

    async def stop(self) -> None:
        """Stop loops, abort in-flight actions, release resources."""
        if not self._running:
            return

        logger.info("=== FLEET ORCHESTRATOR SHUTDOWN ===")
        self._running = False
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self._execution.shutdown()
        if self._webhook is not None:
            await self._webhook.close()
        await self._transport.close()
        logger.info("=== FLEET ORCHESTRATOR STOPPED ===")

    async def close(self) -> None:
        """Stop if running and dispose of the store."""
        await self.stop()
        await self._session_pool.close_all()
        self._database.dispose()

    async def run_forever(self) -> None:
        """Run until a signal or stop()."""
        await self.start()
        self._install_signal_handlers()
        try:
            await self._stop_event.wait()
        finally:
            self._restore_signal_handlers()
            await self.stop()

    # --------------------------------------------------------
    # Loops
    # --------------------------------------------------------

    async def _sleep(self, seconds: float) -> bool:
        """Wait for the interval; True when stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _scoring_loop(self) -> None:
        while self._running:
            try:
                await self._scoring.score_fleet()
                self._last_scoring_error = None
            except Exception as e:
                self._last_scoring_error = str(e)
                if classify_error(e) is ErrorCategory.FATAL:
                    logger.critical(f"Scoring stopped on fatal error: {e}")
                    return
                logger.error(f"Scoring round failed: {e}")

            if await self._sleep(self.config.health.scoring_interval_seconds):
                return

    async def _maintenance_loop(self) -> None:
        while self._running:
            try:
                await self.run_maintenance()
            except Exception as e:
                logger.error(f"Maintenance round failed: {e}")

            if await self._sleep(MAINTENANCE_INTERVAL_SECONDS):
                return

    async def run_maintenance(self) -> Dict[str, Any]:
        """Reload config, evict sessions, archive old rows."""
        reloaded = self._config_manager.reload_if_changed()
        evicted = await self._session_pool.evict_expired()

        config = self.config
        now = self._clock.now()
        archived_actions = self._execution.archive_terminal(
            now - timedelta(days=config.execution.retention_days)
        )
        archived_alerts = self._alerts.archive_resolved(
            now - timedelta(days=config.alerts.retention_days)
        )

        if evicted or archived_actions or archived_alerts:
            logger.info(
                f"Maintenance: evicted {evicted} sessions, archived {archived_actions} actions "
                f"and {archived_alerts} alerts"
            )
        return {
            "config_reloaded": reloaded,
            "sessions_evicted": evicted,
            "actions_archived": archived_actions,
            "alerts_archived": archived_alerts,
        }

    # --------------------------------------------------------
    # Signal Handlers
    # --------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install signal handlers for graceful shutdown."""
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, self._signal_handler)
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_stop, sig.name)

    def _restore_signal_handlers(self) -> None:
        """Restore original signal handlers."""
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, signal.default_int_handler)
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    def _signal_handler(self, signum: int, frame: Any) -> None:
        """Synchronous signal handler (Windows)."""
        asyncio.get_event_loop().call_soon_threadsafe(self._request_stop, str(signum))

    def _request_stop(self, name: str) -> None:
        logger.info(f"Received signal {name}")
        if self._stop_event is not None:
            self._stop_event.set()

    # --------------------------------------------------------
    # Health & Status
    # --------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """Get orchestrator status."""
        return {
            "running": self._running,
            "current_time": self._clock.now().isoformat(),
            "execution": self._execution.stats(),
            "sessions": self._session_pool.stats(),
            "cache": self._cache.stats(),
            "alerts": self._alerts.summary().to_dict(),
            "allow_list_programmatic": self._negotiator.allow_list.programmatic_entries(),
            "audit_fallback_writes": self._audit.fallback_writes,
            "last_scoring_error": self._last_scoring_error,
        }


# ============================================================
# ORCHESTRATOR FACTORY
# ============================================================

def create_orchestrator(
    config_path: Optional[Path] = None,
    config: Optional[FleetConfig] = None,
    **components: Any,
) -> FleetOrchestrator:
    """
    Build an orchestrator from a config file, a config object, or
    the environment (FLEET_* variables, .env).
    """
    if config is None and config_path is None:
        config = FleetConfig.from_env()
    manager = ConfigManager(config=config, path=config_path)
    return FleetOrchestrator(manager, **components)


__all__ = [
    "FleetOrchestrator",
    "JsonLogFormatter",
    "create_orchestrator",
    "setup_logging",
]
