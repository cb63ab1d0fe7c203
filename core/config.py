"""
Core Module - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the orchestration engine.

Configuration can be loaded from:
- Default values
- Environment variables (.env supported via python-dotenv)
- YAML config file

Hot reload:
- ConfigManager re-reads the YAML file when it changes
- Components hold a provider callable and read the
  current config at use time, never a cached copy
- An invalid new file is rejected and the previous
  config stays active

============================================================
"""

import logging
import os
import threading
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError


logger = logging.getLogger(__name__)


# ============================================================
# EXECUTION CONFIGURATION
# ============================================================

@dataclass
class ExecutionConfig:
    """
    Action dispatch configuration.

    SAFETY: Limited retries with exponential backoff.
    """

    throttle_limit: int = 50
    """Maximum concurrently in-flight remote operations."""

    max_throttle_limit: int = 500
    """Upper bound accepted for throttle_limit."""

    max_retries: int = 3
    """Retries after the first attempt, transient failures only."""

    initial_delay_seconds: float = 2.0
    """Delay before the first retry."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""

    max_delay_seconds: float = 60.0
    """Maximum delay between retries."""

    connect_timeout_seconds: float = 15.0
    """Bound on session negotiation and connect."""

    operation_timeout_seconds: float = 300.0
    """Bound on a single remote execution."""

    dispatch_interval_seconds: float = 5.0
    """Pause between dispatch rounds in the background loop."""

    batch_size: int = 1000
    """Maximum Pending rows selected per dispatch round."""

    reentrant_action_types: List[str] = field(default_factory=lambda: [
        "HealthCheck",
        "CollectInventory",
    ])
    """Action types allowed to overlap on one device."""

    retention_days: int = 30
    """Terminal actions older than this are archived."""

    def backoff_delay(self, retry_number: int) -> float:
        """Delay before the given retry (1-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (retry_number - 1))
        return min(delay, self.max_delay_seconds)


# ============================================================
# SESSION / TRANSPORT CONFIGURATION
# ============================================================

@dataclass
class SessionConfig:
    """Session pool and transport negotiation configuration."""

    ttl_seconds: float = 300.0
    """Maximum age of a pooled session."""

    secure_port: int = 5986
    """Encrypted listener port probed first."""

    plain_port: int = 5985
    """Plain listener port."""

    probe_timeout_seconds: float = 3.0
    """Per-port connect probe timeout."""

    allow_list_path: Optional[str] = None
    """JSON file backing the local allow-list (memory when unset)."""

    credential_name: str = "fleet-default"
    """Secret store entry used when acquire() is given no credential."""


# ============================================================
# CACHE CONFIGURATION
# ============================================================

@dataclass
class CacheConfig:
    """Per-type TTLs for the cache layer."""

    device_status_ttl_seconds: float = 300.0
    inventory_ttl_seconds: float = 86400.0
    configuration_ttl_seconds: float = 3600.0


# ============================================================
# HEALTH CONFIGURATION
# ============================================================

@dataclass
class HealthWeights:
    """
    Maximum score of each health category.

    The four must sum to exactly 100.
    """

    availability: int = 25
    performance: int = 25
    security: int = 25
    compliance: int = 25

    def total(self) -> int:
        """Get sum of all category maxima."""
        return self.availability + self.performance + self.security + self.compliance


@dataclass
class HealthThresholds:
    """
    Bucket boundaries and per-check thresholds.

    - HEALTHY:  total >= healthy
    - WARNING:  warning <= total < healthy
    - CRITICAL: total < warning
    """

    healthy: int = 90
    warning: int = 70

    cpu_warning: float = 80.0
    cpu_critical: float = 95.0
    memory_warning: float = 85.0
    memory_critical: float = 95.0
    disk_warning: float = 85.0
    disk_critical: float = 95.0

    patch_warning_days: float = 30.0
    patch_critical_days: float = 90.0

    penalty_per_deviation: int = 5

    offline_after_seconds: float = 900.0
    """A device not seen for this long is considered unreachable."""


@dataclass
class HealthConfig:
    """Health scoring configuration."""

    weights: HealthWeights = field(default_factory=HealthWeights)
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)
    scoring_interval_seconds: float = 300.0


# ============================================================
# ALERT / AUDIT CONFIGURATION
# ============================================================

@dataclass
class AlertConfig:
    """Alert lifecycle configuration."""

    dedup_window_seconds: float = 3600.0
    """Repeats inside this window collapse silently into the open alert."""

    webhook_url: Optional[str] = None
    """Optional JSON webhook notified on new alerts."""

    webhook_timeout_seconds: float = 10.0

    retention_days: int = 90
    """Resolved alerts older than this are archived."""


@dataclass
class AuditConfig:
    """Audit trail configuration."""

    fallback_path: str = "logs/audit-fallback.jsonl"
    """Append-only sink used when the store rejects an audit entry."""


@dataclass
class DatabaseConfig:
    """Store connection configuration."""

    url: str = "sqlite:///fleet.db"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class FleetConfig:
    """
    Master configuration for the orchestration engine.
    """

    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    roles: Dict[str, List[str]] = field(default_factory=dict)
    """Additional roles: name -> permission strings."""

    log_level: str = "INFO"
    log_format: str = "text"

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of error messages, empty when valid
        """
        errors = []
        ex = self.execution

        if not 1 <= ex.throttle_limit <= ex.max_throttle_limit:
            errors.append(
                f"execution.throttle_limit must be between 1 and {ex.max_throttle_limit}"
            )
        if ex.max_retries < 0:
            errors.append("execution.max_retries must be >= 0")
        if ex.initial_delay_seconds < 0:
            errors.append("execution.initial_delay_seconds must be >= 0")
        if ex.backoff_multiplier < 1:
            errors.append("execution.backoff_multiplier must be >= 1")
        if ex.connect_timeout_seconds <= 0 or ex.operation_timeout_seconds <= 0:
            errors.append("execution timeouts must be positive")

        if self.session.ttl_seconds <= 0:
            errors.append("session.ttl_seconds must be positive")

        for name in ("device_status_ttl_seconds", "inventory_ttl_seconds", "configuration_ttl_seconds"):
            if getattr(self.cache, name) <= 0:
                errors.append(f"cache.{name} must be positive")

        weights = self.health.weights
        if weights.total() != 100:
            errors.append(f"health.weights must sum to 100 (got {weights.total()})")
        for name in ("availability", "performance", "security", "compliance"):
            if getattr(weights, name) < 0:
                errors.append(f"health.weights.{name} must be >= 0")

        thresholds = self.health.thresholds
        if not 0 <= thresholds.warning < thresholds.healthy <= 100:
            errors.append("health.thresholds require 0 <= warning < healthy <= 100")

        if self.alerts.dedup_window_seconds < 0:
            errors.append("alerts.dedup_window_seconds must be >= 0")

        for name, permissions in self.roles.items():
            if not name or not name.strip():
                errors.append("roles: role name must not be empty")
            if isinstance(permissions, str) or not all(
                isinstance(p, str) and p.strip() for p in permissions
            ):
                errors.append(f"roles.{name}: permissions must be a list of non-empty strings")

        return errors

    def validate_or_raise(self) -> "FleetConfig":
        """Raise ConfigurationError when invalid, else return self."""
        errors = self.validate()
        if errors:
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(errors)}",
                context={"errors": errors},
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    # --------------------------------------------------------
    # LOADERS
    # --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FleetConfig":
        """Build configuration from a nested dictionary."""
        return _build_dataclass(cls, data or {})

    @classmethod
    def from_yaml(cls, path: Path) -> "FleetConfig":
        """
        Load configuration from YAML file.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to load YAML config from {path}: {e}",
                config_key="config_file",
                actual_value=str(path),
                cause=e,
            ) from e

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config file {path} must contain a mapping",
                config_key="config_file",
            )
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, base: Optional["FleetConfig"] = None) -> "FleetConfig":
        """
        Load configuration from environment variables.

        Environment variables:
        - FLEET_CONFIG_FILE (YAML loaded first when set)
        - FLEET_DATABASE_URL
        - FLEET_THROTTLE_LIMIT
        - FLEET_MAX_RETRIES
        - FLEET_INITIAL_DELAY
        - FLEET_SESSION_TTL
        - FLEET_ALERT_DEDUP_WINDOW
        - FLEET_ALERT_WEBHOOK_URL
        - FLEET_AUDIT_FALLBACK_PATH
        - FLEET_LOG_LEVEL
        """
        load_dotenv()

        config = base
        if config is None:
            config_file = os.getenv("FLEET_CONFIG_FILE")
            config = cls.from_yaml(Path(config_file)) if config_file else cls()

        if os.getenv("FLEET_DATABASE_URL"):
            config.database.url = os.getenv("FLEET_DATABASE_URL")
        if os.getenv("FLEET_THROTTLE_LIMIT"):
            config.execution.throttle_limit = int(os.getenv("FLEET_THROTTLE_LIMIT"))
        if os.getenv("FLEET_MAX_RETRIES"):
            config.execution.max_retries = int(os.getenv("FLEET_MAX_RETRIES"))
        if os.getenv("FLEET_INITIAL_DELAY"):
            config.execution.initial_delay_seconds = float(os.getenv("FLEET_INITIAL_DELAY"))
        if os.getenv("FLEET_SESSION_TTL"):
            config.session.ttl_seconds = float(os.getenv("FLEET_SESSION_TTL"))
        if os.getenv("FLEET_ALERT_DEDUP_WINDOW"):
            config.alerts.dedup_window_seconds = float(os.getenv("FLEET_ALERT_DEDUP_WINDOW"))
        if os.getenv("FLEET_ALERT_WEBHOOK_URL"):
            config.alerts.webhook_url = os.getenv("FLEET_ALERT_WEBHOOK_URL")
        if os.getenv("FLEET_AUDIT_FALLBACK_PATH"):
            config.audit.fallback_path = os.getenv("FLEET_AUDIT_FALLBACK_PATH")
        if os.getenv("FLEET_LOG_LEVEL"):
            config.log_level = os.getenv("FLEET_LOG_LEVEL")

        return config

    @classmethod
    def for_testing(cls) -> "FleetConfig":
        """Get configuration for testing: in-memory store, fast retries."""
        config = cls()
        config.database.url = "sqlite://"
        config.execution.initial_delay_seconds = 0.01
        config.execution.max_delay_seconds = 0.05
        config.execution.connect_timeout_seconds = 2.0
        config.execution.operation_timeout_seconds = 2.0
        config.session.probe_timeout_seconds = 0.5
        return config


def _build_dataclass(cls: Any, data: Dict[str, Any]) -> Any:
    """Recursively build a dataclass from a dict, rejecting unknown keys."""
    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ConfigurationError(
            f"Unknown configuration keys for {cls.__name__}: {sorted(unknown)}",
            config_key=cls.__name__,
        )

    kwargs = {}
    for name, value in data.items():
        default = known[name].default_factory() if callable(known[name].default_factory) else None
        if is_dataclass(default) and isinstance(value, dict):
            kwargs[name] = _build_dataclass(type(default), value)
        else:
            kwargs[name] = value
    return cls(**kwargs)


# ============================================================
# HOT-RELOADING MANAGER
# ============================================================

ConfigProvider = Callable[[], FleetConfig]


class ConfigManager:
    """
    Owns the active configuration and hot-reloads it from disk.

    Pass `manager.get` to components as their config provider.
    """

    def __init__(
        self,
        config: Optional[FleetConfig] = None,
        path: Optional[Path] = None,
    ):
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._mtime: Optional[float] = None
        self._listeners: List[Callable[[FleetConfig], None]] = []

        if config is None:
            config = FleetConfig.from_yaml(self._path) if self._path else FleetConfig()
            if self._path:
                self._mtime = self._path.stat().st_mtime
        self._config = config.validate_or_raise()

    @property
    def path(self) -> Optional[Path]:
        """Get the watched config file."""
        return self._path

    def get(self) -> FleetConfig:
        """Get the active configuration."""
        with self._lock:
            return self._config

    def add_listener(self, listener: Callable[[FleetConfig], None]) -> None:
        """Register a callback invoked after each successful reload."""
        self._listeners.append(listener)

    def update(self, config: FleetConfig) -> None:
        """
        Replace the active configuration.

        Raises:
            ConfigurationError: If the new configuration is invalid
        """
        config.validate_or_raise()
        with self._lock:
            self._config = config
        logger.info("Configuration updated")
        for listener in self._listeners:
            try:
                listener(config)
            except Exception as e:
                logger.error(f"Config listener error: {e}")

    def reload_if_changed(self) -> bool:
        """
        Reload the YAML file when its modification time changed.

        Returns:
            True if a new configuration was applied
        """
        if self._path is None:
            return False

        try:
            mtime = self._path.stat().st_mtime
        except OSError as e:
            logger.warning(f"Config file {self._path} not readable: {e}")
            return False

        if self._mtime is not None and mtime == self._mtime:
            return False

        try:
            new_config = FleetConfig.from_env(FleetConfig.from_yaml(self._path))
            self.update(new_config)
        except ConfigurationError as e:
            logger.error(f"Rejected config reload from {self._path}: {e.message}")
            self._mtime = mtime
            return False

        self._mtime = mtime
        logger.info(f"Configuration reloaded from {self._path}")
        return True
