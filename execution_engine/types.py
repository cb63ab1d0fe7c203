"""
Execution Engine - Types.

============================================================
PURPOSE
============================================================
Type definitions for the Action Execution Engine:

- Payload variants, one per known action type
- ActionTypeRegistry: payload parsing and the reentrant flag
- ActionResult: what is written to Action.result
- ActionStatusView / DispatchReport: what callers get back

Payloads are persisted as JSON; the registry turns the stored
dict back into the typed variant at dispatch time. Unknown
action types parse into GenericPayload so newer producers can
queue work an older engine does not model.

============================================================
"""

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, ClassVar, Dict, List, Optional, Type

from core.config import ExecutionConfig
from core.exceptions import ConfigurationError
from storage.models import Action, ActionStatus


# ============================================================
# PAYLOAD VARIANTS
# ============================================================

@dataclass
class ActionPayload:
    """Base class of all payload variants."""

    action_type: ClassVar[str] = ""
    required: ClassVar[tuple] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: If a required field is empty
        """
        for name in self.required:
            if not getattr(self, name):
                raise ConfigurationError(
                    f"{self.action_type} payload requires '{name}'",
                    config_key=f"payload.{name}",
                )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionPayload":
        """
        Build from a stored dict.

        Raises:
            ConfigurationError: If the dict has unknown keys or misses required ones
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(
                f"{cls.action_type} payload has unknown fields: {sorted(unknown)}",
                config_key="payload",
            )
        payload = cls(**data)
        payload.validate()
        return payload


@dataclass
class RunScriptPayload(ActionPayload):
    """Run a script on the device."""

    action_type: ClassVar[str] = "RunScript"
    required: ClassVar[tuple] = ("script",)

    script: str = ""
    """Script body or path understood by the agent."""

    arguments: List[str] = field(default_factory=list)

    interpreter: str = "powershell"


@dataclass
class RestartServicePayload(ActionPayload):
    """Restart a named service."""

    action_type: ClassVar[str] = "RestartService"
    required: ClassVar[tuple] = ("service_name",)

    service_name: str = ""
    force: bool = False


@dataclass
class RebootPayload(ActionPayload):
    """Reboot the device."""

    action_type: ClassVar[str] = "Reboot"

    delay_seconds: int = 0
    reason: str = ""


@dataclass
class HealthCheckPayload(ActionPayload):
    """Collect health metrics."""

    action_type: ClassVar[str] = "HealthCheck"

    checks: List[str] = field(default_factory=lambda: ["cpu", "memory", "disk"])


@dataclass
class CollectInventoryPayload(ActionPayload):
    """Collect hardware/software inventory."""

    action_type: ClassVar[str] = "CollectInventory"

    categories: List[str] = field(default_factory=lambda: ["hardware", "software"])


@dataclass
class InstallUpdatesPayload(ActionPayload):
    """Install pending updates."""

    action_type: ClassVar[str] = "InstallUpdates"

    update_ids: List[str] = field(default_factory=list)
    """Specific updates; empty means all applicable."""

    allow_reboot: bool = False


@dataclass
class GenericPayload(ActionPayload):
    """Payload of an action type the engine does not model."""

    name: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.data)


# ============================================================
# ACTION TYPE REGISTRY
# ============================================================

BUILTIN_PAYLOADS: List[Type[ActionPayload]] = [
    RunScriptPayload,
    RestartServicePayload,
    RebootPayload,
    HealthCheckPayload,
    CollectInventoryPayload,
    InstallUpdatesPayload,
]


class ActionTypeRegistry:
    """
    Known action types and their payload variants.

    Reentrancy is read from configuration on every call so the
    reentrant list can be hot-reloaded.
    """

    def __init__(self, config_provider: Optional[Callable[[], ExecutionConfig]] = None):
        self._config_provider = config_provider or ExecutionConfig
        self._payloads: Dict[str, Type[ActionPayload]] = {
            cls.action_type: cls for cls in BUILTIN_PAYLOADS
        }

    def register(self, payload_class: Type[ActionPayload]) -> None:
        """Register (or replace) a payload variant."""
        if not payload_class.action_type:
            raise ConfigurationError(f"{payload_class.__name__} has no action_type")
        self._payloads[payload_class.action_type] = payload_class

    def is_known(self, action_type: str) -> bool:
        return action_type in self._payloads

    def known_types(self) -> List[str]:
        return sorted(self._payloads)

    def is_reentrant(self, action_type: str) -> bool:
        """Whether actions of this type may overlap on one device."""
        return action_type in self._config_provider().reentrant_action_types

    def parse(self, action_type: str, data: Optional[Dict[str, Any]]) -> ActionPayload:
        """
        Turn a stored payload into its variant.

        Raises:
            ConfigurationError: If the payload does not fit the variant
        """
        if not action_type:
            raise ConfigurationError("action_type is required", config_key="action_type")
        if data is not None and not isinstance(data, dict):
            raise ConfigurationError(
                f"{action_type} payload must be a mapping",
                config_key="payload",
                actual_value=data,
            )
        payload_class = self._payloads.get(action_type)
        if payload_class is None:
            return GenericPayload(name=action_type, data=dict(data or {}))
        try:
            return payload_class.from_dict(dict(data or {}))
        except TypeError as e:
            raise ConfigurationError(
                f"Invalid {action_type} payload: {e}",
                config_key="payload",
                cause=e,
            ) from e


# ============================================================
# RESULTS
# ============================================================

@dataclass
class ActionResult:
    """Structured outcome stored on the action row."""

    success: bool
    explanation: str
    """What was attempted and, on failure, why it failed."""

    output: Dict[str, Any] = field(default_factory=dict)
    """Device-reported output."""

    error_category: Optional[str] = None
    error_type: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "explanation": self.explanation,
            "output": self.output,
            "error_category": self.error_category,
            "error_type": self.error_type,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ActionResult"]:
        if not data:
            return None
        return cls(
            success=bool(data.get("success")),
            explanation=data.get("explanation", ""),
            output=data.get("output") or {},
            error_category=data.get("error_category"),
            error_type=data.get("error_type"),
            attempts=data.get("attempts", 0),
        )


@dataclass
class ActionStatusView:
    """Detached snapshot of an action."""

    action_id: int
    device_id: Optional[str]
    action_type: str
    status: ActionStatus
    priority: int
    attempts: int
    cancel_requested: bool
    created_at: datetime
    created_by: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    result: Optional[ActionResult] = None

    @classmethod
    def from_model(cls, action: Action) -> "ActionStatusView":
        return cls(
            action_id=action.id,
            device_id=action.device_id,
            action_type=action.action_type,
            status=action.action_status,
            priority=action.priority,
            attempts=action.attempts,
            cancel_requested=action.cancel_requested,
            created_at=action.created_at,
            created_by=action.created_by,
            scheduled_at=action.scheduled_at,
            started_at=action.started_at,
            completed_at=action.completed_at,
            payload=dict(action.payload or {}),
            result=ActionResult.from_dict(action.result),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "action_id": self.action_id,
            "device_id": self.device_id,
            "action_type": self.action_type,
            "status": self.status.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at.isoformat(),
            "created_by": self.created_by,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "payload": self.payload,
            "result": self.result.to_dict() if self.result else None,
        }


@dataclass
class DispatchReport:
    """Outcome of one dispatch round."""

    selected: int = 0
    """Due Pending rows read from the store."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0

    skipped_busy: int = 0
    """Rows left Pending because their device lane was still running."""

    lost_claims: int = 0
    """Rows another worker claimed first."""

    halted: bool = False
    throttle_limit: int = 0
    outcomes: Dict[int, str] = field(default_factory=dict)
    """action_id -> final status value (or 'Skipped'/'Lost')."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected": self.selected,
            "claimed": self.claimed,
            "completed": self.completed,
            "failed": self.failed,
            "skipped_busy": self.skipped_busy,
            "lost_claims": self.lost_claims,
            "halted": self.halted,
            "throttle_limit": self.throttle_limit,
            "outcomes": {str(k): v for k, v in self.outcomes.items()},
        }
