"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the exception hierarchy and the centralized error
classification used by every component of the engine.

- One taxonomy: TRANSIENT, DEVICE, CONFIGURATION, FATAL
- Every component reacts to a category, never to a raw type
- Library exceptions (timeouts, sockets, SQLAlchemy, aiohttp)
  are mapped in exactly one place: classify_error()

============================================================
EXCEPTION HIERARCHY
============================================================
FleetException (base)
├── TransientError
│   └── OperationTimeoutError
├── DeviceError
│   ├── DeviceUnreachableError
│   ├── AuthenticationDeniedError
│   └── TransportNegotiationError
├── ConfigurationError
│   ├── InvalidConfigError
│   └── UnknownRoleError
├── AccessDeniedError
├── InvalidTransitionError
├── OperationCancelledError
└── FatalError
    ├── StoreCorruptionError
    ├── ScoreInvariantError
    ├── AuditWriteError
    └── EngineHaltedError

============================================================
"""

import asyncio
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp
from sqlalchemy import exc as sa_exc


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """How the engine reacts to an error."""

    TRANSIENT = "Transient"
    """Network blip or timeout. Retry with backoff."""

    DEVICE = "Device"
    """Unreachable or auth-denied. Mark device Offline, do not retry."""

    CONFIGURATION = "Configuration"
    """Bad parameter or threshold. Surface to operator, no retry."""

    FATAL = "Fatal"
    """Store corruption or broken invariant. Halt the subsystem and alert."""

    @property
    def is_retryable(self) -> bool:
        """Only transient failures are retried."""
        return self is ErrorCategory.TRANSIENT

    @property
    def marks_device_offline(self) -> bool:
        """Whether a failure of this category takes the device offline."""
        return self in (ErrorCategory.TRANSIENT, ErrorCategory.DEVICE)


class Severity(Enum):
    """Exception severity levels for alerting."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================
# BASE EXCEPTION
# ============================================================

class FleetException(Exception):
    """
    Base exception for all orchestration engine errors.

    All exceptions carry:
    - category: drives retry / offline / halt decisions
    - severity: for alerting
    - context: for debugging
    - timestamp: when the error occurred
    """

    default_category: ErrorCategory = ErrorCategory.CONFIGURATION
    default_severity: Severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)

        self.message = message
        self.category = category or self.default_category
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause is not None:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    @property
    def is_retryable(self) -> bool:
        """Check if the error may succeed on retry."""
        return self.category.is_retryable

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/storage."""
        return {
            "type": type(self).__name__,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================================
# TRANSIENT ERRORS
# ============================================================

class TransientError(FleetException):
    """Failure expected to clear on retry."""

    default_category = ErrorCategory.TRANSIENT
    default_severity = Severity.LOW


class OperationTimeoutError(TransientError):
    """Remote operation or connect exceeded its timeout."""

    def __init__(self, operation: str, timeout_seconds: float, **kwargs):
        context = kwargs.pop("context", {})
        context["operation"] = operation
        context["timeout_seconds"] = timeout_seconds
        super().__init__(
            f"{operation} timed out after {timeout_seconds:g}s",
            context=context,
            **kwargs,
        )


# ============================================================
# DEVICE ERRORS
# ============================================================

class DeviceError(FleetException):
    """Target is unreachable or refuses us."""

    default_category = ErrorCategory.DEVICE
    default_severity = Severity.HIGH


class DeviceUnreachableError(DeviceError):
    """No route, no listener, or name resolution failure."""


class AuthenticationDeniedError(DeviceError):
    """Target rejected the supplied credential."""


class TransportNegotiationError(DeviceError):
    """
    Negotiator could not produce a usable channel.

    Carries the classified diagnostic (AccessDenied, NoListener,
    CertificateTrust) so operators get an actionable message.
    """

    def __init__(self, target: str, diagnostic: Any, message: str, **kwargs):
        context = kwargs.pop("context", {})
        context["target"] = target
        context["diagnostic"] = getattr(diagnostic, "value", diagnostic)
        super().__init__(message, context=context, **kwargs)
        self.target = target
        self.diagnostic = diagnostic


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(FleetException):
    """Error in configuration or caller-supplied parameters."""

    default_category = ErrorCategory.CONFIGURATION
    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        if actual_value is not None:
            context["actual_value"] = str(actual_value)[:100]
        super().__init__(message, context=context, **kwargs)


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid configuration for {key}: {reason}",
            config_key=key,
            actual_value=value,
            context={"reason": reason},
        )


class UnknownRoleError(ConfigurationError):
    """Role name is not defined in the role registry."""

    def __init__(self, role: str):
        super().__init__(f"Unknown role: {role}", config_key="role", actual_value=role)
        self.role = role


# ============================================================
# ACCESS / STATE ERRORS
# ============================================================

class AccessDeniedError(FleetException):
    """Actor role lacks the required permission."""

    default_category = ErrorCategory.CONFIGURATION
    default_severity = Severity.MEDIUM

    def __init__(self, permission: str, role: str, **kwargs):
        context = kwargs.pop("context", {})
        context["permission"] = permission
        context["role"] = role
        super().__init__(
            f"Role '{role}' lacks permission '{permission}'",
            context=context,
            **kwargs,
        )
        self.permission = permission
        self.role = role


class InvalidTransitionError(FleetException):
    """
    Illegal state transition.

    Reported and logged, never fatal.
    """

    default_category = ErrorCategory.CONFIGURATION
    default_severity = Severity.LOW

    def __init__(self, entity: str, entity_id: Any, from_state: Any, to_state: Any):
        from_value = getattr(from_state, "value", from_state)
        to_value = getattr(to_state, "value", to_state)
        super().__init__(
            f"Invalid transition for {entity} {entity_id}: {from_value} -> {to_value}",
            context={
                "entity": entity,
                "entity_id": str(entity_id),
                "from_state": from_value,
                "to_state": to_value,
            },
        )
        self.from_state = from_state
        self.to_state = to_state


class OperationCancelledError(FleetException):
    """Operation observed a cancellation request or shutdown."""

    default_category = ErrorCategory.CONFIGURATION
    default_severity = Severity.LOW


# ============================================================
# FATAL ERRORS
# ============================================================

class FatalError(FleetException):
    """Never continue silently past one of these."""

    default_category = ErrorCategory.FATAL
    default_severity = Severity.CRITICAL


class StoreCorruptionError(FatalError):
    """Store returned data that violates the schema or an invariant."""


class ScoreInvariantError(FatalError):
    """Health total does not equal the sum of its categories."""


class AuditWriteError(FatalError):
    """Neither the store nor the local sink accepted an audit entry."""


class EngineHaltedError(FatalError):
    """Subsystem was halted by an earlier fatal error."""


# ============================================================
# CENTRALIZED CLASSIFICATION
# ============================================================

@dataclass(frozen=True)
class ClassifiedError:
    """An exception paired with its category and a readable explanation."""

    category: ErrorCategory
    explanation: str
    error_type: str


def classify_error(error: BaseException) -> ErrorCategory:
    """
    Map any exception onto the engine taxonomy.

    Unknown exceptions are treated as CONFIGURATION: surfaced to the
    operator and not retried, without taking the device offline.
    """
    if isinstance(error, FleetException):
        return error.category

    if isinstance(error, ssl.SSLCertVerificationError):
        return ErrorCategory.DEVICE
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TRANSIENT
    if isinstance(error, aiohttp.ClientResponseError):
        if error.status in (401, 403):
            return ErrorCategory.DEVICE
        if error.status >= 500 or error.status == 429:
            return ErrorCategory.TRANSIENT
        return ErrorCategory.CONFIGURATION
    if isinstance(error, ConnectionRefusedError):
        return ErrorCategory.DEVICE
    if isinstance(error, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)):
        return ErrorCategory.TRANSIENT
    if isinstance(error, aiohttp.ServerDisconnectedError):
        return ErrorCategory.TRANSIENT
    if isinstance(error, aiohttp.ClientConnectorError):
        return ErrorCategory.DEVICE
    if isinstance(error, aiohttp.ClientError):
        return ErrorCategory.TRANSIENT
    if isinstance(error, PermissionError):
        return ErrorCategory.DEVICE
    if isinstance(error, OSError):
        return ErrorCategory.DEVICE

    if isinstance(error, sa_exc.OperationalError):
        return ErrorCategory.TRANSIENT
    if isinstance(error, (sa_exc.IntegrityError, sa_exc.DataError, sa_exc.DatabaseError)):
        return ErrorCategory.FATAL

    return ErrorCategory.CONFIGURATION


def describe_error(error: BaseException, attempted: str) -> ClassifiedError:
    """
    Classify an error and build the human-readable explanation stored
    on failed actions.

    Args:
        error: The exception raised
        attempted: What was being attempted, e.g. "RestartService on web-01"
    """
    category = classify_error(error)
    reason = str(error) or type(error).__name__
    return ClassifiedError(
        category=category,
        explanation=f"{attempted} failed ({category.value}): {reason}",
        error_type=type(error).__name__,
    )


__all__ = [
    "ErrorCategory",
    "Severity",
    "FleetException",
    "TransientError",
    "OperationTimeoutError",
    "DeviceError",
    "DeviceUnreachableError",
    "AuthenticationDeniedError",
    "TransportNegotiationError",
    "ConfigurationError",
    "InvalidConfigError",
    "UnknownRoleError",
    "AccessDeniedError",
    "InvalidTransitionError",
    "OperationCancelledError",
    "FatalError",
    "StoreCorruptionError",
    "ScoreInvariantError",
    "AuditWriteError",
    "EngineHaltedError",
    "ClassifiedError",
    "classify_error",
    "describe_error",
]
