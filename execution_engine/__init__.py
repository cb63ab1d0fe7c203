"""
Execution Engine Package.

============================================================
PURPOSE
============================================================
Runs queued remote actions against fleet devices.

CRITICAL PRINCIPLE:
    "A row belongs to a worker only after its claim UPDATE won."

AUTHORITY BOUNDARIES:
    CAN:
        - Claim and run due Pending actions
        - Retry transient failures
        - Mark devices Online / Offline
        - Raise and auto-resolve execution alerts

    MUST NOT:
        - Run two non-reentrant actions on one device at once
        - Retry device, configuration or fatal failures
        - Continue dispatching after a fatal error

============================================================
MODULES
============================================================
- types: Payload variants, registry, results, reports
- state_machine: Action lifecycle rules
- execution_service: Dispatcher, retries, failure handling

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    ActionPayload,
    RunScriptPayload,
    RestartServicePayload,
    RebootPayload,
    HealthCheckPayload,
    CollectInventoryPayload,
    InstallUpdatesPayload,
    GenericPayload,
    BUILTIN_PAYLOADS,
    ActionTypeRegistry,
    ActionResult,
    ActionStatusView,
    DispatchReport,
)

# ============================================================
# STATE MACHINE
# ============================================================
from .state_machine import (
    VALID_TRANSITIONS,
    TransitionGuard,
)

# ============================================================
# SERVICE
# ============================================================
from .execution_service import (
    ActionExecutionEngine,
    CANCELLED_WHILE_RUNNING,
    SHUTDOWN_REASON,
)


__all__ = [
    # Types
    "ActionPayload",
    "RunScriptPayload",
    "RestartServicePayload",
    "RebootPayload",
    "HealthCheckPayload",
    "CollectInventoryPayload",
    "InstallUpdatesPayload",
    "GenericPayload",
    "BUILTIN_PAYLOADS",
    "ActionTypeRegistry",
    "ActionResult",
    "ActionStatusView",
    "DispatchReport",
    # State machine
    "VALID_TRANSITIONS",
    "TransitionGuard",
    # Service
    "ActionExecutionEngine",
    "CANCELLED_WHILE_RUNNING",
    "SHUTDOWN_REASON",
]
