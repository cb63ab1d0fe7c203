"""
Execution Engine - Action State Machine.

============================================================
PURPOSE
============================================================
Legal action transitions.

STATE MACHINE:

    PENDING ──dispatch──► RUNNING ──success──► COMPLETED
       │                     │
       │                     └──failure──► FAILED
       │
       └──cancel──► CANCELLED

INVARIANTS:
- Terminal states are final
- Transitions are applied by guarded UPDATEs in the store;
  this module decides legality and reports violations
- A violation is logged and raised as InvalidTransitionError;
  it never halts the engine

============================================================
"""

import logging
from typing import Any, Dict, Set

from core.exceptions import InvalidTransitionError
from storage.models import ActionStatus


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[ActionStatus, Set[ActionStatus]] = {
    ActionStatus.PENDING: {
        ActionStatus.RUNNING,
        ActionStatus.CANCELLED,
    },
    ActionStatus.RUNNING: {
        ActionStatus.COMPLETED,
        ActionStatus.FAILED,
    },
    # Terminal states - no transitions out
    ActionStatus.COMPLETED: set(),
    ActionStatus.FAILED: set(),
    ActionStatus.CANCELLED: set(),
}


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for action transitions.
    """

    @staticmethod
    def can_transition(from_state: ActionStatus, to_state: ActionStatus) -> tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"

        if from_state.is_terminal():
            return False, f"Cannot transition from terminal state {from_state.value}"

        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"

    @staticmethod
    def require(action_id: Any, from_state: ActionStatus, to_state: ActionStatus) -> None:
        """
        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        allowed, reason = TransitionGuard.can_transition(from_state, to_state)
        if not allowed:
            logger.warning(f"Action {action_id}: {reason}")
            raise InvalidTransitionError("action", action_id, from_state, to_state)
