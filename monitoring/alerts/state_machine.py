"""
Alert State Machine.

============================================================
STATE MACHINE
============================================================

    (none) ──raise──► ACTIVE ──acknowledge──► ACKNOWLEDGED
                        │                          │
                        └──────resolve─────► RESOLVED ◄──resolve

INVARIANTS:
- RESOLVED is terminal
- Re-acknowledging an acknowledged alert is a no-op
- Anything else raises InvalidTransitionError (logged, non-fatal)

============================================================
"""

import logging
from typing import Any, Dict, Set

from core.exceptions import InvalidTransitionError
from storage.models import AlertState


logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[AlertState, Set[AlertState]] = {
    AlertState.ACTIVE: {
        AlertState.ACKNOWLEDGED,
        AlertState.RESOLVED,
    },
    AlertState.ACKNOWLEDGED: {
        AlertState.RESOLVED,
    },
    # Terminal
    AlertState.RESOLVED: set(),
}

_IDEMPOTENT: Set[AlertState] = {AlertState.ACKNOWLEDGED}


class AlertTransitionGuard:
    """
    Guard for alert transitions.
    """

    @staticmethod
    def check(alert_id: Any, from_state: AlertState, to_state: AlertState) -> bool:
        """
        Check a transition.

        Returns:
            True to apply it, False when it is a no-op

        Raises:
            InvalidTransitionError: If the transition is illegal
        """
        if from_state == to_state and to_state in _IDEMPOTENT:
            return False
        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True
        error = InvalidTransitionError("alert", alert_id, from_state, to_state)
        logger.warning(error.message)
        raise error
