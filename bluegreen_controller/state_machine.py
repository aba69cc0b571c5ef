"""
Blue/Green Deployment Controller - State Machine.

============================================================
PURPOSE
============================================================
Defines the only legal deployment transitions.

STATE TRANSITION RULES:
- Pending → Provisioning: Start, after registry reservation
- Provisioning → Shifting: Green destination reachable
- Provisioning → Failed: Green unreachable after timeout
- Shifting → Shifting: Step applied and confirmed
- Shifting → Baking: 100% reached with healthy verdict
- Shifting → RollingBack: Unhealthy, shift exhausted, or abort
- Baking → Promoted: Bake elapsed with sustained health
- Baking → RollingBack: Health degraded, or abort
- RollingBack → RolledBack: Automatic rollback confirmed
- RollingBack → Aborted: Operator abort confirmed
- Pending/Provisioning → RollingBack: Operator abort

CRITICAL CONSTRAINT:
- No state is skipped
- Terminal states never change
- Traffic only moves forward while Shifting

============================================================
"""

import logging
from typing import Dict, Optional, Set

from .types import (
    DeploymentState,
    InvalidTransitionError,
)


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

ALLOWED_TRANSITIONS: Dict[DeploymentState, Set[DeploymentState]] = {
    DeploymentState.PENDING: {
        DeploymentState.PROVISIONING,
        DeploymentState.ROLLING_BACK,  # Abort
    },
    DeploymentState.PROVISIONING: {
        DeploymentState.SHIFTING,
        DeploymentState.FAILED,
        DeploymentState.ROLLING_BACK,  # Abort
    },
    DeploymentState.SHIFTING: {
        DeploymentState.SHIFTING,
        DeploymentState.BAKING,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.BAKING: {
        DeploymentState.PROMOTED,
        DeploymentState.ROLLING_BACK,
    },
    DeploymentState.ROLLING_BACK: {
        DeploymentState.ROLLED_BACK,
        DeploymentState.ABORTED,
    },
    DeploymentState.PROMOTED: set(),
    DeploymentState.ROLLED_BACK: set(),
    DeploymentState.FAILED: set(),
    DeploymentState.ABORTED: set(),
}

TERMINAL_STATES: Set[DeploymentState] = {
    state for state, targets in ALLOWED_TRANSITIONS.items() if not targets
}

# States that can enter RollingBack directly
ABORTABLE_STATES: Set[DeploymentState] = {
    state
    for state, targets in ALLOWED_TRANSITIONS.items()
    if DeploymentState.ROLLING_BACK in targets
}


# ============================================================
# GUARDS
# ============================================================

def is_allowed(from_state: DeploymentState, to_state: DeploymentState) -> bool:
    """Check whether `from_state -> to_state` is an edge."""
    return to_state in ALLOWED_TRANSITIONS.get(from_state, set())


def validate_transition(
    from_state: DeploymentState,
    to_state: DeploymentState,
    current_percent: Optional[int] = None,
    new_percent: Optional[int] = None,
) -> None:
    """
    Validate a transition and its traffic change.

    Args:
        from_state: State the deployment is in
        to_state: Requested state
        current_percent: Confirmed green percent before the transition
        new_percent: Confirmed green percent after the transition (None = unchanged)

    Raises:
        InvalidTransitionError: If the edge or traffic change is illegal
    """
    if from_state in TERMINAL_STATES:
        raise InvalidTransitionError(from_state, to_state, "deployment is terminal")

    if not is_allowed(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state, "not an allowed edge")

    if new_percent is None or current_percent is None:
        effective = current_percent
    else:
        effective = new_percent

    if from_state == DeploymentState.SHIFTING and to_state == DeploymentState.SHIFTING:
        if new_percent is None:
            raise InvalidTransitionError(from_state, to_state, "a step must change traffic")
        if current_percent is not None and new_percent < current_percent:
            raise InvalidTransitionError(
                from_state,
                to_state,
                f"traffic may not decrease while shifting ({current_percent}% -> {new_percent}%)",
            )

    if to_state == DeploymentState.BAKING and effective != 100:
        raise InvalidTransitionError(
            from_state, to_state, f"baking requires 100% green, have {effective}%"
        )

    if to_state in (DeploymentState.ROLLED_BACK, DeploymentState.ABORTED) and effective != 0:
        raise InvalidTransitionError(
            from_state, to_state, f"reversal requires 0% green, have {effective}%"
        )

    if new_percent is not None and to_state not in (
        DeploymentState.SHIFTING,
        DeploymentState.ROLLED_BACK,
        DeploymentState.ABORTED,
    ):
        if current_percent is not None and new_percent != current_percent:
            raise InvalidTransitionError(
                from_state,
                to_state,
                "traffic may only change while shifting or reverting",
            )
