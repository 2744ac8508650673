"""
Entity-Specific State Machine Implementations
Transition table for the trade security lifecycle

The state machine provides:
- The closed set of legal trade status transitions
- Terminal state detection
- Guard validation raising InvalidTransitionError before anything is written
"""

import logging
from typing import Dict, Optional, Set

from models import TradeStatus
from utils.exception_handler import InvalidTransitionError

logger = logging.getLogger(__name__)


class TradeStateMachine:
    """
    State machine for Trade entities

    Manages the trade lifecycle from proposal through completion, cancellation
    or dispute. DISPUTED is only left through an external resolution.
    """

    valid_transitions: Dict[TradeStatus, Set[TradeStatus]] = {
        TradeStatus.PROPOSED: {
            TradeStatus.ACCEPTED,
            TradeStatus.CANCELLED,
        },
        TradeStatus.ACCEPTED: {
            TradeStatus.VERIFICATION_PENDING,
            TradeStatus.CANCELLED,
        },
        TradeStatus.VERIFICATION_PENDING: {
            TradeStatus.VERIFICATION_COMPLETE,
            TradeStatus.CANCELLED,
        },
        TradeStatus.VERIFICATION_COMPLETE: {
            TradeStatus.SHIPPING_PENDING,
            TradeStatus.CANCELLED,
        },
        TradeStatus.SHIPPING_PENDING: {
            TradeStatus.SHIPPING_CONFIRMED,
            TradeStatus.CANCELLED,
        },
        # Past this point parcels are moving: no more cancellation
        TradeStatus.SHIPPING_CONFIRMED: {
            TradeStatus.DELIVERED,
            TradeStatus.DISPUTED,
        },
        TradeStatus.DELIVERED: {
            TradeStatus.COMPLETED,
            TradeStatus.DISPUTED,
        },
        TradeStatus.DISPUTED: {
            TradeStatus.COMPLETED,
            TradeStatus.CANCELLED,
        },

        # Terminal states (no transitions allowed)
        TradeStatus.COMPLETED: set(),
        TradeStatus.CANCELLED: set(),
    }

    terminal_states: Set[TradeStatus] = {TradeStatus.COMPLETED, TradeStatus.CANCELLED}

    # Reachable from DISPUTED only through a moderator decision
    resolution_only: Set[TradeStatus] = {TradeStatus.COMPLETED, TradeStatus.CANCELLED}

    cancellable_states: Set[TradeStatus] = {
        TradeStatus.PROPOSED,
        TradeStatus.ACCEPTED,
        TradeStatus.VERIFICATION_PENDING,
        TradeStatus.VERIFICATION_COMPLETE,
        TradeStatus.SHIPPING_PENDING,
    }

    disputable_states: Set[TradeStatus] = {TradeStatus.SHIPPING_CONFIRMED, TradeStatus.DELIVERED}

    @classmethod
    def is_terminal(cls, status: TradeStatus) -> bool:
        return status in cls.terminal_states

    @classmethod
    def can_transition(cls, current: TradeStatus, target: TradeStatus, via_resolution: bool = False) -> bool:
        if target not in cls.valid_transitions.get(current, set()):
            return False
        if current == TradeStatus.DISPUTED and target in cls.resolution_only and not via_resolution:
            return False
        return True

    @classmethod
    def validate_transition(
        cls,
        current: TradeStatus,
        target: TradeStatus,
        action: Optional[str] = None,
        via_resolution: bool = False,
    ) -> None:
        """Raise InvalidTransitionError unless current -> target is legal"""
        if cls.can_transition(current, target, via_resolution=via_resolution):
            return

        attempted = action or f"move to {target.value}"
        if cls.is_terminal(current):
            reason = "trade is closed"
        elif current == TradeStatus.DISPUTED:
            reason = "disputed trades only close through dispute resolution"
        else:
            reason = None

        logger.warning(
            f"🚫 INVALID_TRANSITION: {current.value} -> {target.value} rejected ({attempted})"
        )
        raise InvalidTransitionError(current.value, attempted, reason)

    @classmethod
    def require_status(cls, current: TradeStatus, allowed: Set[TradeStatus], action: str) -> None:
        """Guard for operations that do not themselves change status"""
        if current not in allowed:
            expected = ", ".join(sorted(s.value for s in allowed))
            raise InvalidTransitionError(current.value, action, f"allowed only in: {expected}")
