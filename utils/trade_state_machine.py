"""
Trade State Machine
Adjacency tables for the trade lifecycle and its escrow funding axis
"""

import logging
from typing import Dict, Optional, Set

from models import TradeStatus, EscrowStatus

logger = logging.getLogger(__name__)


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted"""
    pass


class InvalidTransitionError(StateTransitionError):
    """Transition outside the adjacency table; the current state is retained"""

    def __init__(self, axis: str, current_status: Optional[str], new_status: str):
        self.axis = axis
        self.current_status = current_status
        self.new_status = new_status
        super().__init__(f"Invalid {axis} transition: {current_status} -> {new_status}")


class _TransitionTable:
    """Shared lookups over a VALID_TRANSITIONS map"""

    AXIS = ""
    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {}
    TERMINAL_STATES: Set[str] = set()

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return set(cls.VALID_TRANSITIONS.get(current_status, set()))

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        return status in cls.TERMINAL_STATES

    @classmethod
    def validate(cls, current_status: Optional[str], new_status: str) -> str:
        """Return ``new_status`` if allowed, otherwise raise InvalidTransitionError"""
        if not cls.is_valid_transition(current_status, new_status):
            logger.warning(
                f"🚫 INVALID_TRANSITION: {cls.AXIS} {current_status} -> {new_status} rejected"
            )
            raise InvalidTransitionError(cls.AXIS, current_status, new_status)
        return new_status


class TradeStateValidator(_TransitionTable):
    """Trade lifecycle: acceptance, payment, delivery or release, completion"""

    AXIS = "trade"

    _INTERRUPTS = {TradeStatus.CANCELLED.value, TradeStatus.DISPUTED.value}

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {TradeStatus.PENDING_ACCEPTANCE.value},
        TradeStatus.PENDING_ACCEPTANCE.value: {TradeStatus.ACCEPTED.value} | _INTERRUPTS,
        TradeStatus.ACCEPTED.value: {TradeStatus.PAYMENT_SENT.value} | _INTERRUPTS,
        TradeStatus.PAYMENT_SENT.value: {
            TradeStatus.CASH_DELIVERED.value,
            TradeStatus.CRYPTO_RELEASED.value,
        } | _INTERRUPTS,
        TradeStatus.CASH_DELIVERED.value: {TradeStatus.COMPLETED.value} | _INTERRUPTS,
        TradeStatus.CRYPTO_RELEASED.value: {TradeStatus.COMPLETED.value} | _INTERRUPTS,
        # Leaving DISPUTED, cancellation included, only goes through resolve_dispute
        TradeStatus.DISPUTED.value: set(),
        TradeStatus.COMPLETED.value: set(),
        TradeStatus.CANCELLED.value: set(),
    }

    TERMINAL_STATES = {TradeStatus.COMPLETED.value, TradeStatus.CANCELLED.value}


class EscrowFundingValidator(_TransitionTable):
    """Escrow axis: crypto in, cash confirmed, completion"""

    AXIS = "escrow"

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {EscrowStatus.PENDING.value},
        EscrowStatus.PENDING.value: {EscrowStatus.CRYPTO_RECEIVED.value, EscrowStatus.DISPUTED.value},
        EscrowStatus.CRYPTO_RECEIVED.value: {EscrowStatus.CASH_RECEIVED.value, EscrowStatus.DISPUTED.value},
        EscrowStatus.CASH_RECEIVED.value: {EscrowStatus.COMPLETED.value, EscrowStatus.DISPUTED.value},
        EscrowStatus.DISPUTED.value: set(),
        EscrowStatus.COMPLETED.value: set(),
    }

    TERMINAL_STATES = {EscrowStatus.COMPLETED.value}


class TradeStateMachine:
    """Applies validated transitions and dispute resolution to trade statuses"""

    trade = TradeStateValidator
    escrow = EscrowFundingValidator

    @classmethod
    def transition_trade(cls, current_status: Optional[str], new_status: str) -> str:
        return cls.trade.validate(current_status, new_status)

    @classmethod
    def transition_escrow(cls, current_status: Optional[str], new_status: str) -> str:
        return cls.escrow.validate(current_status, new_status)

    @classmethod
    def _forward_reachable(cls, validator, start: Optional[str]) -> Set[str]:
        """States reachable from ``start`` along the normal sequence (no interrupts)"""
        interrupts = {TradeStatus.DISPUTED.value, TradeStatus.CANCELLED.value}
        seen: Set[str] = set()
        frontier = [start]
        while frontier:
            state = frontier.pop()
            for nxt in validator.VALID_TRANSITIONS.get(state, set()):
                if nxt in interrupts or nxt in seen:
                    continue
                seen.add(nxt)
                frontier.append(nxt)
        return seen

    @classmethod
    def resolve_dispute(
        cls, disputed_from: Optional[str], resume_status: str, axis: str = "trade"
    ) -> str:
        """
        Validate the state a disputed trade resumes in.

        The resolver names the target explicitly. Allowed targets are the state the
        dispute interrupted, any state reachable from it in the normal sequence, and
        for the trade axis ``cancelled``.
        """
        validator = cls.trade if axis == "trade" else cls.escrow
        allowed = cls._forward_reachable(validator, disputed_from)
        if disputed_from is not None:
            allowed.add(disputed_from)
        if axis == "trade":
            allowed.add(TradeStatus.CANCELLED.value)
        allowed.discard(TradeStatus.DISPUTED.value)

        if resume_status not in allowed:
            logger.warning(
                f"🚫 INVALID_DISPUTE_RESOLUTION: {axis} disputed from {disputed_from} cannot resume as {resume_status}"
            )
            raise InvalidTransitionError(axis, EscrowStatus.DISPUTED.value, resume_status)
        return resume_status
