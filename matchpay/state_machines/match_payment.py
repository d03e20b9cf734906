"""
Match Payment Stage Machine

State Flow: free_joining → soft_lock → payment_window → hard_lock → confirmed

- hard_lock → free_joining is the quorum-lost reset
- cancelled is reachable from every non-terminal stage
- confirmed and cancelled are terminal
"""
from typing import Dict, List

from matchpay.exceptions import InvalidTransitionError
from matchpay.orm.match_payment import PaymentStage


class MatchPaymentStateMachine:
    """Transition table for the match payment lifecycle."""

    TRANSITIONS: Dict[PaymentStage, List[PaymentStage]] = {
        PaymentStage.FREE_JOINING: [PaymentStage.SOFT_LOCK, PaymentStage.CANCELLED],
        PaymentStage.SOFT_LOCK: [PaymentStage.PAYMENT_WINDOW, PaymentStage.HARD_LOCK, PaymentStage.CANCELLED],
        PaymentStage.PAYMENT_WINDOW: [PaymentStage.HARD_LOCK, PaymentStage.CANCELLED],
        PaymentStage.HARD_LOCK: [PaymentStage.CONFIRMED, PaymentStage.FREE_JOINING, PaymentStage.CANCELLED],
        PaymentStage.CONFIRMED: [],
        PaymentStage.CANCELLED: [],
    }

    TERMINAL_STAGES = (PaymentStage.CONFIRMED, PaymentStage.CANCELLED)

    # Stages in which participants may still join
    JOINABLE_STAGES = (PaymentStage.FREE_JOINING, PaymentStage.SOFT_LOCK, PaymentStage.PAYMENT_WINDOW)

    # Stages in which payments are accepted
    PAYABLE_STAGES = (PaymentStage.SOFT_LOCK, PaymentStage.PAYMENT_WINDOW)

    @classmethod
    def can_transition(cls, current: PaymentStage, target: PaymentStage) -> bool:
        return target in cls.TRANSITIONS.get(current, [])

    @classmethod
    def assert_transition(cls, match_id: str, current: PaymentStage, target: PaymentStage) -> None:
        if not cls.can_transition(current, target):
            raise InvalidTransitionError(match_id, current.value, target.value)

    @classmethod
    def is_terminal(cls, stage: PaymentStage) -> bool:
        return stage in cls.TERMINAL_STAGES

    @classmethod
    def get_allowed_transitions(cls, stage: PaymentStage) -> List[str]:
        return [s.value for s in cls.TRANSITIONS.get(stage, [])]
