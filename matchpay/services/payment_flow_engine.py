"""
Payment Flow Engine

Pure computation over a match's payment state:
- quorum checks and per-player share calculation
- payment window duration policy
- hard-lock eviction and quorum-loss reset
- final settlement / proration and cancellation refunds

No I/O. Every operation takes a snapshot and returns a new one; the input is
never mutated. Expected failures are raised as typed PaymentFlowError
subclasses. Quorum loss at hard lock is returned as a HardLockOutcome.
"""
import copy
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from matchpay.exceptions import (
    AlreadyJoinedError,
    AlreadyPaidError,
    CannotLeaveAfterPaymentError,
    IncompletePaymentError,
    InvalidAmountError,
    MatchClosedError,
    MatchFullError,
    ParticipantNotFoundError,
    QuorumNotMetError,
    WindowNotActiveError,
    WindowStillOpenError,
)
from matchpay.orm.match_payment import PaymentStage
from matchpay.state_machines.match_payment import MatchPaymentStateMachine


# =============================================================================
# Snapshots
# =============================================================================

@dataclass
class PaymentStatusSnapshot:
    user_id: str
    stage: PaymentStage
    amount_due: int = 0
    amount_paid: int = 0
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    payment_deadline: Optional[datetime] = None
    joined_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "stage": self.stage.value,
            "amount_due": self.amount_due,
            "amount_paid": self.amount_paid,
            "is_paid": self.is_paid,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "payment_deadline": self.payment_deadline.isoformat() if self.payment_deadline else None,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
        }


@dataclass
class MatchPaymentSnapshot:
    match_id: str
    stage: PaymentStage
    min_players: int
    max_players: int
    total_cost: int
    match_starts_at: datetime
    cost_per_player: int = 0
    payment_window_start: Optional[datetime] = None
    payment_window_end: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    player_payments: List[PaymentStatusSnapshot] = field(default_factory=list)

    @property
    def current_player_count(self) -> int:
        return len(self.player_payments)

    def find(self, user_id: str) -> Optional[PaymentStatusSnapshot]:
        for status in self.player_payments:
            if status.user_id == user_id:
                return status
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match_id": self.match_id,
            "stage": self.stage.value,
            "min_players": self.min_players,
            "max_players": self.max_players,
            "current_player_count": self.current_player_count,
            "total_cost": self.total_cost,
            "cost_per_player": self.cost_per_player,
            "match_starts_at": self.match_starts_at.isoformat(),
            "payment_window_start": self.payment_window_start.isoformat() if self.payment_window_start else None,
            "payment_window_end": self.payment_window_end.isoformat() if self.payment_window_end else None,
            "cancel_reason": self.cancel_reason,
            "player_payments": [p.to_dict() for p in self.player_payments],
        }


# =============================================================================
# Results
# =============================================================================

class SettlementKind(str, Enum):
    REFUND = "refund"
    TOP_UP = "top_up"


@dataclass
class Settlement:
    """Money movement the caller must carry out through payment capture."""
    user_id: str
    amount: int
    kind: SettlementKind
    reason: str


@dataclass
class Adjustment:
    user_id: str
    amount_paid: int
    final_amount: int

    @property
    def adjustment(self) -> int:
        """Positive: refund owed to the player. Negative: top-up owed by the player."""
        return self.amount_paid - self.final_amount

    def to_settlement(self) -> Optional[Settlement]:
        delta = self.adjustment
        if delta > 0:
            return Settlement(self.user_id, delta, SettlementKind.REFUND, "final_cost_adjustment")
        if delta < 0:
            return Settlement(self.user_id, -delta, SettlementKind.TOP_UP, "final_cost_adjustment")
        return None


@dataclass
class JoinOutcome:
    state: MatchPaymentSnapshot
    quorum_reached: bool = False


@dataclass
class LeaveOutcome:
    state: MatchPaymentSnapshot
    refunds: List[Settlement] = field(default_factory=list)


@dataclass
class HardLockOutcome:
    state: MatchPaymentSnapshot
    quorum_lost: bool = False
    evicted: List[str] = field(default_factory=list)
    # Paid participants released by a quorum-loss reset
    released: List[str] = field(default_factory=list)
    refunds: List[Settlement] = field(default_factory=list)
    already_applied: bool = False


# =============================================================================
# Engine
# =============================================================================

def split_cost(total_cost: int, player_count: int) -> int:
    """Per-player share in whole currency units, rounded half-up."""
    if player_count <= 0:
        return 0
    share = Decimal(total_cost) / Decimal(player_count)
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentFlowEngine:
    """
    Stateless payment calculations for a single match.

    All methods are static; callers own persistence and serialization.
    """

    @staticmethod
    def _copy(state: MatchPaymentSnapshot) -> MatchPaymentSnapshot:
        return copy.deepcopy(state)

    @staticmethod
    def compute_window_duration(hours_until_match_start: float) -> int:
        """Payment window length in minutes: <2h → 30, 2h–6h → 60, >6h → 90."""
        if hours_until_match_start < 2:
            return 30
        if hours_until_match_start <= 6:
            return 60
        return 90

    @staticmethod
    def evaluate_join(state: MatchPaymentSnapshot, user_id: str, now: datetime) -> JoinOutcome:
        if state.stage not in MatchPaymentStateMachine.JOINABLE_STAGES:
            raise MatchClosedError(state.match_id, state.stage.value)
        if state.find(user_id) is not None:
            raise AlreadyJoinedError(state.match_id, user_id)
        if state.current_player_count >= state.max_players:
            raise MatchFullError(state.match_id, state.max_players)

        new_state = PaymentFlowEngine._copy(state)
        previous_count = state.current_player_count

        status = PaymentStatusSnapshot(user_id=user_id, stage=state.stage, joined_at=now)
        if state.stage != PaymentStage.FREE_JOINING:
            # Late joiner owes the price fixed when the window opened
            status.amount_due = max(
                (p.amount_due for p in state.player_payments),
                default=split_cost(state.total_cost, max(previous_count + 1, state.min_players))
            )
            status.payment_deadline = state.payment_window_end

        new_state.player_payments.append(status)
        new_state.cost_per_player = split_cost(new_state.total_cost, new_state.current_player_count)

        quorum_reached = (
            state.stage == PaymentStage.FREE_JOINING
            and previous_count < state.min_players <= new_state.current_player_count
        )
        return JoinOutcome(state=new_state, quorum_reached=quorum_reached)

    @staticmethod
    def evaluate_leave(state: MatchPaymentSnapshot, user_id: str) -> LeaveOutcome:
        """
        Remove an unpaid participant.

        The count may drop below quorum during SoftLock/PaymentWindow; the
        match stays open for new joins.
        """
        if state.stage not in MatchPaymentStateMachine.JOINABLE_STAGES:
            raise MatchClosedError(state.match_id, state.stage.value)
        status = state.find(user_id)
        if status is None:
            raise ParticipantNotFoundError(state.match_id, user_id)
        if status.is_paid:
            raise CannotLeaveAfterPaymentError(state.match_id, user_id)

        new_state = PaymentFlowEngine._copy(state)
        new_state.player_payments = [p for p in new_state.player_payments if p.user_id != user_id]
        new_state.cost_per_player = split_cost(new_state.total_cost, new_state.current_player_count)

        refunds = []
        if status.amount_paid > 0:
            refunds.append(Settlement(user_id, status.amount_paid, SettlementKind.REFUND, "left_match"))
        return LeaveOutcome(state=new_state, refunds=refunds)

    @staticmethod
    def enter_soft_lock(state: MatchPaymentSnapshot, now: datetime) -> MatchPaymentSnapshot:
        MatchPaymentStateMachine.assert_transition(state.match_id, state.stage, PaymentStage.SOFT_LOCK)
        if state.current_player_count < state.min_players:
            raise QuorumNotMetError(state.match_id, state.current_player_count, state.min_players)

        hours_until_start = (state.match_starts_at - now).total_seconds() / 3600
        duration = PaymentFlowEngine.compute_window_duration(hours_until_start)

        new_state = PaymentFlowEngine._copy(state)
        new_state.stage = PaymentStage.SOFT_LOCK
        new_state.payment_window_start = now
        new_state.payment_window_end = now + timedelta(minutes=duration)
        new_state.cost_per_player = split_cost(state.total_cost, state.current_player_count)

        for status in new_state.player_payments:
            status.stage = PaymentStage.SOFT_LOCK
            status.amount_due = new_state.cost_per_player
            status.payment_deadline = new_state.payment_window_end
            status.is_paid = status.amount_paid >= status.amount_due
        return new_state

    @staticmethod
    def open_payment_window(state: MatchPaymentSnapshot) -> MatchPaymentSnapshot:
        MatchPaymentStateMachine.assert_transition(state.match_id, state.stage, PaymentStage.PAYMENT_WINDOW)
        new_state = PaymentFlowEngine._copy(state)
        new_state.stage = PaymentStage.PAYMENT_WINDOW
        for status in new_state.player_payments:
            status.stage = PaymentStage.PAYMENT_WINDOW
        return new_state

    @staticmethod
    def record_payment(
        state: MatchPaymentSnapshot,
        user_id: str,
        amount: int,
        now: datetime
    ) -> MatchPaymentSnapshot:
        """
        Add a payment to the participant's running total.

        Partial payments are kept; the participant is paid once the total
        reaches amount_due.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount)
        if state.stage not in MatchPaymentStateMachine.PAYABLE_STAGES:
            raise WindowNotActiveError(state.match_id, state.stage.value)
        current = state.find(user_id)
        if current is None:
            raise ParticipantNotFoundError(state.match_id, user_id)
        if current.is_paid:
            raise AlreadyPaidError(state.match_id, user_id)

        new_state = PaymentFlowEngine._copy(state)
        status = new_state.find(user_id)
        status.amount_paid += amount
        status.is_paid = status.amount_paid >= status.amount_due
        status.stage = new_state.stage
        if status.is_paid:
            status.paid_at = now
        return new_state

    @staticmethod
    def enter_hard_lock(state: MatchPaymentSnapshot, now: datetime) -> HardLockOutcome:
        """
        Close the payment window and evict unpaid participants.

        Re-entry on a match already in HardLock returns the state unchanged.
        """
        if state.stage == PaymentStage.HARD_LOCK:
            return HardLockOutcome(state=PaymentFlowEngine._copy(state), already_applied=True)
        if state.stage not in MatchPaymentStateMachine.PAYABLE_STAGES or state.payment_window_end is None:
            raise WindowNotActiveError(state.match_id, state.stage.value)
        if now < state.payment_window_end:
            raise WindowStillOpenError(state.match_id, state.payment_window_end)

        MatchPaymentStateMachine.assert_transition(state.match_id, state.stage, PaymentStage.HARD_LOCK)

        paid = [p for p in state.player_payments if p.is_paid]
        unpaid = [p for p in state.player_payments if not p.is_paid]

        refunds = [
            Settlement(p.user_id, p.amount_paid, SettlementKind.REFUND, "evicted_partial_payment")
            for p in unpaid if p.amount_paid > 0
        ]
        evicted = [p.user_id for p in unpaid]

        new_state = PaymentFlowEngine._copy(state)

        if len(paid) < state.min_players:
            MatchPaymentStateMachine.assert_transition(state.match_id, PaymentStage.HARD_LOCK, PaymentStage.FREE_JOINING)
            refunds.extend(
                Settlement(p.user_id, p.amount_paid, SettlementKind.REFUND, "quorum_lost")
                for p in paid if p.amount_paid > 0
            )
            new_state.stage = PaymentStage.FREE_JOINING
            new_state.player_payments = []
            new_state.payment_window_start = None
            new_state.payment_window_end = None
            new_state.cost_per_player = 0
            return HardLockOutcome(
                state=new_state,
                quorum_lost=True,
                evicted=evicted,
                released=[p.user_id for p in paid],
                refunds=refunds,
            )

        new_state.stage = PaymentStage.HARD_LOCK
        new_state.player_payments = [p for p in new_state.player_payments if p.is_paid]
        for status in new_state.player_payments:
            status.stage = PaymentStage.HARD_LOCK
        new_state.cost_per_player = split_cost(state.total_cost, new_state.current_player_count)
        return HardLockOutcome(state=new_state, evicted=evicted, refunds=refunds)

    @staticmethod
    def confirm_final_team(state: MatchPaymentSnapshot) -> Tuple[MatchPaymentSnapshot, List[Adjustment]]:
        """
        Settle every remaining participant at the final per-player cost.

        After confirmation amount_paid holds the net amount kept for the match.
        """
        if MatchPaymentStateMachine.is_terminal(state.stage):
            raise MatchClosedError(state.match_id, state.stage.value)
        if state.stage != PaymentStage.HARD_LOCK:
            raise IncompletePaymentError(
                state.match_id, f"payment window has not been closed (stage: {state.stage.value})"
            )
        unpaid = [p.user_id for p in state.player_payments if not p.is_paid]
        if unpaid:
            raise IncompletePaymentError(state.match_id, f"unpaid participants: {', '.join(unpaid)}")

        new_state = PaymentFlowEngine._copy(state)
        final_amount = new_state.cost_per_player
        adjustments = []
        for status in new_state.player_payments:
            adjustments.append(Adjustment(status.user_id, status.amount_paid, final_amount))
            status.amount_paid = final_amount
            status.amount_due = final_amount
            status.is_paid = True
            status.stage = PaymentStage.CONFIRMED
        new_state.stage = PaymentStage.CONFIRMED
        return new_state, adjustments

    @staticmethod
    def cancel(state: MatchPaymentSnapshot, reason: str) -> Tuple[MatchPaymentSnapshot, List[Settlement]]:
        """
        Cancel from any non-terminal stage, refunding everything collected.

        Partial payers are refunded too, not only participants with is_paid.
        """
        if MatchPaymentStateMachine.is_terminal(state.stage):
            raise MatchClosedError(state.match_id, state.stage.value)

        refunds = [
            Settlement(p.user_id, p.amount_paid, SettlementKind.REFUND, "match_cancelled")
            for p in state.player_payments if p.amount_paid > 0
        ]
        new_state = PaymentFlowEngine._copy(state)
        new_state.stage = PaymentStage.CANCELLED
        new_state.cancel_reason = reason
        for status in new_state.player_payments:
            status.stage = PaymentStage.CANCELLED
        return new_state, refunds

    @staticmethod
    def is_window_expired(state: MatchPaymentSnapshot, now: datetime) -> bool:
        if state.payment_window_end is None:
            return False
        return now >= state.payment_window_end

    @staticmethod
    def payment_summary(state: MatchPaymentSnapshot, now: datetime) -> Dict[str, Any]:
        paid = [p for p in state.player_payments if p.is_paid]
        window_active = (
            state.stage in MatchPaymentStateMachine.PAYABLE_STAGES
            and not PaymentFlowEngine.is_window_expired(state, now)
        )
        return {
            "match_id": state.match_id,
            "stage": state.stage.value,
            "total_players": state.current_player_count,
            "paid_players": len(paid),
            "unpaid_players": state.current_player_count - len(paid),
            "total_cost": state.total_cost,
            "cost_per_player": state.cost_per_player,
            "total_collected": sum(p.amount_paid for p in state.player_payments),
            "payment_window_end": state.payment_window_end.isoformat() if state.payment_window_end else None,
            "is_window_active": window_active,
        }
