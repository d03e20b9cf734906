"""
Match payment state ORM models

- MatchPaymentState: one row per match, optimistic version column
- PlayerPayment: one row per (match, participant)

The payment flow engine works on plain snapshots; to_snapshot() and
apply_snapshot() are the only bridge between rows and the engine.
"""
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Boolean,
    UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.orm.attributes import flag_modified

from matchpay.orm.base import BaseModel


class PaymentStage(str, Enum):
    FREE_JOINING = "free_joining"
    SOFT_LOCK = "soft_lock"
    PAYMENT_WINDOW = "payment_window"
    HARD_LOCK = "hard_lock"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class MatchPaymentState(BaseModel):
    """Lifecycle and cost state of one match."""
    __tablename__ = "match_payment_states"

    match_id = Column(String(64), nullable=False, unique=True, index=True)
    stage = Column(String(20), nullable=False, default=PaymentStage.FREE_JOINING.value)

    min_players = Column(Integer, nullable=False)
    max_players = Column(Integer, nullable=False)
    current_player_count = Column(Integer, nullable=False, default=0)

    # Currency units (whole rupees)
    total_cost = Column(Integer, nullable=False)
    cost_per_player = Column(Integer, nullable=False, default=0)

    match_starts_at = Column(DateTime, nullable=False)
    payment_window_start = Column(DateTime, nullable=True)
    payment_window_end = Column(DateTime, nullable=True, index=True)

    confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(255), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    players = relationship(
        "PlayerPayment",
        back_populates="match_state",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PlayerPayment.id",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("min_players >= 1", name="ck_match_payment_min_players"),
        CheckConstraint("max_players >= min_players", name="ck_match_payment_player_bounds"),
        CheckConstraint("total_cost > 0", name="ck_match_payment_total_cost"),
        CheckConstraint(
            "stage IN ('free_joining', 'soft_lock', 'payment_window', 'hard_lock', 'confirmed', 'cancelled')",
            name="ck_match_payment_stage_valid"
        ),
        Index("idx_match_payment_stage_window", "stage", "payment_window_end"),
    )

    def to_snapshot(self):
        from matchpay.services.payment_flow_engine import (
            MatchPaymentSnapshot, PaymentStatusSnapshot
        )
        return MatchPaymentSnapshot(
            match_id=self.match_id,
            stage=PaymentStage(self.stage),
            min_players=self.min_players,
            max_players=self.max_players,
            total_cost=self.total_cost,
            match_starts_at=self.match_starts_at,
            cost_per_player=self.cost_per_player,
            payment_window_start=self.payment_window_start,
            payment_window_end=self.payment_window_end,
            cancel_reason=self.cancel_reason,
            player_payments=[
                PaymentStatusSnapshot(
                    user_id=p.user_id,
                    stage=PaymentStage(p.stage),
                    amount_due=p.amount_due,
                    amount_paid=p.amount_paid,
                    is_paid=p.is_paid,
                    paid_at=p.paid_at,
                    payment_deadline=p.payment_deadline,
                    joined_at=p.joined_at,
                )
                for p in self.players
            ],
        )

    def apply_snapshot(self, snapshot) -> None:
        """Copy an engine result back onto this row and its player rows."""
        self.stage = snapshot.stage.value
        self.cost_per_player = snapshot.cost_per_player
        self.payment_window_start = snapshot.payment_window_start
        self.payment_window_end = snapshot.payment_window_end
        self.cancel_reason = snapshot.cancel_reason
        self.current_player_count = snapshot.current_player_count
        # Always bump the version so concurrent writers of any player row conflict
        flag_modified(self, "stage")

        existing = {p.user_id: p for p in self.players}
        wanted = {s.user_id for s in snapshot.player_payments}

        for row in list(self.players):
            if row.user_id not in wanted:
                self.players.remove(row)

        for status in snapshot.player_payments:
            row = existing.get(status.user_id)
            if row is None:
                row = PlayerPayment(match_id=self.match_id, user_id=status.user_id)
                self.players.append(row)
            row.stage = status.stage.value
            row.amount_due = status.amount_due
            row.amount_paid = status.amount_paid
            row.is_paid = status.is_paid
            row.paid_at = status.paid_at
            row.payment_deadline = status.payment_deadline
            row.joined_at = status.joined_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match_id": self.match_id,
            "stage": self.stage,
            "min_players": self.min_players,
            "max_players": self.max_players,
            "current_player_count": self.current_player_count,
            "total_cost": self.total_cost,
            "cost_per_player": self.cost_per_player,
            "match_starts_at": self.match_starts_at.isoformat() if self.match_starts_at else None,
            "payment_window_start": self.payment_window_start.isoformat() if self.payment_window_start else None,
            "payment_window_end": self.payment_window_end.isoformat() if self.payment_window_end else None,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancel_reason": self.cancel_reason,
            "version": self.version,
            "players": [p.to_dict() for p in self.players],
        }


class PlayerPayment(BaseModel):
    """Payment status of one participant in one match."""
    __tablename__ = "payment_statuses"

    match_state_id = Column(
        Integer,
        ForeignKey("match_payment_states.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    match_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    # Mirrors the parent stage at the time of last update
    stage = Column(String(20), nullable=False, default=PaymentStage.FREE_JOINING.value)

    amount_due = Column(Integer, nullable=False, default=0)
    amount_paid = Column(Integer, nullable=False, default=0)
    is_paid = Column(Boolean, nullable=False, default=False)
    paid_at = Column(DateTime, nullable=True)
    payment_deadline = Column(DateTime, nullable=True)
    joined_at = Column(DateTime, nullable=True)

    match_state = relationship("MatchPaymentState", back_populates="players")

    __table_args__ = (
        UniqueConstraint("match_id", "user_id", name="uq_payment_status_match_user"),
        CheckConstraint("amount_paid >= 0", name="ck_payment_status_amount_paid"),
        CheckConstraint("amount_due >= 0", name="ck_payment_status_amount_due"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "stage": self.stage,
            "amount_due": self.amount_due,
            "amount_paid": self.amount_paid,
            "is_paid": self.is_paid,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "payment_deadline": self.payment_deadline.isoformat() if self.payment_deadline else None,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
        }
