"""
Payment transaction ledger

Every charge, refund and top-up request is recorded here. Refunds and
top-ups are written as PENDING in the same transaction as the state change
that produced them and executed against the payment processor afterwards.
"""
from enum import Enum
from typing import Any, Dict

from sqlalchemy import Column, Integer, String, DateTime, Text, Index

from matchpay.orm.base import BaseModel


class TransactionKind(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"
    TOP_UP_REQUEST = "top_up_request"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    UPI = "upi"
    CARD = "card"
    WALLET = "wallet"


class PaymentTransaction(BaseModel):
    __tablename__ = "payment_transactions"

    match_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)

    kind = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value)
    amount = Column(Integer, nullable=False)
    method = Column(String(20), nullable=True)
    reason = Column(String(100), nullable=True)

    transaction_ref = Column(String(128), nullable=True)
    # For refunds: the charge being reversed, when known
    charge_ref = Column(String(128), nullable=True)

    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_payment_tx_status_kind", "status", "kind"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "match_id": self.match_id,
            "user_id": self.user_id,
            "kind": self.kind,
            "status": self.status,
            "amount": self.amount,
            "method": self.method,
            "reason": self.reason,
            "transaction_ref": self.transaction_ref,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
