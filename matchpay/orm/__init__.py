"""
matchpay/orm/__init__.py
ORM models package
"""
from matchpay.orm.base import Base, BaseModel
from matchpay.orm.match_payment import MatchPaymentState, PlayerPayment, PaymentStage
from matchpay.orm.deadline_reminder import DeadlineReminder, ReminderStatus, build_reminder_id
from matchpay.orm.payment_transaction import (
    PaymentTransaction, TransactionKind, TransactionStatus, PaymentMethod
)

__all__ = [
    "Base",
    "BaseModel",
    "MatchPaymentState",
    "PlayerPayment",
    "PaymentStage",
    "DeadlineReminder",
    "ReminderStatus",
    "build_reminder_id",
    "PaymentTransaction",
    "TransactionKind",
    "TransactionStatus",
    "PaymentMethod",
]
