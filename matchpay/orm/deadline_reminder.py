"""
Deadline reminder ORM model

One durable row per (match, participant). The sweep selects rows whose
next_fire_at has passed and claims them with a lease before delivering.
"""
from enum import Enum
from typing import Any, Dict

from sqlalchemy import Column, Integer, String, DateTime, Boolean, JSON, Index

from matchpay.orm.base import BaseModel


class ReminderStatus(str, Enum):
    ARMED = "armed"
    HOURLY_ACTIVE = "hourly_active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


ACTIVE_REMINDER_STATUSES = (ReminderStatus.ARMED.value, ReminderStatus.HOURLY_ACTIVE.value)


def build_reminder_id(match_id: str, user_id: str) -> str:
    return f"reminder_{match_id}_{user_id}"


class DeadlineReminder(BaseModel):
    __tablename__ = "deadline_reminders"

    reminder_id = Column(String(160), nullable=False, unique=True, index=True)
    match_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)

    deadline = Column(DateTime, nullable=False)
    # Creation instant used for arming decisions; set from the service clock
    armed_at = Column(DateTime, nullable=False)

    status = Column(String(20), nullable=False, default=ReminderStatus.ARMED.value)

    scheduled_seven_day = Column(Boolean, nullable=False, default=False)
    scheduled_three_day = Column(Boolean, nullable=False, default=False)
    scheduled_one_day = Column(Boolean, nullable=False, default=False)
    scheduled_hourly = Column(Boolean, nullable=False, default=True)

    triggered_seven_day = Column(Boolean, nullable=False, default=False)
    triggered_three_day = Column(Boolean, nullable=False, default=False)
    triggered_one_day = Column(Boolean, nullable=False, default=False)
    triggered_deadline = Column(Boolean, nullable=False, default=False)
    # ISO timestamps of delivered hourly reminders; reassigned, never mutated in place
    hourly_timestamps = Column(JSON, nullable=False, default=list)

    next_fire_at = Column(DateTime, nullable=True)
    next_kind = Column(String(20), nullable=True)
    last_fired_at = Column(DateTime, nullable=True)
    delivery_failures = Column(Integer, nullable=False, default=0)

    lease_owner = Column(String(64), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)

    cancelled_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_deadline_reminder_due", "status", "next_fire_at"),
        Index("idx_deadline_reminder_match_user", "match_id", "user_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_REMINDER_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reminder_id": self.reminder_id,
            "match_id": self.match_id,
            "user_id": self.user_id,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "created_at": self.armed_at.isoformat() if self.armed_at else None,
            "status": self.status,
            "scheduled": {
                "seven_day": self.scheduled_seven_day,
                "three_day": self.scheduled_three_day,
                "one_day": self.scheduled_one_day,
                "hourly": self.scheduled_hourly,
            },
            "triggered": {
                "seven_day": self.triggered_seven_day,
                "three_day": self.triggered_three_day,
                "one_day": self.triggered_one_day,
                "hourly_timestamps": list(self.hourly_timestamps or []),
                "deadline": self.triggered_deadline,
            },
            "next_fire_at": self.next_fire_at.isoformat() if self.next_fire_at else None,
            "next_kind": self.next_kind,
        }
