"""
Notification copy for payment reminders and lifecycle notices.
"""
from datetime import datetime
from enum import Enum

from matchpay.config.settings import settings
from matchpay.integrations.notification_delivery import NotificationMessage


class Urgency(str, Enum):
    SEVEN_DAY = "sevenDay"
    THREE_DAY = "threeDay"
    ONE_DAY = "oneDay"
    HOURLY = "hourly"
    DEADLINE_REACHED = "deadlineReached"
    # Lifecycle notices (eviction, refund, confirmation, restart)
    INFO = "info"


def format_time_remaining(deadline: datetime, now: datetime) -> str:
    """"2d 5h", "3h 20m" or "45m"."""
    seconds = max(0, int((deadline - now).total_seconds()))
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes = seconds // 60
    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_deadline(deadline: datetime) -> str:
    """"Mar 05, 06:30 PM"."""
    return deadline.strftime("%b %d, %I:%M %p")


def format_amount(amount: int) -> str:
    return f"{settings.CURRENCY_SYMBOL}{amount}"


def build_reminder_message(
    kind: Urgency,
    match_id: str,
    deadline: datetime,
    now: datetime
) -> NotificationMessage:
    remaining = format_time_remaining(deadline, now)
    when = format_deadline(deadline)

    if kind == Urgency.SEVEN_DAY:
        title = "⏰ Payment Reminder - 7 Days Left!"
        body = f"Your match payment is due in {remaining} ({when}). Don't miss out!"
    elif kind == Urgency.THREE_DAY:
        title = "⏰ Payment Reminder - 3 Days Left!"
        body = f"Hurry! Your match payment deadline is in {remaining} ({when})."
    elif kind == Urgency.ONE_DAY:
        title = "⏰ Urgent: Payment Due Tomorrow!"
        body = f"Your payment is due in {remaining} ({when}). Don't lose your spot."
    elif kind == Urgency.HOURLY:
        title = "⏰ Time Running Out!"
        body = f"Payment deadline in {remaining}. Secure your spot now!"
    elif kind == Urgency.DEADLINE_REACHED:
        title = "❌ Payment Deadline Reached!"
        body = "The payment window has closed. Unpaid spots are being released."
    else:
        raise ValueError(f"Not a reminder kind: {kind}")

    return NotificationMessage(
        title=title,
        body=body,
        match_id=match_id,
        kind=kind.value,
        data={"deadline": deadline.isoformat(), "time_remaining": remaining},
    )


def payment_window_opened_message(match_id: str, amount_due: int, deadline: datetime) -> NotificationMessage:
    return NotificationMessage(
        title="✅ Match is on! Time to pay",
        body=(
            f"Enough players have joined. Pay {format_amount(amount_due)} "
            f"by {format_deadline(deadline)} to keep your spot."
        ),
        match_id=match_id,
        kind="payment_window_opened",
        data={"amount_due": amount_due, "deadline": deadline.isoformat()},
    )


def eviction_message(match_id: str) -> NotificationMessage:
    return NotificationMessage(
        title="Removed from match",
        body="You were removed from the match because payment was not completed before the deadline.",
        match_id=match_id,
        kind="evicted",
    )


def quorum_lost_message(match_id: str) -> NotificationMessage:
    return NotificationMessage(
        title="Match restarted",
        body="Match restarted: no longer enough confirmed players, refunds issued.",
        match_id=match_id,
        kind="quorum_lost",
    )


def refund_message(match_id: str, amount: int, reason: str) -> NotificationMessage:
    return NotificationMessage(
        title="💰 Refund issued",
        body=f"{format_amount(amount)} has been refunded to you.",
        match_id=match_id,
        kind="refund",
        data={"amount": amount, "reason": reason},
    )


def top_up_message(match_id: str, amount: int) -> NotificationMessage:
    return NotificationMessage(
        title="Additional payment needed",
        body=f"The final cost per player went up. Please pay an extra {format_amount(amount)}.",
        match_id=match_id,
        kind="top_up_request",
        data={"amount": amount},
    )


def confirmation_message(match_id: str, amount_paid: int) -> NotificationMessage:
    return NotificationMessage(
        title="🎉 Match confirmed!",
        body=f"The final team is locked in. Your share: {format_amount(amount_paid)}.",
        match_id=match_id,
        kind="confirmed",
        data={"amount_paid": amount_paid},
    )


def cancellation_message(match_id: str, reason: str) -> NotificationMessage:
    return NotificationMessage(
        title="Match cancelled",
        body=f"The organizer cancelled this match: {reason}. Any payment will be refunded.",
        match_id=match_id,
        kind="cancelled",
        data={"reason": reason},
    )
