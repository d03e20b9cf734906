"""
Deadline Reminder Scheduler

Durable per-(match, participant) reminders:
- fixed offsets 7d / 3d / 1d before the deadline, each fired at most once
- hourly cadence inside the last 24 hours
- a single terminal "deadline reached" event

Reminders are rows with a next_fire_at timestamp. A periodic sweep claims
due rows with a lease (safe across several scheduler instances), delivers
the notification outside any match lock, then advances next_fire_at.

create/cancel take the caller's session and do not commit, so arming and
voiding reminders is part of the same transaction as the stage change.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from matchpay.exceptions import NotificationDeliveryError, PaymentFlowError
from matchpay.integrations.notification_delivery import NotificationDelivery
from matchpay.orm.deadline_reminder import (
    ACTIVE_REMINDER_STATUSES,
    DeadlineReminder,
    ReminderStatus,
    build_reminder_id,
)
from matchpay.services.reminder_messages import Urgency, build_reminder_message
from matchpay.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)

# (urgency, lead time, column suffix)
FIXED_OFFSETS = [
    (Urgency.SEVEN_DAY, timedelta(days=7), "seven_day"),
    (Urgency.THREE_DAY, timedelta(days=3), "three_day"),
    (Urgency.ONE_DAY, timedelta(days=1), "one_day"),
]
FIXED_OFFSET_COLUMNS = {urgency: suffix for urgency, _, suffix in FIXED_OFFSETS}

HOURLY_WINDOW = timedelta(hours=24)
HOURLY_INTERVAL = timedelta(hours=1)

DeadlineHandler = Callable[[str], Awaitable[object]]


@dataclass
class ReminderFiring:
    reminder_id: str
    match_id: str
    user_id: str
    urgency: Urgency
    delivered: bool
    skipped: int = 0


# =============================================================================
# Schedule computation (pure)
# =============================================================================

def hourly_anchor(deadline: datetime, armed_at: datetime) -> datetime:
    """Start of the hourly cadence: 24h before the deadline, or creation if later."""
    return max(armed_at, deadline - HOURLY_WINDOW)


def next_slot(reminder: DeadlineReminder, after: datetime) -> Optional[Tuple[Urgency, datetime]]:
    """Earliest pending slot strictly after `after`, or None when retired."""
    candidates = []

    for urgency, offset, suffix in FIXED_OFFSETS:
        if getattr(reminder, f"scheduled_{suffix}") and not getattr(reminder, f"triggered_{suffix}"):
            at = reminder.deadline - offset
            if at > after:
                candidates.append((at, urgency))

    if reminder.scheduled_hourly:
        anchor = hourly_anchor(reminder.deadline, reminder.armed_at)
        if after < anchor:
            steps = 1
        else:
            steps = int((after - anchor) // HOURLY_INTERVAL) + 1
        at = anchor + steps * HOURLY_INTERVAL
        if at < reminder.deadline:
            candidates.append((at, Urgency.HOURLY))

    if not reminder.triggered_deadline:
        candidates.append((reminder.deadline, Urgency.DEADLINE_REACHED))

    if not candidates:
        return None
    at, urgency = min(candidates, key=lambda c: c[0])
    return urgency, at


def status_at(reminder: DeadlineReminder, now: datetime) -> str:
    if now >= hourly_anchor(reminder.deadline, reminder.armed_at):
        return ReminderStatus.HOURLY_ACTIVE.value
    return ReminderStatus.ARMED.value


# =============================================================================
# Service
# =============================================================================

class DeadlineReminderService:
    """
    Durable reminder scheduler.

    One instance per process. instance_id identifies this process in lease
    columns.
    """

    def __init__(
        self,
        session_factory,
        delivery: NotificationDelivery,
        clock: Optional[Clock] = None,
        lease_seconds: int = 120,
        batch_size: int = 200,
        delivery_timeout: float = 10.0,
        max_concurrent_deliveries: int = 20,
        instance_id: Optional[str] = None
    ):
        self.session_factory = session_factory
        self.delivery = delivery
        self.clock = clock or utcnow
        self.lease = timedelta(seconds=lease_seconds)
        self.batch_size = batch_size
        self.delivery_timeout = delivery_timeout
        self.max_concurrent_deliveries = max_concurrent_deliveries
        self.instance_id = instance_id or f"scheduler-{uuid.uuid4().hex[:8]}"
        self._deadline_handler: Optional[DeadlineHandler] = None

    def set_deadline_handler(self, handler: DeadlineHandler) -> None:
        """Register the callback run once per match when its deadline event fires."""
        self._deadline_handler = handler

    # -------------------------------------------------------------------------
    # Arming and cancellation (caller's transaction)
    # -------------------------------------------------------------------------

    async def _load(self, db: AsyncSession, match_id: str, user_id: str) -> Optional[DeadlineReminder]:
        result = await db.execute(
            select(DeadlineReminder).where(
                DeadlineReminder.reminder_id == build_reminder_id(match_id, user_id)
            )
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        db: AsyncSession,
        match_id: str,
        user_id: str,
        deadline: datetime
    ) -> DeadlineReminder:
        """
        Arm a reminder for one participant.

        A fixed offset is armed only if it falls strictly after now. An
        existing row for the same pair is re-armed in place.
        """
        now = self.clock()
        reminder = await self._load(db, match_id, user_id)
        if reminder is None:
            reminder = DeadlineReminder(
                reminder_id=build_reminder_id(match_id, user_id),
                match_id=match_id,
                user_id=user_id,
            )
            db.add(reminder)

        reminder.deadline = deadline
        reminder.armed_at = now
        for _, offset, suffix in FIXED_OFFSETS:
            setattr(reminder, f"scheduled_{suffix}", deadline - offset > now)
            setattr(reminder, f"triggered_{suffix}", False)
        reminder.scheduled_hourly = True
        reminder.triggered_deadline = False
        reminder.hourly_timestamps = []
        reminder.last_fired_at = None
        reminder.delivery_failures = 0
        reminder.lease_owner = None
        reminder.lease_expires_at = None
        reminder.cancelled_at = None

        urgency, at = next_slot(reminder, now)
        reminder.next_kind = urgency.value
        reminder.next_fire_at = at
        reminder.status = status_at(reminder, now)

        armed = [s for _, _, s in FIXED_OFFSETS if getattr(reminder, f"scheduled_{s}")]
        logger.info(
            f"Reminder armed {reminder.reminder_id}: deadline={deadline.isoformat()}, "
            f"offsets={armed or 'none'}, status={reminder.status}"
        )
        return reminder

    def _void(self, reminder: DeadlineReminder, now: datetime) -> None:
        reminder.status = ReminderStatus.CANCELLED.value
        reminder.next_fire_at = None
        reminder.next_kind = None
        reminder.lease_owner = None
        reminder.lease_expires_at = None
        reminder.cancelled_at = now

    async def cancel(self, db: AsyncSession, match_id: str, user_id: str) -> bool:
        """Void all pending slots. Safe to call repeatedly or on retired reminders."""
        reminder = await self._load(db, match_id, user_id)
        if reminder is None or not reminder.is_active:
            return False
        self._void(reminder, self.clock())
        logger.info(f"Reminder cancelled {reminder.reminder_id}")
        return True

    async def cancel_for_match(self, db: AsyncSession, match_id: str) -> int:
        result = await db.execute(
            select(DeadlineReminder).where(
                DeadlineReminder.match_id == match_id,
                DeadlineReminder.status.in_(ACTIVE_REMINDER_STATUSES),
            )
        )
        reminders = result.scalars().all()
        now = self.clock()
        for reminder in reminders:
            self._void(reminder, now)
        if reminders:
            logger.info(f"Cancelled {len(reminders)} reminder(s) for match {match_id}")
        return len(reminders)

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    async def get_reminder(self, match_id: str, user_id: str) -> Optional[DeadlineReminder]:
        async with self.session_factory() as db:
            return await self._load(db, match_id, user_id)

    async def list_active_reminders(self, match_id: Optional[str] = None) -> List[DeadlineReminder]:
        query = select(DeadlineReminder).where(DeadlineReminder.status.in_(ACTIVE_REMINDER_STATUSES))
        if match_id is not None:
            query = query.where(DeadlineReminder.match_id == match_id)
        async with self.session_factory() as db:
            result = await db.execute(query.order_by(DeadlineReminder.next_fire_at))
            return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    def _claimable(self, now: datetime):
        return (
            DeadlineReminder.status.in_(ACTIVE_REMINDER_STATUSES),
            DeadlineReminder.next_fire_at.is_not(None),
            DeadlineReminder.next_fire_at <= now,
            or_(
                DeadlineReminder.lease_expires_at.is_(None),
                DeadlineReminder.lease_expires_at < now,
            ),
        )

    async def claim_due(self, now: Optional[datetime] = None) -> List[int]:
        """
        Lease due reminders to this instance.

        Each row is claimed with a conditional UPDATE; a row another
        instance leased first is skipped.
        """
        now = now or self.clock()
        claimed = []
        async with self.session_factory() as db:
            result = await db.execute(
                select(DeadlineReminder.id)
                .where(*self._claimable(now))
                .order_by(DeadlineReminder.next_fire_at)
                .limit(self.batch_size)
            )
            candidate_ids = list(result.scalars().all())

            for reminder_pk in candidate_ids:
                outcome = await db.execute(
                    update(DeadlineReminder)
                    .where(DeadlineReminder.id == reminder_pk, *self._claimable(now))
                    .values(lease_owner=self.instance_id, lease_expires_at=now + self.lease)
                    .execution_options(synchronize_session=False)
                )
                if outcome.rowcount == 1:
                    claimed.append(reminder_pk)
                else:
                    logger.debug(f"Reminder {reminder_pk} already leased by another scheduler")
            await db.commit()
        return claimed

    async def _deliver(self, reminder: DeadlineReminder, urgency: Urgency, now: datetime) -> bool:
        message = build_reminder_message(urgency, reminder.match_id, reminder.deadline, now)
        try:
            await asyncio.wait_for(
                self.delivery.send(reminder.user_id, message, urgency.value),
                timeout=self.delivery_timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"⚠️ Reminder {reminder.reminder_id} ({urgency.value}) delivery timed out "
                f"after {self.delivery_timeout}s"
            )
        except NotificationDeliveryError as e:
            logger.warning(f"⚠️ Reminder {reminder.reminder_id} ({urgency.value}) delivery failed: {e}")
        except Exception:
            logger.error(
                f"Reminder {reminder.reminder_id} ({urgency.value}) delivery raised unexpectedly",
                exc_info=True,
            )
        return False

    async def _process(self, reminder_pk: int, now: datetime) -> Optional[ReminderFiring]:
        async with self.session_factory() as db:
            reminder = await db.get(DeadlineReminder, reminder_pk)
            if reminder is None or not reminder.is_active or reminder.lease_owner != self.instance_id:
                return None

            due = []
            kind = Urgency(reminder.next_kind) if reminder.next_kind else None
            at = reminder.next_fire_at
            while at is not None and at <= now:
                due.append((kind, at))
                if kind == Urgency.DEADLINE_REACHED:
                    kind, at = None, None
                    break
                upcoming = next_slot(reminder, at)
                kind, at = upcoming if upcoming else (None, None)

            if not due:
                reminder.lease_owner = None
                reminder.lease_expires_at = None
                await db.commit()
                return None

            fire_kind, _ = due[-1]
            skipped = len(due) - 1
            if skipped:
                logger.warning(
                    f"Reminder {reminder.reminder_id}: {skipped} stale slot(s) skipped, "
                    f"firing latest ({fire_kind.value})"
                )

            firing = ReminderFiring(
                reminder_id=reminder.reminder_id,
                match_id=reminder.match_id,
                user_id=reminder.user_id,
                urgency=fire_kind,
                delivered=False,
                skipped=skipped,
            )
            values = {
                "lease_owner": None,
                "lease_expires_at": None,
                "last_fired_at": now,
            }
            if fire_kind in FIXED_OFFSET_COLUMNS:
                values[f"triggered_{FIXED_OFFSET_COLUMNS[fire_kind]}"] = True
            elif fire_kind == Urgency.HOURLY:
                values["hourly_timestamps"] = list(reminder.hourly_timestamps or []) + [now.isoformat()]
            elif fire_kind == Urgency.DEADLINE_REACHED:
                values["triggered_deadline"] = True

            if fire_kind == Urgency.DEADLINE_REACHED or at is None:
                values.update(status=ReminderStatus.EXPIRED.value, next_fire_at=None, next_kind=None)
            else:
                values.update(status=status_at(reminder, now), next_fire_at=at, next_kind=kind.value)

            firing.delivered = await self._deliver(reminder, fire_kind, now)
            if not firing.delivered:
                values["delivery_failures"] = DeadlineReminder.delivery_failures + 1

            # A cancel committed during delivery clears the lease, so this misses
            result = await db.execute(
                update(DeadlineReminder)
                .where(
                    DeadlineReminder.id == reminder_pk,
                    DeadlineReminder.lease_owner == self.instance_id,
                    DeadlineReminder.status.in_(ACTIVE_REMINDER_STATUSES),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount != 1:
            logger.info(
                f"Reminder {firing.reminder_id} was cancelled or re-leased during "
                f"{fire_kind.value} delivery; schedule left as is"
            )
            return None
        return firing

    async def fire_due(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One sweep pass: claim due reminders and fire them.

        Deliveries run concurrently, bounded by max_concurrent_deliveries.
        The deadline handler runs afterwards, once per match.
        """
        now = now or self.clock()
        claimed = await self.claim_due(now)
        if not claimed:
            return {"claimed": 0, "fired": 0, "failed": 0, "deadlines": 0}

        semaphore = asyncio.Semaphore(self.max_concurrent_deliveries)

        async def run(reminder_pk: int):
            async with semaphore:
                return await self._process(reminder_pk, now)

        results = await asyncio.gather(*(run(pk) for pk in claimed), return_exceptions=True)

        fired = failed = 0
        deadline_matches = []
        for reminder_pk, result in zip(claimed, results):
            if isinstance(result, BaseException):
                logger.error(f"Reminder {reminder_pk} processing failed: {result!r}", exc_info=result)
                continue
            if result is None:
                continue
            fired += 1
            if not result.delivered:
                failed += 1
            if result.urgency == Urgency.DEADLINE_REACHED and result.match_id not in deadline_matches:
                deadline_matches.append(result.match_id)

        for match_id in deadline_matches:
            await self._run_deadline_handler(match_id)

        logger.info(
            f"Reminder sweep: claimed={len(claimed)}, fired={fired}, "
            f"delivery_failures={failed}, deadlines={len(deadline_matches)}"
        )
        return {"claimed": len(claimed), "fired": fired, "failed": failed, "deadlines": len(deadline_matches)}

    async def _run_deadline_handler(self, match_id: str) -> None:
        if self._deadline_handler is None:
            logger.warning(f"Deadline reached for match {match_id} but no handler is registered")
            return
        try:
            await self._deadline_handler(match_id)
        except PaymentFlowError as e:
            logger.warning(f"⚠️ Window expiry for match {match_id} rejected: [{e.code}] {e.message}")
        except Exception:
            logger.error(f"Window expiry for match {match_id} failed; the sweep will retry", exc_info=True)

    async def release_stale_leases(self, now: Optional[datetime] = None) -> int:
        """Drop leases whose holder died; used at startup."""
        now = now or self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                update(DeadlineReminder)
                .where(
                    DeadlineReminder.lease_expires_at.is_not(None),
                    DeadlineReminder.lease_expires_at < now,
                )
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.warning(f"Released {result.rowcount} stale reminder lease(s)")
        return result.rowcount or 0
