"""
Match Payment Lifecycle Service

The orchestrator and single writer of match payment state.

Design:
- One asyncio.Lock per match; different matches never contend
- Optimistic version column on match_payment_states for cross-process safety
- Retry with backoff on OperationalError / StaleDataError / IntegrityError
- Payment capture runs outside the lock; only its result is applied under it
- Refunds and top-ups are written as pending ledger rows in the same
  transaction as the stage change, then executed after the lock is released
- Reminders are armed and voided in the same transaction as the stage change
"""
import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from matchpay.exceptions import (
    InvalidMatchConfigError,
    MatchExistsError,
    MatchNotFoundError,
    PaymentCaptureError,
    PaymentFlowError,
)
from matchpay.integrations.notification_delivery import NotificationDelivery, NotificationMessage
from matchpay.integrations.payment_capture import PaymentCapture
from matchpay.orm.match_payment import MatchPaymentState, PaymentStage
from matchpay.orm.payment_transaction import (
    PaymentMethod,
    PaymentTransaction,
    TransactionKind,
    TransactionStatus,
)
from matchpay.services import reminder_messages as messages
from matchpay.services.deadline_reminder_service import DeadlineReminderService
from matchpay.services.payment_flow_engine import (
    Adjustment,
    HardLockOutcome,
    MatchPaymentSnapshot,
    PaymentFlowEngine,
    Settlement,
    SettlementKind,
)
from matchpay.services.reminder_messages import Urgency
from matchpay.state_machines.match_payment import MatchPaymentStateMachine
from matchpay.utils.time import Clock, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (OperationalError, StaleDataError, IntegrityError)

# Settlement rows stuck in PROCESSING longer than this are considered abandoned
SETTLEMENT_CLAIM_TIMEOUT = timedelta(minutes=5)
MAX_SETTLEMENT_ATTEMPTS = 5


def settlement_key(tx: PaymentTransaction) -> str:
    """Idempotency key for a refund / top-up; identical on every retry of the row."""
    return f"{tx.kind}-{tx.id}"


async def _with_retry(
    operation: Callable[[], Awaitable[Any]],
    max_retries: int = 3,
    backoff_ms: List[int] = [50, 150, 300]
) -> Any:
    """Execute operation with retry on persistence conflicts or outages."""
    for attempt in range(max_retries):
        try:
            return await operation()
        except RETRYABLE_ERRORS as e:
            if attempt < max_retries - 1:
                delay = backoff_ms[min(attempt, len(backoff_ms) - 1)] / 1000
                logger.warning(f"Retry {attempt + 1}/{max_retries} after error: {e}. Waiting {delay}s")
                await asyncio.sleep(delay)
            else:
                raise
    raise RuntimeError("max_retries must be at least 1")


class MatchLockRegistry:
    """
    Per-match asyncio locks.

    Locks are held weakly: an entry disappears once no coroutine holds or
    waits on it.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._lock_lock = asyncio.Lock()

    async def get(self, match_id: str) -> asyncio.Lock:
        async with self._lock_lock:
            lock = self._locks.get(match_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[match_id] = lock
            return lock


@dataclass
class _Effects:
    """Work to run after the transaction commits and the match lock is released."""
    notifications: List[Tuple[str, NotificationMessage, str]] = field(default_factory=list)
    settlements: List[PaymentTransaction] = field(default_factory=list)

    def notify(self, user_id: str, message: NotificationMessage, urgency: Urgency = Urgency.INFO) -> None:
        self.notifications.append((user_id, message, urgency.value))


Mutation = Callable[[AsyncSession, MatchPaymentState, MatchPaymentSnapshot, datetime, _Effects], Awaitable[Any]]


class MatchPaymentService:
    """
    Sequences participant events against the payment flow engine and the
    reminder scheduler.
    """

    def __init__(
        self,
        session_factory,
        scheduler: DeadlineReminderService,
        payment_capture: PaymentCapture,
        notifier: NotificationDelivery,
        clock: Optional[Clock] = None,
        max_retries: int = 3,
        backoff_ms: Optional[List[int]] = None,
        notify_timeout: float = 10.0
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.payment_capture = payment_capture
        self.notifier = notifier
        self.clock = clock or utcnow
        self.max_retries = max_retries
        self.backoff_ms = backoff_ms or [50, 150, 300]
        self.notify_timeout = notify_timeout
        self._locks = MatchLockRegistry()

        scheduler.set_deadline_handler(self.on_window_expired)

    # =========================================================================
    # Plumbing
    # =========================================================================

    @staticmethod
    async def _load_row(db: AsyncSession, match_id: str) -> MatchPaymentState:
        result = await db.execute(
            select(MatchPaymentState).where(MatchPaymentState.match_id == match_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise MatchNotFoundError(match_id)
        return row

    @staticmethod
    def _log_transition(match_id: str, source: PaymentStage, target: PaymentStage) -> None:
        if source != target:
            logger.info(f"match {match_id}: {source.value} → {target.value}")

    async def _mutate(self, match_id: str, mutation: Mutation) -> Any:
        """Run one read-modify-write of a match under its lock, with retry."""
        lock = await self._locks.get(match_id)
        async with lock:
            async def attempt():
                effects = _Effects()
                async with self.session_factory() as db:
                    row = await self._load_row(db, match_id)
                    now = self.clock()
                    result = await mutation(db, row, row.to_snapshot(), now, effects)
                    await db.commit()
                return result, effects

            result, effects = await _with_retry(attempt, self.max_retries, self.backoff_ms)

        await self._run_effects(effects)
        return result

    async def _run_effects(self, effects: _Effects) -> None:
        for tx in effects.settlements:
            await self._settle_transaction(tx.id)
        for user_id, message, urgency in effects.notifications:
            await self._notify(user_id, message, urgency)

    async def _notify(self, user_id: str, message: NotificationMessage, urgency: str) -> None:
        try:
            await asyncio.wait_for(self.notifier.send(user_id, message, urgency), timeout=self.notify_timeout)
        except Exception as e:
            logger.warning(f"⚠️ Notification '{message.kind}' to {user_id} not delivered: {e!r}")

    @staticmethod
    async def _latest_charge_ref(db: AsyncSession, match_id: str, user_id: str) -> Optional[str]:
        result = await db.execute(
            select(PaymentTransaction.transaction_ref)
            .where(
                PaymentTransaction.match_id == match_id,
                PaymentTransaction.user_id == user_id,
                PaymentTransaction.kind == TransactionKind.CHARGE.value,
                PaymentTransaction.status == TransactionStatus.COMPLETED.value,
            )
            .order_by(PaymentTransaction.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _queue_settlements(
        self,
        db: AsyncSession,
        match_id: str,
        settlements: List[Settlement],
        effects: _Effects
    ) -> None:
        for settlement in settlements:
            kind = (
                TransactionKind.REFUND if settlement.kind == SettlementKind.REFUND
                else TransactionKind.TOP_UP_REQUEST
            )
            tx = PaymentTransaction(
                match_id=match_id,
                user_id=settlement.user_id,
                kind=kind.value,
                status=TransactionStatus.PENDING.value,
                amount=settlement.amount,
                reason=settlement.reason,
                attempts=0,
            )
            if kind == TransactionKind.REFUND:
                tx.charge_ref = await self._latest_charge_ref(db, match_id, settlement.user_id)
            db.add(tx)
            effects.settlements.append(tx)
            logger.warning(
                f"match {match_id}: {kind.value} of {settlement.amount} queued for "
                f"{settlement.user_id} ({settlement.reason})"
            )

    # =========================================================================
    # Settlement outbox
    # =========================================================================

    async def _claim_transaction(self, tx_id: int, now: datetime) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.id == tx_id,
                    PaymentTransaction.status.in_(
                        [TransactionStatus.PENDING.value, TransactionStatus.FAILED.value]
                    ),
                )
                .values(
                    status=TransactionStatus.PROCESSING.value,
                    attempts=PaymentTransaction.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def _settle_transaction(self, tx_id: int) -> bool:
        """Execute one refund or top-up request. Returns True when completed."""
        now = self.clock()
        if not await self._claim_transaction(tx_id, now):
            return False

        async with self.session_factory() as db:
            tx = await db.get(PaymentTransaction, tx_id)
            try:
                if tx.kind == TransactionKind.REFUND.value:
                    ref = await self.payment_capture.refund(
                        tx.user_id, tx.amount, match_id=tx.match_id, transaction_ref=tx.charge_ref,
                        idempotency_key=settlement_key(tx),
                    )
                    notice = messages.refund_message(tx.match_id, tx.amount, tx.reason or "refund")
                else:
                    ref = await self.payment_capture.request_top_up(
                        tx.user_id, tx.amount, match_id=tx.match_id,
                        idempotency_key=settlement_key(tx),
                    )
                    notice = messages.top_up_message(tx.match_id, tx.amount)
            except PaymentCaptureError as e:
                tx.status = TransactionStatus.FAILED.value
                tx.last_error = e.message
                await db.commit()
                logger.warning(
                    f"⚠️ {tx.kind} #{tx.id} for {tx.user_id} failed "
                    f"(attempt {tx.attempts}): {e.message}"
                )
                if tx.attempts >= MAX_SETTLEMENT_ATTEMPTS:
                    logger.error(
                        f"❌ {tx.kind} #{tx.id} of {tx.amount} for {tx.user_id} (match {tx.match_id}) "
                        f"gave up after {tx.attempts} attempts; settle it manually"
                    )
                return False

            tx.status = TransactionStatus.COMPLETED.value
            tx.transaction_ref = ref
            tx.completed_at = self.clock()
            tx.last_error = None
            await db.commit()

        await self._notify(tx.user_id, notice, Urgency.INFO.value)
        return True

    async def settle_pending(self, limit: int = 100) -> Dict[str, int]:
        """Retry refunds/top-ups that are pending, failed, or abandoned mid-flight."""
        now = self.clock()
        async with self.session_factory() as db:
            # Abandoned claims go back to FAILED so they can be picked up
            await db.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.status == TransactionStatus.PROCESSING.value,
                    PaymentTransaction.updated_at < now - SETTLEMENT_CLAIM_TIMEOUT,
                )
                .values(status=TransactionStatus.FAILED.value, last_error="abandoned while processing")
                .execution_options(synchronize_session=False)
            )
            await db.commit()

            result = await db.execute(
                select(PaymentTransaction.id)
                .where(
                    PaymentTransaction.kind.in_(
                        [TransactionKind.REFUND.value, TransactionKind.TOP_UP_REQUEST.value]
                    ),
                    PaymentTransaction.status.in_(
                        [TransactionStatus.PENDING.value, TransactionStatus.FAILED.value]
                    ),
                    PaymentTransaction.attempts < MAX_SETTLEMENT_ATTEMPTS,
                )
                .order_by(PaymentTransaction.id)
                .limit(limit)
            )
            tx_ids = list(result.scalars().all())

        completed = 0
        for tx_id in tx_ids:
            if await self._settle_transaction(tx_id):
                completed += 1
        if tx_ids:
            logger.info(f"Settlement retry: {completed}/{len(tx_ids)} completed")
        return {"attempted": len(tx_ids), "completed": completed}

    async def list_transactions(self, match_id: str) -> List[PaymentTransaction]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentTransaction)
                .where(PaymentTransaction.match_id == match_id)
                .order_by(PaymentTransaction.id)
            )
            return list(result.scalars().all())

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_state(self, match_id: str) -> MatchPaymentSnapshot:
        async with self.session_factory() as db:
            row = await self._load_row(db, match_id)
            return row.to_snapshot()

    async def get_payment_summary(self, match_id: str) -> Dict[str, Any]:
        snapshot = await self.get_state(match_id)
        return PaymentFlowEngine.payment_summary(snapshot, self.clock())

    async def is_payment_window_expired(self, match_id: str, now: Optional[datetime] = None) -> bool:
        snapshot = await self.get_state(match_id)
        return PaymentFlowEngine.is_window_expired(snapshot, now or self.clock())

    # =========================================================================
    # Inbound operations
    # =========================================================================

    async def create_match(
        self,
        match_id: str,
        total_cost: int,
        min_players: int,
        max_players: int,
        starts_at: datetime
    ) -> MatchPaymentSnapshot:
        if isinstance(total_cost, bool) or not isinstance(total_cost, int) or total_cost <= 0:
            raise InvalidMatchConfigError("total_cost must be a positive integer")
        if min_players < 1:
            raise InvalidMatchConfigError("min_players must be at least 1")
        if max_players < min_players:
            raise InvalidMatchConfigError("max_players must be >= min_players")

        row = MatchPaymentState(
            match_id=match_id,
            stage=PaymentStage.FREE_JOINING.value,
            min_players=min_players,
            max_players=max_players,
            current_player_count=0,
            total_cost=total_cost,
            cost_per_player=0,
            match_starts_at=to_naive_utc(starts_at),
            players=[],
        )
        async with self.session_factory() as db:
            existing = await db.execute(
                select(MatchPaymentState.id).where(MatchPaymentState.match_id == match_id)
            )
            if existing.scalar_one_or_none() is not None:
                raise MatchExistsError(match_id)
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                raise MatchExistsError(match_id)
        logger.info(
            f"match {match_id}: created (total_cost={total_cost}, players {min_players}-{max_players})"
        )
        return row.to_snapshot()

    async def on_participant_join(self, match_id: str, user_id: str) -> MatchPaymentSnapshot:
        async def mutation(db, row, snapshot, now, effects):
            outcome = PaymentFlowEngine.evaluate_join(snapshot, user_id, now)
            state = outcome.state
            logger.info(f"match {match_id}: {user_id} joined ({state.current_player_count}/{state.max_players})")

            if outcome.quorum_reached:
                state = PaymentFlowEngine.enter_soft_lock(state, now)
                self._log_transition(match_id, snapshot.stage, state.stage)
                state = PaymentFlowEngine.open_payment_window(state)
                self._log_transition(match_id, PaymentStage.SOFT_LOCK, state.stage)
                for status in state.player_payments:
                    await self.scheduler.create(db, match_id, status.user_id, state.payment_window_end)
                    effects.notify(
                        status.user_id,
                        messages.payment_window_opened_message(
                            match_id, status.amount_due, state.payment_window_end
                        ),
                    )
            elif state.stage in MatchPaymentStateMachine.PAYABLE_STAGES:
                status = state.find(user_id)
                await self.scheduler.create(db, match_id, user_id, state.payment_window_end)
                effects.notify(
                    user_id,
                    messages.payment_window_opened_message(match_id, status.amount_due, state.payment_window_end),
                )

            row.apply_snapshot(state)
            return state

        return await self._mutate(match_id, mutation)

    async def on_participant_leave(self, match_id: str, user_id: str) -> MatchPaymentSnapshot:
        async def mutation(db, row, snapshot, now, effects):
            outcome = PaymentFlowEngine.evaluate_leave(snapshot, user_id)
            await self.scheduler.cancel(db, match_id, user_id)
            await self._queue_settlements(db, match_id, outcome.refunds, effects)
            row.apply_snapshot(outcome.state)
            state = outcome.state
            logger.info(f"match {match_id}: {user_id} left ({state.current_player_count}/{state.max_players})")
            if (
                state.stage in MatchPaymentStateMachine.PAYABLE_STAGES
                and state.current_player_count < state.min_players
            ):
                logger.warning(
                    f"match {match_id}: below quorum during payment window "
                    f"({state.current_player_count}/{state.min_players}), still open for joins"
                )
            return state

        return await self._mutate(match_id, mutation)

    async def on_payment_received(
        self,
        match_id: str,
        user_id: str,
        amount: int,
        method: str = PaymentMethod.UPI.value
    ) -> MatchPaymentSnapshot:
        """
        Charge the participant, then record the payment under the match lock.

        The charge is refunded if the payment can no longer be applied.
        """
        method = PaymentMethod(method).value

        # Reject before moving any money
        PaymentFlowEngine.record_payment(await self.get_state(match_id), user_id, amount, self.clock())

        try:
            charge_ref = await self.payment_capture.charge(user_id, amount, match_id=match_id, method=method)
        except PaymentCaptureError as e:
            await self._record_failed_charge(match_id, user_id, amount, method, e)
            raise

        async def mutation(db, row, snapshot, now, effects):
            state = PaymentFlowEngine.record_payment(snapshot, user_id, amount, now)
            db.add(PaymentTransaction(
                match_id=match_id,
                user_id=user_id,
                kind=TransactionKind.CHARGE.value,
                status=TransactionStatus.COMPLETED.value,
                amount=amount,
                method=method,
                transaction_ref=charge_ref,
                attempts=1,
                completed_at=now,
            ))
            row.apply_snapshot(state)
            status = state.find(user_id)
            logger.info(
                f"match {match_id}: {user_id} paid {amount} via {method} "
                f"({status.amount_paid}/{status.amount_due}, paid={status.is_paid})"
            )
            return state

        try:
            return await self._mutate(match_id, mutation)
        except Exception:
            logger.warning(f"⚠️ match {match_id}: payment by {user_id} not applied, reversing charge {charge_ref}")
            await self._reverse_charge(match_id, user_id, amount, method, charge_ref)
            raise

    async def _record_failed_charge(
        self,
        match_id: str,
        user_id: str,
        amount: int,
        method: str,
        error: PaymentCaptureError
    ) -> None:
        async with self.session_factory() as db:
            db.add(PaymentTransaction(
                match_id=match_id,
                user_id=user_id,
                kind=TransactionKind.CHARGE.value,
                status=TransactionStatus.FAILED.value,
                amount=amount,
                method=method,
                attempts=1,
                last_error=error.message,
            ))
            await db.commit()
        logger.warning(f"⚠️ match {match_id}: charge of {amount} for {user_id} failed: {error.message}")

    async def _reverse_charge(
        self,
        match_id: str,
        user_id: str,
        amount: int,
        method: str,
        charge_ref: str
    ) -> None:
        now = self.clock()
        async with self.session_factory() as db:
            db.add(PaymentTransaction(
                match_id=match_id,
                user_id=user_id,
                kind=TransactionKind.CHARGE.value,
                status=TransactionStatus.COMPLETED.value,
                amount=amount,
                method=method,
                transaction_ref=charge_ref,
                attempts=1,
                completed_at=now,
            ))
            refund = PaymentTransaction(
                match_id=match_id,
                user_id=user_id,
                kind=TransactionKind.REFUND.value,
                status=TransactionStatus.PENDING.value,
                amount=amount,
                reason="payment_not_applied",
                charge_ref=charge_ref,
                attempts=0,
            )
            db.add(refund)
            await db.commit()
        await self._settle_transaction(refund.id)

    async def on_window_expired(self, match_id: str) -> HardLockOutcome:
        """
        Close the payment window.

        Tolerates duplicate delivery: a match already past the window
        (hard-locked, reset, or terminal) is returned unchanged.
        """
        async def mutation(db, row, snapshot, now, effects):
            if snapshot.stage not in MatchPaymentStateMachine.PAYABLE_STAGES:
                if snapshot.stage != PaymentStage.HARD_LOCK:
                    logger.info(
                        f"match {match_id}: window expiry ignored, stage is {snapshot.stage.value}"
                    )
                    return HardLockOutcome(state=snapshot, already_applied=True)

            outcome = PaymentFlowEngine.enter_hard_lock(snapshot, now)
            if outcome.already_applied:
                logger.info(f"match {match_id}: already hard-locked, nothing to do")
                return outcome

            await self.scheduler.cancel_for_match(db, match_id)
            await self._queue_settlements(db, match_id, outcome.refunds, effects)
            row.apply_snapshot(outcome.state)

            if outcome.evicted:
                logger.warning(f"match {match_id}: evicted unpaid {outcome.evicted}")

            if outcome.quorum_lost:
                self._log_transition(match_id, snapshot.stage, PaymentStage.HARD_LOCK)
                self._log_transition(match_id, PaymentStage.HARD_LOCK, PaymentStage.FREE_JOINING)
                logger.warning(
                    f"match {match_id}: quorum lost ({len(outcome.released)}/{snapshot.min_players} paid), "
                    f"match restarted"
                )
                for user_id in outcome.released + outcome.evicted:
                    effects.notify(user_id, messages.quorum_lost_message(match_id))
            else:
                self._log_transition(match_id, snapshot.stage, outcome.state.stage)
                for user_id in outcome.evicted:
                    effects.notify(user_id, messages.eviction_message(match_id))
            return outcome

        return await self._mutate(match_id, mutation)

    async def expire_due_windows(self, now: Optional[datetime] = None) -> List[str]:
        """Hard-lock every match whose payment window has ended."""
        now = now or self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                select(MatchPaymentState.match_id).where(
                    MatchPaymentState.stage.in_([s.value for s in MatchPaymentStateMachine.PAYABLE_STAGES]),
                    MatchPaymentState.payment_window_end <= now,
                )
            )
            match_ids = list(result.scalars().all())

        expired = []
        for match_id in match_ids:
            try:
                await self.on_window_expired(match_id)
                expired.append(match_id)
            except PaymentFlowError as e:
                logger.warning(f"⚠️ match {match_id}: window expiry rejected: [{e.code}] {e.message}")
        return expired

    async def on_confirm(self, match_id: str) -> Tuple[MatchPaymentSnapshot, List[Adjustment]]:
        async def mutation(db, row, snapshot, now, effects):
            state, adjustments = PaymentFlowEngine.confirm_final_team(snapshot)
            settlements = [s for s in (a.to_settlement() for a in adjustments) if s is not None]
            await self._queue_settlements(db, match_id, settlements, effects)
            row.apply_snapshot(state)
            row.confirmed_at = now
            self._log_transition(match_id, snapshot.stage, state.stage)
            for status in state.player_payments:
                effects.notify(status.user_id, messages.confirmation_message(match_id, status.amount_paid))
            return state, adjustments

        return await self._mutate(match_id, mutation)

    async def on_organizer_cancel(self, match_id: str, reason: str) -> MatchPaymentSnapshot:
        async def mutation(db, row, snapshot, now, effects):
            state, refunds = PaymentFlowEngine.cancel(snapshot, reason)
            await self.scheduler.cancel_for_match(db, match_id)
            await self._queue_settlements(db, match_id, refunds, effects)
            row.apply_snapshot(state)
            row.cancelled_at = now
            self._log_transition(match_id, snapshot.stage, state.stage)
            for status in state.player_payments:
                effects.notify(status.user_id, messages.cancellation_message(match_id, reason))
            return state

        return await self._mutate(match_id, mutation)
