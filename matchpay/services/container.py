"""
Wiring for the match payment services.
"""
from dataclasses import dataclass
from typing import Optional

from matchpay.config.settings import settings
from matchpay.integrations.notification_delivery import NotificationDelivery
from matchpay.integrations.payment_capture import PaymentCapture
from matchpay.services.deadline_reminder_service import DeadlineReminderService
from matchpay.services.match_payment_service import MatchPaymentService
from matchpay.utils.time import Clock


@dataclass
class ServiceContainer:
    scheduler: DeadlineReminderService
    match_payments: MatchPaymentService
    payment_capture: PaymentCapture
    notifier: NotificationDelivery

    async def close(self) -> None:
        await self.payment_capture.close()
        await self.notifier.close()


def build_services(
    session_factory,
    payment_capture: PaymentCapture,
    notifier: NotificationDelivery,
    clock: Optional[Clock] = None,
    instance_id: Optional[str] = None
) -> ServiceContainer:
    scheduler = DeadlineReminderService(
        session_factory,
        notifier,
        clock=clock,
        lease_seconds=settings.REMINDER_LEASE_SECONDS,
        batch_size=settings.REMINDER_SWEEP_BATCH_SIZE,
        delivery_timeout=settings.DELIVERY_TIMEOUT_SECONDS,
        max_concurrent_deliveries=settings.MAX_CONCURRENT_DELIVERIES,
        instance_id=instance_id,
    )
    match_payments = MatchPaymentService(
        session_factory,
        scheduler,
        payment_capture,
        notifier,
        clock=clock,
        max_retries=settings.PERSIST_MAX_RETRIES,
        backoff_ms=settings.PERSIST_BACKOFF_MS,
        notify_timeout=settings.DELIVERY_TIMEOUT_SECONDS,
    )
    return ServiceContainer(
        scheduler=scheduler,
        match_payments=match_payments,
        payment_capture=payment_capture,
        notifier=notifier,
    )
