"""
Outbound collaborators: payment capture and notification delivery.
"""
import logging

from matchpay.config.feature_flags import feature_flags
from matchpay.config.settings import settings
from matchpay.integrations.notification_delivery import (
    InMemoryNotificationDelivery,
    NotificationDelivery,
    NotificationMessage,
    WebhookNotificationDelivery,
)
from matchpay.integrations.payment_capture import (
    HttpPaymentCapture,
    InMemoryPaymentCapture,
    PaymentCapture,
)

logger = logging.getLogger(__name__)


def build_payment_capture() -> PaymentCapture:
    if feature_flags.FEATURE_HTTP_PAYMENT_CAPTURE:
        if not settings.PAYMENT_CAPTURE_URL:
            raise ValueError("FEATURE_HTTP_PAYMENT_CAPTURE is on but PAYMENT_CAPTURE_URL is not set")
        return HttpPaymentCapture(
            settings.PAYMENT_CAPTURE_URL,
            api_key=settings.PAYMENT_CAPTURE_API_KEY,
            timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
    logger.warning("Using in-memory payment capture (no money is moved)")
    return InMemoryPaymentCapture()


def build_notification_delivery() -> NotificationDelivery:
    if feature_flags.FEATURE_WEBHOOK_NOTIFICATIONS:
        if not settings.NOTIFICATION_WEBHOOK_URL:
            raise ValueError("FEATURE_WEBHOOK_NOTIFICATIONS is on but NOTIFICATION_WEBHOOK_URL is not set")
        return WebhookNotificationDelivery(
            settings.NOTIFICATION_WEBHOOK_URL,
            timeout=settings.COLLABORATOR_TIMEOUT_SECONDS,
        )
    return InMemoryNotificationDelivery()


__all__ = [
    "PaymentCapture",
    "InMemoryPaymentCapture",
    "HttpPaymentCapture",
    "NotificationDelivery",
    "NotificationMessage",
    "InMemoryNotificationDelivery",
    "WebhookNotificationDelivery",
    "build_payment_capture",
    "build_notification_delivery",
]
