"""
Notification Delivery Adapter Interface

The core picks a message and an urgency tier; the adapter picks the
transport (push, SMS, email, ...).
"""
import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import httpx

from matchpay.exceptions import NotificationDeliveryError

logger = logging.getLogger(__name__)


@dataclass
class NotificationMessage:
    """Channel-agnostic notification."""
    title: str
    body: str
    match_id: str
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "match_id": self.match_id,
            "kind": self.kind,
            "data": self.data,
        }


class NotificationDelivery(abc.ABC):

    @abc.abstractmethod
    async def send(self, user_id: str, message: NotificationMessage, urgency: str) -> None:
        """Deliver one message. Raises NotificationDeliveryError on failure."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryNotificationDelivery(NotificationDelivery):
    """
    Logs and records every notification.

    Used when no webhook is configured, and in tests.
    """

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_for: Set[str] = set()

    async def send(self, user_id: str, message: NotificationMessage, urgency: str) -> None:
        if user_id in self.fail_for:
            raise NotificationDeliveryError(f"Delivery to {user_id} failed")
        self.sent.append({"user_id": user_id, "urgency": urgency, "message": message})
        logger.info(f"[notify] {user_id} ({urgency}): {message.title}")

    def for_user(self, user_id: str, urgency: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            entry for entry in self.sent
            if entry["user_id"] == user_id and (urgency is None or entry["urgency"] == urgency)
        ]


class WebhookNotificationDelivery(NotificationDelivery):
    """POSTs each notification as JSON to a webhook."""

    def __init__(
        self,
        url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def send(self, user_id: str, message: NotificationMessage, urgency: str) -> None:
        payload = {"user_id": user_id, "urgency": urgency, "message": message.to_dict()}
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationDeliveryError(f"Webhook delivery to {user_id} failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()
