"""
Payment Capture Adapter Interface

The core never talks to a card/UPI processor directly. It computes what is
owed to whom and calls one of these adapters to move the money.
"""
import abc
import logging
import uuid
from typing import Any, Dict, List, Optional, Set

import httpx

from matchpay.exceptions import PaymentCaptureError

logger = logging.getLogger(__name__)


class PaymentCapture(abc.ABC):
    """
    Abstract base class for payment capture adapters.

    Every method returns the processor's transaction reference or raises
    PaymentCaptureError. Refunds and top-ups carry an idempotency key that
    stays the same across retries of the same ledger row, so a retry after
    a lost response is not applied twice.
    """

    @abc.abstractmethod
    async def charge(self, user_id: str, amount: int, *, match_id: str, method: str) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    async def refund(
        self,
        user_id: str,
        amount: int,
        *,
        match_id: str,
        transaction_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        """Refund by original transaction reference, or by user and amount."""
        raise NotImplementedError

    @abc.abstractmethod
    async def request_top_up(
        self,
        user_id: str,
        amount: int,
        *,
        match_id: str,
        idempotency_key: Optional[str] = None
    ) -> str:
        """Ask the participant for an additional payment."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InMemoryPaymentCapture(PaymentCapture):
    """
    Process-local capture used in development and tests.

    Records every call. Users listed in fail_charges_for / fail_refunds_for
    get a PaymentCaptureError instead.
    """

    def __init__(self):
        self.charges: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.top_ups: List[Dict[str, Any]] = []
        self.fail_charges_for: Set[str] = set()
        self.fail_refunds_for: Set[str] = set()

    @staticmethod
    def _ref(prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"

    async def charge(self, user_id: str, amount: int, *, match_id: str, method: str) -> str:
        if user_id in self.fail_charges_for:
            raise PaymentCaptureError(f"Charge declined for {user_id}")
        ref = self._ref("ch")
        self.charges.append({
            "user_id": user_id, "amount": amount, "match_id": match_id,
            "method": method, "transaction_ref": ref,
        })
        logger.info(f"[capture] charged {user_id} {amount} for match {match_id} ({ref})")
        return ref

    async def refund(
        self,
        user_id: str,
        amount: int,
        *,
        match_id: str,
        transaction_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        if user_id in self.fail_refunds_for:
            raise PaymentCaptureError(f"Refund failed for {user_id}")
        ref = self._ref("rf")
        self.refunds.append({
            "user_id": user_id, "amount": amount, "match_id": match_id,
            "charge_ref": transaction_ref, "transaction_ref": ref,
            "idempotency_key": idempotency_key,
        })
        logger.info(f"[capture] refunded {user_id} {amount} for match {match_id} ({ref})")
        return ref

    async def request_top_up(
        self,
        user_id: str,
        amount: int,
        *,
        match_id: str,
        idempotency_key: Optional[str] = None
    ) -> str:
        ref = self._ref("tu")
        self.top_ups.append({
            "user_id": user_id, "amount": amount, "match_id": match_id, "transaction_ref": ref,
            "idempotency_key": idempotency_key,
        })
        logger.info(f"[capture] top-up of {amount} requested from {user_id} for match {match_id}")
        return ref

    def refunded_total(self, user_id: str) -> int:
        return sum(r["amount"] for r in self.refunds if r["user_id"] == user_id)


class HttpPaymentCapture(PaymentCapture):
    """
    Payment capture over a JSON HTTP API.

    POST {base_url}/charges, /refunds, /top-ups; each responds with
    {"transaction_ref": "..."}.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def _post(
        self,
        path: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None
    ) -> str:
        try:
            response = await self._client.post(
                path,
                json=payload,
                headers={"Idempotency-Key": idempotency_key or uuid.uuid4().hex},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Payment capture {path} failed: {e}")
            raise PaymentCaptureError(f"Payment capture {path} failed: {e}") from e
        except ValueError as e:
            raise PaymentCaptureError(f"Payment capture {path} returned invalid JSON") from e

        ref = data.get("transaction_ref")
        if not ref:
            raise PaymentCaptureError(f"Payment capture {path} returned no transaction_ref")
        return ref

    async def charge(self, user_id: str, amount: int, *, match_id: str, method: str) -> str:
        return await self._post("/charges", {
            "user_id": user_id, "amount": amount, "match_id": match_id, "method": method,
        })

    async def refund(
        self,
        user_id: str,
        amount: int,
        *,
        match_id: str,
        transaction_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> str:
        return await self._post("/refunds", {
            "user_id": user_id, "amount": amount, "match_id": match_id,
            "transaction_ref": transaction_ref,
        }, idempotency_key)

    async def request_top_up(
        self,
        user_id: str,
        amount: int,
        *,
        match_id: str,
        idempotency_key: Optional[str] = None
    ) -> str:
        return await self._post("/top-ups", {
            "user_id": user_id, "amount": amount, "match_id": match_id,
        }, idempotency_key)

    async def close(self) -> None:
        await self._client.aclose()
