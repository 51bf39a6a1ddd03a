"""
Thin Xendit REST API client (no SDK dependency).
Uses HTTP Basic auth with the secret API key as username.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from artmarket.config import Settings

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """Gateway call failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class RefundRecord:
    id: str
    amount: float
    status: str     # gateway-defined: PENDING | SUCCEEDED | FAILED


class PaymentGateway(Protocol):
    async def create_refund(
        self,
        payment_reference: str,
        amount: float,
        reason: str,
        idempotency_key: str,
    ) -> RefundRecord: ...

    async def cancel_payment_link(self, reference: str) -> None: ...


def refund_idempotency_key(order_id: str) -> str:
    """Stable key so a retried cancellation can never refund an order twice."""
    return f"order-cancel-refund-{order_id}"


class XenditGateway:
    """``PaymentGateway`` backed by the Xendit invoices/refunds API."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base = settings.xendit_api_base.rstrip("/")
        self._secret_key = settings.xendit_secret_key or ""
        self._timeout = httpx.Timeout(settings.payment_timeout_seconds)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base,
            auth=httpx.BasicAuth(self._secret_key, ""),
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _post(
        self,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        if not self._secret_key:
            raise PaymentGatewayError("Xendit secret key is not configured")
        try:
            async with self._client() as client:
                resp = await client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(f"Xendit request {path} failed: {exc}") from exc

        if not resp.is_success:
            logger.error(
                "Xendit API error path=%s status=%d body=%s",
                path, resp.status_code, resp.text[:300],
            )
            raise PaymentGatewayError(
                f"Xendit returned {resp.status_code} for {path}",
                status_code=resp.status_code,
            )
        return resp.json() if resp.content else {}

    async def create_refund(
        self,
        payment_reference: str,
        amount: float,
        reason: str,
        idempotency_key: str,
    ) -> RefundRecord:
        """Refund a paid invoice.  Xendit dedupes on the Idempotency-key header."""
        payload = {
            "invoice_id": payment_reference,
            "amount": amount,
            "reason": "CANCELLATION",
            "metadata": {"note": reason},
        }
        data = await self._post(
            "/refunds",
            payload=payload,
            headers={"Idempotency-key": idempotency_key},
        )
        try:
            refund = RefundRecord(
                id=str(data["id"]),
                amount=float(data.get("amount", amount)),
                status=str(data.get("status", "PENDING")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PaymentGatewayError(f"Malformed refund response: {data!r}") from exc

        logger.info(
            "Refund created: id=%s reference=%s amount=%s status=%s",
            refund.id, payment_reference, refund.amount, refund.status,
        )
        return refund

    async def cancel_payment_link(self, reference: str) -> None:
        """Expire an unpaid invoice so it can no longer be paid."""
        await self._post(f"/invoices/{reference}/expire!")
        logger.info("Payment link expired: reference=%s", reference)
