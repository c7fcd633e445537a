import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol

import httpx

from stockkeeper.config import settings
from stockkeeper.exceptions import PaymentProviderError

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300


@dataclass
class PaymentSession:
    id: str
    url: str = ""
    status: str = "open"  # open, complete, expired
    payment_status: str = "unpaid"  # unpaid, paid
    payment_reference: str = ""
    amount_total: Decimal | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @classmethod
    def from_payload(cls, data: dict) -> "PaymentSession":
        amount = data.get("amount_total")
        return cls(
            id=data["id"],
            url=data.get("url") or "",
            status=data.get("status") or "open",
            payment_status=data.get("payment_status") or "unpaid",
            payment_reference=data.get("payment_intent") or data.get("payment_reference") or "",
            amount_total=(Decimal(amount) / 100) if amount is not None else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class RefundReceipt:
    id: str
    status: str
    amount: Decimal | None = None


class PaymentProvider(Protocol):
    def create_session(
        self,
        line_items: list[dict],
        metadata: dict,
        *,
        success_url: str,
        cancel_url: str,
        idempotency_key: str | None = None,
    ) -> PaymentSession:
        ...

    def retrieve_session(self, session_id: str) -> PaymentSession:
        ...

    def refund(self, payment_reference: str, *, amount: Decimal | None = None, idempotency_key: str | None = None) -> RefundReceipt:
        ...


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def build_line_items(lines: list[dict], shipping_cost: Decimal, tax_amount: Decimal, state: str, currency: str) -> list[dict]:
    """Provider line items: one per product plus shipping and tax when non-zero."""
    currency = currency.lower()
    items = [
        {
            "name": line["name"],
            "unit_amount": to_minor_units(line["unit_price"]),
            "quantity": line["quantity"],
            "currency": currency,
        }
        for line in lines
    ]
    if shipping_cost > 0:
        items.append({"name": "Shipping", "description": f"Shipping to {state}",
                      "unit_amount": to_minor_units(shipping_cost), "quantity": 1, "currency": currency})
    if tax_amount > 0:
        items.append({"name": "Tax", "description": f"Sales tax for {state}",
                      "unit_amount": to_minor_units(tax_amount), "quantity": 1, "currency": currency})
    return items


class HttpPaymentProvider:
    """Hosted-checkout provider over its REST API."""

    def __init__(
        self,
        base_url: str = settings.PAYMENT_API_BASE_URL,
        api_key: str = settings.PAYMENT_API_KEY,
        timeout: float = settings.PAYMENT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
            transport=self.transport,
        )

    def _request(self, method: str, path: str, *, json_body: dict | None = None, idempotency_key: str | None = None) -> dict:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        try:
            with self._client() as client:
                resp = client.request(method, path, json=json_body, headers=headers)
        except httpx.HTTPError as e:
            logger.error("Payment provider %s %s failed: %s", method, path, e)
            raise PaymentProviderError(f"Payment provider unreachable: {e}") from e

        if not resp.is_success:
            logger.error("Payment provider %s %s returned %d: %s", method, path, resp.status_code, resp.text)
            raise PaymentProviderError(f"Payment provider error ({resp.status_code})", status_code=resp.status_code)
        return resp.json()

    def create_session(self, line_items, metadata, *, success_url, cancel_url, idempotency_key=None) -> PaymentSession:
        body = {
            "mode": "payment",
            "line_items": line_items,
            "metadata": metadata,
            "client_reference_id": metadata.get("user_id", ""),
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        return PaymentSession.from_payload(
            self._request("POST", "/checkout/sessions", json_body=body, idempotency_key=idempotency_key)
        )

    def retrieve_session(self, session_id: str) -> PaymentSession:
        return PaymentSession.from_payload(self._request("GET", f"/checkout/sessions/{session_id}"))

    def refund(self, payment_reference, *, amount=None, idempotency_key=None) -> RefundReceipt:
        body = {"payment_intent": payment_reference}
        if amount is not None:
            body["amount"] = to_minor_units(amount)
        data = self._request("POST", "/refunds", json_body=body, idempotency_key=idempotency_key)
        refunded = data.get("amount")
        return RefundReceipt(
            id=data["id"],
            status=data.get("status", "pending"),
            amount=(Decimal(refunded) / 100) if refunded is not None else None,
        )


def sign_payload(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def verify_webhook(
    payload: bytes,
    signature_header: str,
    secret: str = settings.PAYMENT_WEBHOOK_SECRET,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
) -> dict:
    """Check the ``t=...,v1=...`` signature header and return the decoded event.

    Raises ValueError when the header is malformed, stale or does not match.
    """
    if not secret:
        raise ValueError("Webhook secret is not configured")
    parts = dict(
        item.split("=", 1) for item in (signature_header or "").split(",") if "=" in item
    )
    if "t" not in parts or "v1" not in parts:
        raise ValueError("Malformed signature header")
    try:
        ts = int(parts["t"])
    except ValueError as e:
        raise ValueError("Malformed signature timestamp") from e
    if abs(time.time() - ts) > tolerance:
        raise ValueError("Signature timestamp outside tolerance")

    expected = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, parts["v1"]):
        raise ValueError("Signature mismatch")
    return json.loads(payload)


_default_provider: PaymentProvider | None = None


def get_payment_provider() -> PaymentProvider:
    global _default_provider
    if _default_provider is None:
        _default_provider = HttpPaymentProvider()
    return _default_provider
