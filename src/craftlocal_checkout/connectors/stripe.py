"""Stripe payment processor connector."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from craftlocal_checkout.connectors.base import PaymentProcessor
from craftlocal_checkout.exceptions import ProcessorError, WebhookSignatureError
from craftlocal_checkout.models import ProcessorPaymentIntent, ProcessorSession

logger = logging.getLogger(__name__)

DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300


def encode_form(payload: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten nested dicts and lists into Stripe's bracketed form fields.

    {"line_items": [{"quantity": 2}]} → [("line_items[0][quantity]", "2")]
    """
    fields: List[Tuple[str, str]] = []
    for key, value in payload.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            fields.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_name = f"{name}[{index}]"
                if isinstance(item, dict):
                    fields.extend(encode_form(item, item_name))
                else:
                    fields.append((item_name, _form_value(item)))
        else:
            fields.append((name, _form_value(value)))
    return fields


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StripeConnector(PaymentProcessor):
    """Stripe payment connector."""

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        api_base: str = "https://api.stripe.com/v1",
        timeout: float = 30.0,
        webhook_tolerance: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS,
        currency: str = "usd",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.webhook_tolerance = webhook_tolerance
        self.currency = currency
        self._clock = clock
        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            auth=(api_key, ""),
            timeout=timeout,
            transport=transport,
        )

    async def _post(
        self,
        path: str,
        payload: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        try:
            response = await self._client.post(path, data=dict(encode_form(payload)), headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Stripe request to {path} failed: {type(e).__name__}")
            raise ProcessorError("Payment processor unreachable") from e

        if response.status_code >= 400:
            processor_code = None
            try:
                processor_code = response.json().get("error", {}).get("code")
            except ValueError:
                pass
            logger.error(
                f"Stripe request to {path} returned {response.status_code}"
                + (f" ({processor_code})" if processor_code else "")
            )
            raise ProcessorError(
                "Payment processor rejected the request",
                status_code=response.status_code,
                processor_code=processor_code,
            )
        return response.json()

    @staticmethod
    def _to_payment_intent(data: Dict[str, Any]) -> ProcessorPaymentIntent:
        return ProcessorPaymentIntent(
            payment_intent_id=data["id"],
            status=data.get("status", ""),
            amount_cents=int(data.get("amount", 0)),
            client_secret=data.get("client_secret"),
            raw=data,
        )

    async def create_checkout_session(
        self,
        payload: Dict[str, Any],
        idempotency_key: str,
    ) -> ProcessorSession:
        """Create Stripe Checkout session."""
        data = await self._post("/checkout/sessions", payload, idempotency_key)
        return ProcessorSession(
            session_id=data["id"],
            url=data.get("url"),
            payment_intent_id=data.get("payment_intent"),
            raw=data,
        )

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        capture_method: str = "manual",
        transfer_data: Optional[Dict[str, Any]] = None,
        application_fee_amount: Optional[int] = None,
    ) -> ProcessorPaymentIntent:
        payload: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "capture_method": capture_method,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if transfer_data:
            payload["transfer_data"] = transfer_data
        if application_fee_amount is not None:
            payload["application_fee_amount"] = application_fee_amount
        data = await self._post("/payment_intents", payload, idempotency_key)
        return self._to_payment_intent(data)

    async def capture_payment_intent(
        self,
        payment_intent_id: str,
        idempotency_key: str,
    ) -> ProcessorPaymentIntent:
        data = await self._post(f"/payment_intents/{payment_intent_id}/capture", {}, idempotency_key)
        return self._to_payment_intent(data)

    async def cancel_payment_intent(
        self,
        payment_intent_id: str,
        idempotency_key: str,
    ) -> ProcessorPaymentIntent:
        data = await self._post(f"/payment_intents/{payment_intent_id}/cancel", {}, idempotency_key)
        return self._to_payment_intent(data)

    async def create_transfer(
        self,
        amount_cents: int,
        destination: str,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        payload: Dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.currency,
            "destination": destination,
            "transfer_group": transfer_group,
            "metadata": metadata,
        }
        data = await self._post("/transfers", payload, idempotency_key)
        return data["id"]

    async def create_refund(
        self,
        payment_intent_id: str,
        idempotency_key: str,
        amount_cents: Optional[int] = None,
    ) -> str:
        payload: Dict[str, Any] = {"payment_intent": payment_intent_id, "amount": amount_cents}
        data = await self._post("/refunds", payload, idempotency_key)
        return data["id"]

    def construct_event(self, payload: bytes, signature_header: str) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and parse the event.

        Header format: "t=timestamp,v1=signature[,v1=...]"
        """
        if not self.webhook_secret:
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature_header:
            raise WebhookSignatureError("Missing Stripe-Signature header")

        timestamp = ""
        signatures: list[str] = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)

        try:
            signed_at = int(timestamp)
        except ValueError as e:
            raise WebhookSignatureError("Malformed Stripe-Signature header") from e
        if not signatures:
            raise WebhookSignatureError("No v1 signature in Stripe-Signature header")

        signed_payload = f"{timestamp}.".encode() + payload
        expected = hmac.new(self.webhook_secret.encode(), signed_payload, hashlib.sha256).hexdigest()
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise WebhookSignatureError("Webhook signature mismatch")

        if abs(self._clock() - signed_at) > self.webhook_tolerance:
            raise WebhookSignatureError("Webhook timestamp outside tolerance")

        try:
            return json.loads(payload)
        except ValueError as e:
            raise WebhookSignatureError("Webhook payload is not valid JSON") from e

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()
