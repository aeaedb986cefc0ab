"""
Stripe connector tests against a mocked HTTP transport.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from urllib.parse import parse_qsl

import httpx
import pytest

from craftlocal_checkout.connectors.stripe import StripeConnector, encode_form
from craftlocal_checkout.exceptions import ProcessorError, WebhookSignatureError

SECRET = "whsec_connector_test"
NOW = 1_770_000_000


def _connector(handler, **kwargs) -> StripeConnector:
    return StripeConnector(
        api_key="sk_test_123",
        webhook_secret=SECRET,
        transport=httpx.MockTransport(handler),
        clock=lambda: NOW,
        **kwargs,
    )


def _sign(payload: bytes, timestamp: int = NOW, secret: str = SECRET) -> str:
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestEncodeForm:
    """Bracketed form encoding."""

    def test_nested_payload(self):
        fields = encode_form({
            "mode": "payment",
            "line_items": [{"price_data": {"unit_amount": 2500}, "quantity": 2}],
            "metadata": {"cart_0": "{}"},
            "customer_email": None,
            "automatic_payment_methods": {"enabled": True},
        })
        assert fields == [
            ("mode", "payment"),
            ("line_items[0][price_data][unit_amount]", "2500"),
            ("line_items[0][quantity]", "2"),
            ("metadata[cart_0]", "{}"),
            ("automatic_payment_methods[enabled]", "true"),
        ]


class TestStripeConnector:
    """Outbound requests."""

    @pytest.mark.asyncio
    async def test_checkout_session_sends_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("Idempotency-Key")
            seen["form"] = dict(parse_qsl(request.content.decode()))
            return httpx.Response(200, json={"id": "cs_123", "url": "https://checkout.stripe.com/c/cs_123"})

        connector = _connector(handler)
        session = await connector.create_checkout_session(
            {"mode": "payment", "line_items": [{"quantity": 1}]},
            idempotency_key="checkout:ci_1",
        )
        await connector.close()

        assert session.session_id == "cs_123"
        assert session.url == "https://checkout.stripe.com/c/cs_123"
        assert seen["path"] == "/v1/checkout/sessions"
        assert seen["key"] == "checkout:ci_1"
        assert seen["form"]["line_items[0][quantity]"] == "1"

    @pytest.mark.asyncio
    async def test_payment_intent_manual_capture(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["form"] = dict(parse_qsl(request.content.decode()))
            return httpx.Response(200, json={
                "id": "pi_1", "status": "requires_payment_method", "amount": 10000, "client_secret": "pi_1_secret",
            })

        connector = _connector(handler)
        intent = await connector.create_payment_intent(
            amount_cents=10000,
            currency="usd",
            metadata={"order_id": "ord_1"},
            idempotency_key="escrow:ord_1",
        )
        await connector.close()

        assert intent.payment_intent_id == "pi_1"
        assert intent.client_secret == "pi_1_secret"
        assert seen["form"]["capture_method"] == "manual"
        assert seen["form"]["metadata[order_id]"] == "ord_1"
        assert "transfer_data[destination]" not in seen["form"]

    @pytest.mark.asyncio
    async def test_transfer_uses_connector_currency(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["form"] = dict(parse_qsl(request.content.decode()))
            return httpx.Response(200, json={"id": "tr_1"})

        connector = _connector(handler, currency="cad")
        transfer_id = await connector.create_transfer(9500, "acct_c", idempotency_key="transfer:ord_1")
        await connector.close()

        assert transfer_id == "tr_1"
        assert seen["form"]["currency"] == "cad"
        assert seen["form"]["destination"] == "acct_c"
        assert "transfer_group" not in seen["form"]

    @pytest.mark.asyncio
    async def test_requests_are_form_encoded(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((
                request.url.path,
                request.headers.get("content-type"),
                request.headers.get("Idempotency-Key"),
                dict(parse_qsl(request.content.decode())),
            ))
            if request.url.path.endswith("/cancel"):
                return httpx.Response(200, json={"id": "pi_1", "status": "canceled", "amount": 10000})
            return httpx.Response(200, json={"id": "re_1"})

        connector = _connector(handler)
        canceled = await connector.cancel_payment_intent("pi_1", idempotency_key="cancel:ord_1")
        refund_id = await connector.create_refund("pi_2", idempotency_key="refund:ord_2")
        await connector.close()

        assert canceled.status == "canceled"
        assert refund_id == "re_1"
        cancel_call, refund_call = seen
        assert cancel_call[0] == "/v1/payment_intents/pi_1/cancel"
        assert cancel_call[2] == "cancel:ord_1"
        assert refund_call[0] == "/v1/refunds"
        assert refund_call[1].startswith("application/x-www-form-urlencoded")
        assert refund_call[3] == {"payment_intent": "pi_2"}

    @pytest.mark.asyncio
    async def test_error_response_maps_to_processor_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json={"error": {"code": "card_declined", "message": "Your card was declined."}})

        connector = _connector(handler)
        with pytest.raises(ProcessorError) as exc_info:
            await connector.capture_payment_intent("pi_1", idempotency_key="capture:ord_1")
        await connector.close()

        err = exc_info.value
        assert err.status_code == 402
        assert err.processor_code == "card_declined"
        assert "declined" not in err.message.lower()

    @pytest.mark.asyncio
    async def test_network_failure_maps_to_processor_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        connector = _connector(handler)
        with pytest.raises(ProcessorError) as exc_info:
            await connector.create_refund("pi_1", idempotency_key="refund:ord_1")
        await connector.close()
        assert exc_info.value.status_code is None


class TestConstructEvent:
    """Webhook signature verification."""

    def _connector(self) -> StripeConnector:
        return _connector(lambda request: httpx.Response(200, json={}))

    def test_valid_signature(self):
        payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed"}).encode()
        event = self._connector().construct_event(payload, _sign(payload))
        assert event["id"] == "evt_1"

    def test_multiple_v1_signatures(self):
        payload = b'{"id": "evt_1"}'
        header = _sign(payload)
        header = header.replace("v1=", "v1=deadbeef,v1=")
        assert self._connector().construct_event(payload, header)["id"] == "evt_1"

    def test_wrong_secret(self):
        payload = b'{"id": "evt_1"}'
        with pytest.raises(WebhookSignatureError):
            self._connector().construct_event(payload, _sign(payload, secret="whsec_other"))

    def test_modified_payload(self):
        payload = b'{"id": "evt_1"}'
        header = _sign(payload)
        with pytest.raises(WebhookSignatureError):
            self._connector().construct_event(b'{"id": "evt_2"}', header)

    def test_stale_timestamp(self):
        payload = b'{"id": "evt_1"}'
        with pytest.raises(WebhookSignatureError):
            self._connector().construct_event(payload, _sign(payload, timestamp=NOW - 301))

    @pytest.mark.parametrize("header", ["", "v1=abc", "t=notanumber,v1=abc", "t=1770000000"])
    def test_malformed_header(self, header):
        with pytest.raises(WebhookSignatureError):
            self._connector().construct_event(b"{}", header)

    def test_missing_secret(self):
        connector = StripeConnector(api_key="sk_test_123", webhook_secret=None)
        with pytest.raises(WebhookSignatureError):
            connector.construct_event(b"{}", "t=1,v1=abc")
