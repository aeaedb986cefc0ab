"""
Pytest configuration for craftlocal-checkout tests.
"""
from __future__ import annotations

import hashlib
import hmac
import os
import sys
import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import pytest
import pytest_asyncio

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
if str(package_src) not in sys.path:
    sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("CRAFTLOCAL_ENVIRONMENT", "dev")
os.environ.pop("DATABASE_URL", None)
os.environ.pop("REDIS_URL", None)
os.environ.pop("CRAFTLOCAL_DATABASE_URL", None)
os.environ.pop("CRAFTLOCAL_REDIS_URL", None)

from craftlocal_checkout.config import CheckoutSettings  # noqa: E402
from craftlocal_checkout.connectors.base import PaymentProcessor  # noqa: E402
from craftlocal_checkout.connectors.stripe import StripeConnector  # noqa: E402
from craftlocal_checkout.exceptions import ProcessorError  # noqa: E402
from craftlocal_checkout.models import (  # noqa: E402
    InventoryRecord,
    ListingStatus,
    ProcessorPaymentIntent,
    ProcessorSession,
    SellerAccount,
)
from craftlocal_checkout.pricing import InMemoryPricingStore  # noqa: E402
from craftlocal_checkout.wiring import build_engine, in_memory_stores  # noqa: E402

SIGNING_SECRET = "test-metadata-signing-secret-0123456789abcdef"
WEBHOOK_SECRET = "whsec_test_secret"


class _FakeProcessor(PaymentProcessor):
    """Records processor calls. Replays results for a repeated idempotency key."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET) -> None:
        self.calls: list[tuple[str, Dict[str, Any]]] = []
        self.fail_on: set[str] = set()
        self._results: Dict[str, Any] = {}
        self._counter = 0
        self._verifier = StripeConnector(api_key="sk_test_fake", webhook_secret=webhook_secret)

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def _record(self, method: str, idempotency_key: str, **kwargs: Any) -> Optional[Any]:
        self.calls.append((method, {"idempotency_key": idempotency_key, **kwargs}))
        if method in self.fail_on:
            raise ProcessorError("Payment processor rejected the request", status_code=402, processor_code="card_declined")
        return self._results.get(idempotency_key)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def distinct_keys(self, method: str) -> set[str]:
        return {kwargs["idempotency_key"] for name, kwargs in self.calls if name == method}

    async def create_checkout_session(self, payload, idempotency_key):
        cached = self._record("create_checkout_session", idempotency_key, payload=payload)
        if cached:
            return cached
        session_id = self._next_id("cs_test")
        result = ProcessorSession(session_id=session_id, url=f"https://checkout.test/{session_id}")
        self._results[idempotency_key] = result
        return result

    async def create_payment_intent(
        self,
        amount_cents,
        currency,
        metadata,
        idempotency_key,
        capture_method="manual",
        transfer_data=None,
        application_fee_amount=None,
    ):
        cached = self._record(
            "create_payment_intent",
            idempotency_key,
            amount_cents=amount_cents,
            currency=currency,
            metadata=metadata,
            capture_method=capture_method,
            transfer_data=transfer_data,
            application_fee_amount=application_fee_amount,
        )
        if cached:
            return cached
        pi_id = self._next_id("pi_test")
        result = ProcessorPaymentIntent(
            payment_intent_id=pi_id,
            status="requires_payment_method",
            amount_cents=amount_cents,
            client_secret=f"{pi_id}_secret",
        )
        self._results[idempotency_key] = result
        return result

    async def capture_payment_intent(self, payment_intent_id, idempotency_key):
        cached = self._record("capture_payment_intent", idempotency_key, payment_intent_id=payment_intent_id)
        if cached:
            return cached
        result = ProcessorPaymentIntent(payment_intent_id=payment_intent_id, status="succeeded", amount_cents=0)
        self._results[idempotency_key] = result
        return result

    async def cancel_payment_intent(self, payment_intent_id, idempotency_key):
        self._record("cancel_payment_intent", idempotency_key, payment_intent_id=payment_intent_id)
        return ProcessorPaymentIntent(payment_intent_id=payment_intent_id, status="canceled", amount_cents=0)

    async def create_transfer(self, amount_cents, destination, idempotency_key, transfer_group=None, metadata=None):
        cached = self._record(
            "create_transfer",
            idempotency_key,
            amount_cents=amount_cents,
            destination=destination,
            transfer_group=transfer_group,
        )
        if cached:
            return cached
        transfer_id = self._next_id("tr_test")
        self._results[idempotency_key] = transfer_id
        return transfer_id

    async def create_refund(self, payment_intent_id, idempotency_key, amount_cents=None):
        self._record("create_refund", idempotency_key, payment_intent_id=payment_intent_id)
        return self._next_id("re_test")

    def construct_event(self, payload: bytes, signature_header: str) -> Dict[str, Any]:
        return self._verifier.construct_event(payload, signature_header)


def listing_records() -> list[InventoryRecord]:
    return [
        InventoryRecord("lst_mug", "seller_a", "Stoneware Mug", Decimal("25.00"), available_quantity=5),
        InventoryRecord("lst_bowl", "seller_a", "Serving Bowl", Decimal("40.00")),
        InventoryRecord("lst_scarf", "seller_b", "Wool Scarf", Decimal("35.50"), available_quantity=2),
        InventoryRecord("lst_soap", "seller_b", "Lavender Soap", Decimal("10.99"), available_quantity=20),
        InventoryRecord(
            "lst_draft", "seller_b", "Unfinished Quilt", Decimal("120.00"),
            status=ListingStatus.DRAFT.value,
        ),
        InventoryRecord("lst_candle", "seller_c", "Beeswax Candle", Decimal("100.00"), available_quantity=3),
    ]


@pytest.fixture
def settings() -> CheckoutSettings:
    return CheckoutSettings(
        environment="dev",
        metadata_signing_secret=SIGNING_SECRET,
        stripe_secret_key="sk_test_fake",
        stripe_webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def pricing_store() -> InMemoryPricingStore:
    return InMemoryPricingStore(listing_records())


@pytest.fixture
def processor() -> _FakeProcessor:
    return _FakeProcessor()


@pytest.fixture
def engine(settings, pricing_store, processor):
    stores = in_memory_stores()
    stores.pricing = pricing_store
    return build_engine(settings, stores=stores, processor=processor)


@pytest_asyncio.fixture
async def ready_seller(engine):
    """seller_a has a payout-ready connected account; seller_b does not."""
    await engine.stores.sellers.upsert(
        SellerAccount("seller_a", connect_account_id="acct_a", charges_enabled=True, payouts_enabled=True)
    )
    await engine.stores.sellers.upsert(
        SellerAccount("seller_b", connect_account_id="acct_b", charges_enabled=True, payouts_enabled=False)
    )
    return engine


@pytest.fixture
def sign_webhook():
    """Build a Stripe-Signature header for a payload."""

    def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


@pytest.fixture
def make_event():
    """Build a processor event envelope."""

    def _make(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1", created: Optional[int] = None) -> Dict[str, Any]:
        event: Dict[str, Any] = {"id": event_id, "type": event_type, "data": {"object": obj}}
        if created is not None:
            event["created"] = created
        return event

    return _make
