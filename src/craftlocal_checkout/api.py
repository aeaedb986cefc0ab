"""HTTP surface: checkout and processor webhook endpoints."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from craftlocal_checkout.config import load_settings
from craftlocal_checkout.connectors.base import PaymentProcessor
from craftlocal_checkout.exceptions import CheckoutException
from craftlocal_checkout.logging_config import clear_context, generate_correlation_id, set_correlation_id
from craftlocal_checkout.models import CartLineRequest, FulfillmentMethod
from craftlocal_checkout.orchestrator import CheckoutRequest, CheckoutService
from craftlocal_checkout.webhooks import WebhookReconciler

logger = logging.getLogger("craftlocal.api")

router = APIRouter(tags=["checkout"])


class CheckoutDeps:
    """Dependencies for the checkout endpoints."""

    def __init__(
        self,
        service: CheckoutService,
        reconciler: WebhookReconciler,
        processor: PaymentProcessor,
    ):
        self.service = service
        self.reconciler = reconciler
        self.processor = processor


def get_deps() -> CheckoutDeps:
    """Dependency injection placeholder - must be overridden."""
    raise NotImplementedError("Must be overridden")


# =============================================================================
# Request / response models
# =============================================================================

class CartLineModel(BaseModel):
    listing_id: str = Field(..., min_length=1)
    quantity: int
    # Advisory only; the server re-prices every line
    price: Optional[Decimal] = None


class CheckoutRequestModel(BaseModel):
    cart: List[CartLineModel]
    fulfillment_method: FulfillmentMethod = FulfillmentMethod.LOCAL_PICKUP
    buyer_id: Optional[str] = None
    customer_email: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None

    def to_request(self) -> CheckoutRequest:
        return CheckoutRequest(
            cart=[CartLineRequest(listing_id=l.listing_id, quantity=l.quantity, price=l.price) for l in self.cart],
            fulfillment_method=self.fulfillment_method,
            buyer_id=self.buyer_id,
            customer_email=self.customer_email,
            shipping_address=self.shipping_address,
            notes=self.notes,
        )


class CheckoutResponse(BaseModel):
    intent_id: str
    session_id: str
    checkout_url: Optional[str] = None
    subtotal_cents: int
    platform_fee_cents: int
    total_cents: int


class EscrowCheckoutResponse(BaseModel):
    order_id: str
    payment_intent_id: str
    client_secret: Optional[str] = None
    amount_cents: int
    platform_fee_cents: int
    seller_amount_cents: int
    release_due_hint: str


class EscrowCancelRequestModel(BaseModel):
    reason: str = Field("canceled", min_length=1, max_length=100)


class EscrowCancelResponse(BaseModel):
    order_id: str
    state: str
    close_reason: Optional[str] = None


class WebhookResponse(BaseModel):
    received: bool = True
    duplicate: bool = False


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequestModel,
    deps: CheckoutDeps = Depends(get_deps),
):
    """Start a standard multi-seller checkout and return the hosted checkout URL."""
    set_correlation_id(generate_correlation_id())
    try:
        result = await deps.service.create_checkout(body.to_request())
    finally:
        clear_context()
    return CheckoutResponse(
        intent_id=result.intent.intent_id,
        session_id=result.session.session_id,
        checkout_url=result.checkout_url,
        subtotal_cents=result.intent.subtotal_cents,
        platform_fee_cents=result.intent.platform_fee,
        total_cents=result.intent.total,
    )


@router.post("/checkout/escrow", response_model=EscrowCheckoutResponse)
async def create_escrow_checkout(
    body: CheckoutRequestModel,
    deps: CheckoutDeps = Depends(get_deps),
):
    """Start a single-seller escrow checkout (authorize now, capture after the hold)."""
    set_correlation_id(generate_correlation_id())
    try:
        result = await deps.service.create_escrow_checkout(body.to_request())
    finally:
        clear_context()
    return EscrowCheckoutResponse(
        order_id=result.order_id,
        payment_intent_id=result.payment_intent.payment_intent_id,
        client_secret=result.payment_intent.client_secret,
        amount_cents=result.intent.total,
        platform_fee_cents=result.escrow.platform_fee,
        seller_amount_cents=result.escrow.seller_amount,
        release_due_hint=result.release_due_hint.isoformat(),
    )


@router.post("/checkout/escrow/{order_id}/cancel", response_model=EscrowCancelResponse)
async def cancel_escrow(
    order_id: str,
    body: Optional[EscrowCancelRequestModel] = None,
    deps: CheckoutDeps = Depends(get_deps),
):
    """Void or refund an escrow order that has not been released yet."""
    set_correlation_id(generate_correlation_id())
    reason = body.reason if body else "canceled"
    try:
        record = await deps.service.cancel_escrow(order_id, reason=reason)
    finally:
        clear_context()
    return EscrowCancelResponse(order_id=record.order_id, state=record.state.value, close_reason=record.close_reason)


@router.post("/webhooks/stripe", response_model=WebhookResponse, status_code=status.HTTP_200_OK)
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    deps: CheckoutDeps = Depends(get_deps),
):
    """Verify and reconcile an inbound processor event.

    Returns:
        200 on success or duplicate delivery
        400 on signature failure or tampered metadata
        409 while the same event is being handled elsewhere
        5xx otherwise, so the processor retries
    """
    payload = await request.body()
    event = deps.processor.construct_event(payload, stripe_signature or "")
    logger.info("Stripe webhook received: %s (id=%s)", event.get("type"), event.get("id"))
    try:
        result = await deps.reconciler.handle(event)
    finally:
        clear_context()
    return WebhookResponse(received=True, duplicate=result.duplicate)


async def checkout_exception_handler(request: Request, exc: CheckoutException) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s on %s: %s", exc.error_code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the engine and its settlement schedule; stop both on shutdown."""
    from craftlocal_checkout.wiring import start_engine, stop_engine

    engine, scheduler = await start_engine(load_settings())
    app.state.engine = engine
    app.state.scheduler = scheduler
    app.dependency_overrides[get_deps] = lambda: engine.deps
    try:
        yield
    finally:
        await stop_engine(engine, scheduler)


def create_app(deps: Optional[CheckoutDeps] = None) -> FastAPI:
    """Build the FastAPI application.

    Without `deps` the app builds its own engine from the environment on
    startup and runs the settlement schedule for its lifetime.
    """
    app = FastAPI(title="Craft Local Checkout", lifespan=None if deps is not None else lifespan)
    app.include_router(router)
    app.add_exception_handler(CheckoutException, checkout_exception_handler)
    if deps is not None:
        app.dependency_overrides[get_deps] = lambda: deps
    return app
