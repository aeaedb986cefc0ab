"""
Webhook reconciliation: turns processor events into orders, escrow
transitions and reminders.

Delivery is at-least-once. Each event id is processed under a short shared
lock and marked processed only after its handler succeeds; a failed handler
leaves the event unmarked so the processor's retry runs it again. Handlers
are themselves idempotent (orders are unique per processor reference and
seller, escrow writes are compare-and-swap, reminders are unique per order).

Amounts always come from the signed checkout metadata, never from the
amounts echoed back in the event.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from craftlocal_checkout.connectors.base import PaymentProcessor
from craftlocal_checkout.escrow import EscrowLedger
from craftlocal_checkout.exceptions import EventInProgressError, StateConflictError
from craftlocal_checkout.intent_builder import CheckoutIntentBuilder, CheckoutIntentStore
from craftlocal_checkout.logging_config import set_checkout_context, set_correlation_id
from craftlocal_checkout.models import (
    CheckoutMode,
    FulfillmentMethod,
    Order,
    PaymentStatus,
    SellerAccount,
    utcnow,
)
from craftlocal_checkout.orders import OrderStore, generate_order_id
from craftlocal_checkout.pricing import CanonicalPricingStore
from craftlocal_checkout.reminders import ReminderScheduler
from craftlocal_checkout.sellers import SellerAccountStore
from craftlocal_checkout.state import RedisStateStore

logger = logging.getLogger("craftlocal.webhooks")

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_AUTHORIZED = "payment_intent.amount_capturable_updated"
PAYMENT_FAILED = "payment_intent.payment_failed"
PAYMENT_CANCELED = "payment_intent.canceled"
DISPUTE_CREATED = "charge.dispute.created"
ACCOUNT_UPDATED = "account.updated"

PAID_SESSION_STATUSES = frozenset({"paid", "no_payment_required"})


@dataclass
class ReconcileResult:
    """Outcome of handling one webhook event."""

    event_id: str
    event_type: str
    duplicate: bool = False
    handled: bool = True
    orders: list[Order] = field(default_factory=list)


def allocate_fee(fee_cents: int, subtotals: list[int]) -> list[int]:
    """Split a cart-level fee across groups in proportion to their subtotals.

    Largest remainder, so the shares always sum to `fee_cents`.
    """
    total = sum(subtotals)
    if not subtotals or total <= 0:
        return [fee_cents] + [0] * (len(subtotals) - 1) if subtotals else []
    shares = [fee_cents * s // total for s in subtotals]
    remainders = sorted(
        range(len(subtotals)),
        key=lambda i: (fee_cents * subtotals[i]) % total,
        reverse=True,
    )
    for i in remainders[: fee_cents - sum(shares)]:
        shares[i] += 1
    return shares


class WebhookReconciler:
    """Applies verified processor events to local state."""

    def __init__(
        self,
        state: RedisStateStore,
        intent_builder: CheckoutIntentBuilder,
        intent_store: CheckoutIntentStore,
        order_store: OrderStore,
        pricing_store: CanonicalPricingStore,
        seller_store: SellerAccountStore,
        ledger: EscrowLedger,
        reminders: ReminderScheduler,
        processor: Optional[PaymentProcessor] = None,
        event_ttl_seconds: int = 24 * 60 * 60,
        lock_ttl_seconds: int = 30,
    ):
        self.state = state
        self.intent_builder = intent_builder
        self.intent_store = intent_store
        self.order_store = order_store
        self.pricing_store = pricing_store
        self.seller_store = seller_store
        self.ledger = ledger
        self.reminders = reminders
        self.processor = processor
        self.event_ttl_seconds = event_ttl_seconds
        self.lock_ttl_seconds = lock_ttl_seconds
        self._handlers: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[list[Order]]]] = {
            CHECKOUT_COMPLETED: self._on_checkout_completed,
            PAYMENT_AUTHORIZED: self._on_payment_authorized,
            PAYMENT_FAILED: self._on_payment_failed,
            PAYMENT_CANCELED: self._on_payment_failed,
            DISPUTE_CREATED: self._on_dispute_created,
            ACCOUNT_UPDATED: self._on_account_updated,
        }

    async def handle(self, event: Dict[str, Any]) -> ReconcileResult:
        """
        Handle a verified processor event at most once per event id.

        Raises:
            EventInProgressError: the same event is being handled elsewhere
            MetadataIntegrityError: signed checkout metadata was tampered with
            ProcessorError: a follow-up processor call failed; the event
                stays unprocessed so a redelivery retries it
        """
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        if event_id:
            set_correlation_id(event_id)

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Unhandled processor event type: %s", event_type)
            return ReconcileResult(event_id=event_id, event_type=event_type, handled=False)

        if not event_id:
            logger.warning("Processor event %s has no id; processing without dedupe", event_type)
            return ReconcileResult(event_id="", event_type=event_type, orders=await self._dispatch(handler, event))

        processed_key = f"processed:{event_id}"
        lock_key = f"lock:{event_id}"

        if await self.state.exists(processed_key):
            logger.info("Duplicate processor event %s (%s)", event_id, event_type)
            return ReconcileResult(event_id=event_id, event_type=event_type, duplicate=True)

        if not await self.state.set_if_absent(lock_key, "1", ttl=self.lock_ttl_seconds):
            raise EventInProgressError(event_id)

        try:
            # Re-check under lock
            if await self.state.exists(processed_key):
                return ReconcileResult(event_id=event_id, event_type=event_type, duplicate=True)
            orders = await self._dispatch(handler, event)
            await self.state.set(processed_key, event_type, ttl=self.event_ttl_seconds)
        finally:
            await self.state.delete(lock_key)

        logger.info("Processor event %s (%s) reconciled: %d order(s)", event_id, event_type, len(orders))
        return ReconcileResult(event_id=event_id, event_type=event_type, orders=orders)

    async def _dispatch(self, handler, event: Dict[str, Any]) -> list[Order]:
        obj = (event.get("data") or {}).get("object") or {}
        return await handler(event, obj)

    @staticmethod
    def _event_time(event: Dict[str, Any]) -> datetime:
        created = event.get("created")
        if isinstance(created, (int, float)):
            return datetime.fromtimestamp(created, tz=timezone.utc)
        return utcnow()

    async def _finalize_order(self, order: Order, blob_lines: list[Dict[str, Any]]) -> Order:
        stored, created = await self.order_store.upsert(order)
        if created:
            for line in blob_lines:
                remaining = await self.pricing_store.decrement_inventory(line["listing_id"], int(line["quantity"]))
                if remaining == 0:
                    logger.info("Listing %s is now out of stock", line["listing_id"])
        await self.reminders.schedule(stored)
        return stored

    # ------------------------------------------------------------------
    # Standard checkout
    # ------------------------------------------------------------------

    async def _on_checkout_completed(self, event: Dict[str, Any], session: Dict[str, Any]) -> list[Order]:
        session_id = session.get("id", "")
        if session.get("payment_status") not in PAID_SESSION_STATUSES:
            logger.info("Checkout session %s completed without payment (%s)", session_id, session.get("payment_status"))
            return []

        record = await self.intent_store.get_by_session(session_id)
        if record is not None:
            payload = self.intent_builder.decode_record(record)
        else:
            logger.warning("No stored intent for session %s; using signed event metadata", session_id)
            payload = self.intent_builder.from_processor_metadata(session.get("metadata") or {})

        intent_id = payload.get("intent_id")
        if intent_id:
            set_checkout_context(intent_id)

        groups = payload.get("groups") or []
        fee_shares = allocate_fee(int(payload["platform_fee"]), [int(g["subtotal"]) for g in groups])
        fulfillment = FulfillmentMethod(payload["fulfillment_method"])
        escrow_mode = payload.get("mode") == CheckoutMode.ESCROW.value
        customer_email = payload.get("customer_email") or (session.get("customer_details") or {}).get("email")

        orders: list[Order] = []
        for group, fee_share in zip(groups, fee_shares):
            lines = [l for l in payload["lines"] if l["seller_id"] == group["seller_id"]]
            subtotal = int(group["subtotal"])
            order = Order(
                order_id=generate_order_id(),
                processor_ref=session_id,
                buyer_id=payload.get("buyer_id"),
                seller_id=group["seller_id"],
                lines=[dict(l) for l in lines],
                subtotal_cents=subtotal,
                platform_fee_cents=int(group["fee_share"]) if escrow_mode else fee_share,
                total_cents=subtotal if escrow_mode else subtotal + fee_share,
                fulfillment_method=fulfillment,
                payment_status=PaymentStatus.COMPLETED,
                shipping_address=payload.get("shipping_address"),
                notes=payload.get("notes") or None,
                customer_email=customer_email,
                intent_id=intent_id,
            )
            stored = await self._finalize_order(order, lines)
            orders.append(stored)

            destination = group.get("destination")
            if self.processor is not None and destination and int(group["payout"]) > 0:
                await self.processor.create_transfer(
                    amount_cents=int(group["payout"]),
                    destination=destination,
                    idempotency_key=f"transfer:{stored.order_id}",
                    transfer_group=f"checkout_{intent_id}",
                    metadata={"order_id": stored.order_id, "seller_id": stored.seller_id},
                )
        return orders

    # ------------------------------------------------------------------
    # Escrow checkout
    # ------------------------------------------------------------------

    async def _on_payment_authorized(self, event: Dict[str, Any], intent: Dict[str, Any]) -> list[Order]:
        payment_intent_id = intent.get("id", "")
        record = await self.ledger.find_by_payment_intent(payment_intent_id)
        if record is None:
            logger.warning("No escrow record for payment intent %s", payment_intent_id)
            return []

        try:
            record = await self.ledger.authorize(record.order_id, self._event_time(event))
        except StateConflictError as e:
            logger.warning("Escrow authorization for %s not applied: %s", record.order_id, e.message)
            return []

        payload = self.intent_builder.from_processor_metadata(intent.get("metadata") or {})
        lines = [dict(l) for l in payload.get("lines") or []]
        subtotal = int(payload["subtotal"])
        order = Order(
            order_id=record.order_id,
            processor_ref=payment_intent_id,
            buyer_id=record.buyer_id,
            seller_id=record.seller_id,
            lines=lines,
            subtotal_cents=subtotal,
            platform_fee_cents=record.platform_fee,
            total_cents=subtotal,
            fulfillment_method=FulfillmentMethod(payload["fulfillment_method"]),
            payment_status=PaymentStatus.AUTHORIZED,
            shipping_address=payload.get("shipping_address"),
            notes=payload.get("notes") or None,
            customer_email=payload.get("customer_email") or intent.get("receipt_email"),
            intent_id=payload.get("intent_id"),
        )
        return [await self._finalize_order(order, lines)]

    async def _on_payment_failed(self, event: Dict[str, Any], intent: Dict[str, Any]) -> list[Order]:
        payment_intent_id = intent.get("id", "")
        record = await self.ledger.find_by_payment_intent(payment_intent_id)
        if record is not None:
            try:
                await self.ledger.cancel(record.order_id, reason=event.get("type", "payment_failed"))
            except StateConflictError as e:
                logger.warning("Escrow cancel for %s not applied: %s", record.order_id, e.message)
        updated = await self.order_store.update_payment_status(payment_intent_id, PaymentStatus.FAILED)
        if updated:
            logger.info("Marked %d order(s) failed for payment intent %s", updated, payment_intent_id)
        return await self.order_store.list_by_processor_ref(payment_intent_id)

    async def _on_dispute_created(self, event: Dict[str, Any], dispute: Dict[str, Any]) -> list[Order]:
        payment_intent_id = dispute.get("payment_intent") or ""
        record = await self.ledger.find_by_payment_intent(payment_intent_id)
        if record is None:
            logger.warning("Dispute %s has no escrow record (payment intent %s)", dispute.get("id"), payment_intent_id)
            return []
        try:
            await self.ledger.record_dispute(record.order_id, reason=dispute.get("reason") or "dispute")
        except StateConflictError as e:
            logger.warning("Dispute for escrow %s not applied: %s", record.order_id, e.message)
        return []

    # ------------------------------------------------------------------
    # Seller accounts
    # ------------------------------------------------------------------

    async def _on_account_updated(self, event: Dict[str, Any], account: Dict[str, Any]) -> list[Order]:
        connect_account_id = account.get("id", "")
        existing = await self.seller_store.get_by_connect_account(connect_account_id)
        seller_id = existing.seller_id if existing else (account.get("metadata") or {}).get("seller_id")
        if not seller_id:
            logger.warning("account.updated for unknown connected account %s", connect_account_id)
            return []
        updated = SellerAccount(
            seller_id=seller_id,
            connect_account_id=connect_account_id,
            charges_enabled=bool(account.get("charges_enabled")),
            payouts_enabled=bool(account.get("payouts_enabled")),
        )
        await self.seller_store.upsert(updated)
        logger.info(
            "Seller %s payout readiness: charges=%s payouts=%s",
            seller_id, updated.charges_enabled, updated.payouts_enabled,
        )
        return []
