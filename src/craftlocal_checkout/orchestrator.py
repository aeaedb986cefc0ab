"""
Checkout orchestration.

The synchronous half of a checkout:
  cart → verify → group by seller → fees → signed intent → processor

Nothing is persisted until the processor call succeeds; a ProcessorError
aborts the checkout with no local side effects.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from craftlocal_checkout.config import CheckoutSettings
from craftlocal_checkout.connectors.base import PaymentProcessor
from craftlocal_checkout.escrow import WITHDRAWN_PREFIX, EscrowLedger
from craftlocal_checkout.exceptions import CheckoutValidationError, StateConflictError
from craftlocal_checkout.fees import FeeBreakdown, FeeCalculator
from craftlocal_checkout.grouping import SellerGrouper
from craftlocal_checkout.intent_builder import CheckoutIntentBuilder, CheckoutIntentStore
from craftlocal_checkout.logging_config import (
    generate_correlation_id,
    get_correlation_id,
    set_checkout_context,
    set_correlation_id,
    set_order_context,
)
from craftlocal_checkout.models import (
    CartLineRequest,
    CheckoutIntent,
    CheckoutMode,
    EscrowRecord,
    EscrowState,
    FulfillmentMethod,
    IntentRecord,
    ProcessorPaymentIntent,
    ProcessorSession,
    VerifiedLine,
    utcnow,
)
from craftlocal_checkout.orders import generate_order_id
from craftlocal_checkout.sellers import SellerAccountStore
from craftlocal_checkout.verifier import CartVerifier

logger = logging.getLogger(__name__)


@dataclass
class CheckoutRequest:
    """A buyer's checkout submission. The cart is untrusted."""

    cart: Sequence[CartLineRequest]
    fulfillment_method: FulfillmentMethod
    buyer_id: Optional[str] = None
    customer_email: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


@dataclass
class CheckoutResult:
    intent: CheckoutIntent
    session: ProcessorSession

    @property
    def checkout_url(self) -> Optional[str]:
        return self.session.url


@dataclass
class EscrowCheckoutResult:
    order_id: str
    intent: CheckoutIntent
    payment_intent: ProcessorPaymentIntent
    escrow: EscrowRecord
    release_due_hint: datetime
    metadata: Dict[str, str] = field(default_factory=dict)


class CheckoutService:
    """Runs standard and escrow checkouts end to end."""

    def __init__(
        self,
        settings: CheckoutSettings,
        verifier: CartVerifier,
        seller_store: SellerAccountStore,
        intent_builder: CheckoutIntentBuilder,
        intent_store: CheckoutIntentStore,
        processor: PaymentProcessor,
        ledger: EscrowLedger,
        grouper: Optional[SellerGrouper] = None,
        fee_calculator: Optional[FeeCalculator] = None,
    ):
        self.settings = settings
        self.verifier = verifier
        self.seller_store = seller_store
        self.intent_builder = intent_builder
        self.intent_store = intent_store
        self.processor = processor
        self.ledger = ledger
        self.grouper = grouper or SellerGrouper()
        self.fee_calculator = fee_calculator or FeeCalculator()

    async def _price(self, request: CheckoutRequest, mode: CheckoutMode) -> tuple[list[VerifiedLine], FeeBreakdown]:
        if not get_correlation_id():
            set_correlation_id(generate_correlation_id())

        lines = await self.verifier.verify(request.cart, buyer_id=request.buyer_id)
        seller_ids = list(dict.fromkeys(line.seller_id for line in lines))
        accounts = await self.seller_store.get_many(seller_ids)
        groups = self.grouper.group(lines, accounts)

        if mode is CheckoutMode.ESCROW and len(groups) != 1:
            raise CheckoutValidationError(
                "Escrow checkout supports items from a single seller only",
                reason="multiple_sellers",
                details={"seller_count": len(groups)},
            )

        breakdown = self.fee_calculator.compute_fees(groups, self.settings.fee_policy(mode))
        return lines, breakdown

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """
        Standard multi-seller checkout through a hosted processor session.

        Raises:
            VerificationError: a cart line failed verification
            CheckoutValidationError: malformed request
            ProcessorError: the processor rejected or could not be reached
        """
        _, breakdown = await self._price(request, CheckoutMode.STANDARD)
        intent = self.intent_builder.build(
            breakdown,
            fulfillment_method=request.fulfillment_method,
            shipping_address=request.shipping_address,
            notes=request.notes,
            buyer_id=request.buyer_id,
            customer_email=request.customer_email,
        )
        set_checkout_context(intent.intent_id)

        payload = self.intent_builder.checkout_session_payload(
            intent,
            success_url=self.settings.success_url,
            cancel_url=self.settings.cancel_url,
            customer_email=request.customer_email,
        )
        session = await self.processor.create_checkout_session(
            payload,
            idempotency_key=f"checkout:{intent.intent_id}",
        )

        await self.intent_store.save(
            IntentRecord(
                intent_id=intent.intent_id,
                processor_session_id=session.session_id,
                metadata_blob=intent.metadata_blob,
                signature=intent.signature,
                total_cents=intent.total,
            )
        )
        logger.info(
            f"Checkout session {session.session_id} created for intent {intent.intent_id}: "
            f"subtotal={intent.subtotal_cents} fee={intent.platform_fee} total={intent.total}"
        )
        return CheckoutResult(intent=intent, session=session)

    async def create_escrow_checkout(self, request: CheckoutRequest) -> EscrowCheckoutResult:
        """
        Single-seller escrow checkout: authorize now, capture after the hold.

        Raises:
            VerificationError: a cart line failed verification
            CheckoutValidationError: malformed request or more than one seller
            ProcessorError: the processor rejected or could not be reached
        """
        _, breakdown = await self._price(request, CheckoutMode.ESCROW)
        group = breakdown.groups[0]
        order_id = generate_order_id()
        set_order_context(order_id)

        intent = self.intent_builder.build(
            breakdown,
            fulfillment_method=request.fulfillment_method,
            shipping_address=request.shipping_address,
            notes=request.notes,
            buyer_id=request.buyer_id,
            customer_email=request.customer_email,
        )
        set_checkout_context(intent.intent_id)

        metadata = self.intent_builder.to_processor_metadata(intent)
        metadata.update({
            "order_id": order_id,
            "listing_id": group.lines[0].listing_id,
            "seller_id": group.seller_id,
            "buyer_id": request.buyer_id or "",
            "platform_fee": str(group.platform_fee_share),
            "seller_amount": str(group.payout_amount),
            "fulfillment_method": request.fulfillment_method.value,
        })

        destination = group.connect_destination
        destination_charge = bool(destination and self.settings.escrow_destination_charges)
        payment_intent = await self.processor.create_payment_intent(
            amount_cents=breakdown.total_cents,
            currency=self.settings.currency,
            metadata=metadata,
            idempotency_key=f"escrow:{order_id}",
            capture_method="manual",
            transfer_data={"destination": destination} if destination_charge else None,
            application_fee_amount=group.platform_fee_share if destination_charge else None,
        )

        record = await self.ledger.open(
            order_id=order_id,
            payment_intent_ref=payment_intent.payment_intent_id,
            seller_id=group.seller_id,
            buyer_id=request.buyer_id,
            seller_amount=group.payout_amount,
            platform_fee=group.platform_fee_share,
            payout_destination=destination,
            destination_charge=destination_charge,
        )
        logger.info(
            f"Escrow checkout {order_id} authorized-pending via {payment_intent.payment_intent_id}: "
            f"amount={breakdown.total_cents} seller_amount={group.payout_amount} "
            f"fee={group.platform_fee_share}"
        )
        return EscrowCheckoutResult(
            order_id=order_id,
            intent=intent,
            payment_intent=payment_intent,
            escrow=record,
            release_due_hint=utcnow() + self.settings.hold_period,
            metadata=metadata,
        )

    async def cancel_escrow(self, order_id: str, reason: str = "canceled") -> EscrowRecord:
        """
        Cancel an escrow order before its funds are released.

        An uncaptured hold is voided. Captured funds still held by the
        platform are refunded in full. Canceling an already withdrawn order
        re-sends the processor request under the same idempotency key, so a
        failed void or refund can simply be retried.

        Raises:
            RecordNotFound: unknown order id
            StateConflictError: already released, disputed or closed by the
                processor, or a release is in progress
            ProcessorError: the void or refund failed
        """
        set_order_context(order_id)
        record = await self.ledger.get(order_id)
        withdrawn = record.state is EscrowState.REFUNDED and (record.close_reason or "").startswith(WITHDRAWN_PREFIX)
        if not withdrawn:
            if record.state is EscrowState.CAPTURED and record.destination_charge:
                # Captured destination charges already sit with the seller.
                raise StateConflictError(order_id, {EscrowState.INITIATED, EscrowState.AUTHORIZED}, record.state)
            record = await self.ledger.withdraw(order_id, reason)

        if record.captured_at is not None:
            refund_id = await self.processor.create_refund(
                record.payment_intent_ref,
                idempotency_key=f"refund:{order_id}",
            )
            logger.info(f"Escrow {order_id} refunded via {refund_id}: reason={reason}")
        else:
            await self.processor.cancel_payment_intent(
                record.payment_intent_ref,
                idempotency_key=f"cancel:{order_id}",
            )
            logger.info(f"Escrow {order_id} hold voided: reason={reason}")
        return record
