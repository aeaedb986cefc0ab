"""
Checkout intent construction and signed metadata.

The intent's metadata blob is canonical JSON describing exactly what was
charged: verified lines, per-seller amounts, fee, fulfillment details. It is
signed with HMAC-SHA256 so that the webhook path can trust it even when it
only has the copy that round-tripped through the processor.

Processor metadata values are limited to 500 characters, so the blob is
split into `cart_0..cart_n` chunks plus a `signature` entry.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

from craftlocal_checkout.exceptions import (
    CheckoutValidationError,
    ConfigurationError,
    MetadataIntegrityError,
)
from craftlocal_checkout.fees import FeeBreakdown
from craftlocal_checkout.models import (
    METADATA_VALUE_MAX_LENGTH,
    CheckoutIntent,
    FulfillmentMethod,
    IntentRecord,
    LineItem,
    LineItemKind,
    TransferInstruction,
)
from craftlocal_checkout.sanitize import sanitize_address, sanitize_email, sanitize_name, sanitize_notes

logger = logging.getLogger(__name__)

PLATFORM_FEE_LINE_NAME = "Platform fee"
CHUNK_KEY_PREFIX = "cart_"
SIGNATURE_KEY = "signature"
INTENT_ID_KEY = "intent_id"

# Processors cap metadata at 50 keys; keep room for signature, intent id
# and the plain escrow fields
MAX_METADATA_CHUNKS = 35


def canonical_json(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def sign_blob(blob: str, secret: str) -> str:
    return hmac.new(secret.encode(), blob.encode(), hashlib.sha256).hexdigest()


def verify_blob(blob: str, signature: str, secret: str) -> Dict[str, Any]:
    """Check a blob against its signature and decode it.

    Raises:
        MetadataIntegrityError: signature mismatch or undecodable blob
    """
    expected = sign_blob(blob, secret)
    if not signature or not hmac.compare_digest(expected, signature):
        raise MetadataIntegrityError("Checkout metadata signature mismatch")
    try:
        return json.loads(blob)
    except ValueError as e:
        raise MetadataIntegrityError("Checkout metadata is not valid JSON") from e


def generate_intent_id() -> str:
    return f"ci_{uuid.uuid4().hex[:20]}"


class CheckoutIntentBuilder:
    """Builds immutable checkout intents from a fee breakdown."""

    def __init__(self, signing_secret: str, currency: str = "usd"):
        if not signing_secret:
            raise ConfigurationError("A metadata signing secret is required to build checkout intents")
        self._secret = signing_secret
        self.currency = currency

    def build(
        self,
        breakdown: FeeBreakdown,
        fulfillment_method: FulfillmentMethod,
        shipping_address: Optional[Mapping[str, Any]] = None,
        notes: Optional[str] = None,
        buyer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        intent_id: Optional[str] = None,
    ) -> CheckoutIntent:
        """
        Build a signed checkout intent.

        One line item is emitted per verified line, followed by exactly one
        platform fee line item (present even when the fee is zero).

        Raises:
            CheckoutValidationError: shipping without an address, or a cart
                too large to carry in processor metadata
        """
        intent_id = intent_id or generate_intent_id()
        address = sanitize_address(shipping_address)
        if fulfillment_method is FulfillmentMethod.SHIPPING and address is None:
            raise CheckoutValidationError(
                "A shipping address is required for shipped orders",
                reason="missing_shipping_address",
            )
        clean_notes = sanitize_notes(notes)

        line_items: list[LineItem] = []
        blob_lines: list[dict[str, Any]] = []
        blob_groups: list[dict[str, Any]] = []
        transfers: list[TransferInstruction] = []
        verified_lines = []

        for group in breakdown.groups:
            for line, line_cents in zip(group.lines, group.line_amounts_cents):
                unit_cents = line_cents // line.quantity
                verified_lines.append(line)
                line_items.append(
                    LineItem(
                        name=sanitize_name(line.title) or line.listing_id,
                        unit_amount_cents=unit_cents,
                        quantity=line.quantity,
                        kind=LineItemKind.LISTING,
                        listing_id=line.listing_id,
                        seller_id=line.seller_id,
                    )
                )
                blob_lines.append({
                    "listing_id": line.listing_id,
                    "seller_id": line.seller_id,
                    "title": sanitize_name(line.title),
                    "quantity": line.quantity,
                    "unit_price": unit_cents,
                })

            blob_groups.append({
                "seller_id": group.seller_id,
                "subtotal": group.subtotal_cents,
                "payout": group.payout_amount,
                "fee_share": group.platform_fee_share,
                "destination": group.connect_destination,
            })
            if group.connect_destination and group.payout_amount > 0:
                transfers.append(
                    TransferInstruction(
                        seller_id=group.seller_id,
                        destination=group.connect_destination,
                        amount_cents=group.payout_amount,
                    )
                )

        # Escrow fees come out of the seller payout, so the buyer-facing fee
        # line is zero there
        line_items.append(
            LineItem(
                name=PLATFORM_FEE_LINE_NAME,
                unit_amount_cents=breakdown.total_cents - breakdown.subtotal_cents,
                quantity=1,
                kind=LineItemKind.PLATFORM_FEE,
            )
        )

        blob = canonical_json({
            "intent_id": intent_id,
            "mode": breakdown.mode.value,
            "lines": blob_lines,
            "groups": blob_groups,
            "subtotal": breakdown.subtotal_cents,
            "platform_fee": breakdown.platform_fee_cents,
            "total": breakdown.total_cents,
            "currency": self.currency,
            "fulfillment_method": fulfillment_method.value,
            "notes": clean_notes,
            "shipping_address": address,
            "buyer_id": buyer_id,
            "customer_email": sanitize_email(customer_email),
        })

        chunk_count = -(-len(blob) // METADATA_VALUE_MAX_LENGTH)
        if chunk_count > MAX_METADATA_CHUNKS:
            raise CheckoutValidationError(
                "Cart is too large to check out in one payment",
                reason="cart_too_large",
                details={"lines": len(blob_lines)},
            )

        intent = CheckoutIntent(
            intent_id=intent_id,
            verified_lines=tuple(verified_lines),
            seller_groups=breakdown.groups,
            line_items=tuple(line_items),
            transfers=tuple(transfers),
            subtotal_cents=breakdown.subtotal_cents,
            platform_fee=breakdown.platform_fee_cents,
            total=breakdown.total_cents,
            fulfillment_method=fulfillment_method,
            metadata_blob=blob,
            signature=sign_blob(blob, self._secret),
            currency=self.currency,
            buyer_id=buyer_id,
            customer_email=customer_email,
        )
        logger.info(
            f"Built checkout intent {intent_id}: {len(line_items) - 1} line(s), "
            f"{len(breakdown.groups)} seller(s), total={intent.total}"
        )
        return intent

    def to_processor_metadata(self, intent: CheckoutIntent) -> Dict[str, str]:
        """Split the signed blob into processor-sized metadata values."""
        blob = intent.metadata_blob
        metadata = {
            f"{CHUNK_KEY_PREFIX}{i}": blob[offset:offset + METADATA_VALUE_MAX_LENGTH]
            for i, offset in enumerate(range(0, len(blob), METADATA_VALUE_MAX_LENGTH))
        }
        metadata[SIGNATURE_KEY] = intent.signature
        metadata[INTENT_ID_KEY] = intent.intent_id
        return metadata

    def from_processor_metadata(self, metadata: Mapping[str, Any]) -> Dict[str, Any]:
        """Reassemble and verify a blob carried in processor metadata.

        Raises:
            MetadataIntegrityError: chunks missing or signature mismatch
        """
        chunks = []
        index = 0
        while f"{CHUNK_KEY_PREFIX}{index}" in metadata:
            chunks.append(str(metadata[f"{CHUNK_KEY_PREFIX}{index}"]))
            index += 1
        if not chunks:
            raise MetadataIntegrityError("Checkout metadata is missing")
        return verify_blob("".join(chunks), str(metadata.get(SIGNATURE_KEY, "")), self._secret)

    def decode_record(self, record: IntentRecord) -> Dict[str, Any]:
        """Verify and decode a persisted intent."""
        return verify_blob(record.metadata_blob, record.signature, self._secret)

    def checkout_session_payload(
        self,
        intent: CheckoutIntent,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Processor request body for a hosted checkout session."""
        payload: Dict[str, Any] = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": intent.intent_id,
            "line_items": [
                {
                    "price_data": {
                        "currency": intent.currency,
                        "product_data": {
                            "name": item.name,
                            "metadata": item.metadata,
                        },
                        "unit_amount": item.unit_amount_cents,
                    },
                    "quantity": item.quantity,
                }
                for item in intent.line_items
            ],
            "metadata": self.to_processor_metadata(intent),
        }
        email = customer_email or intent.customer_email
        if email:
            payload["customer_email"] = email
        if intent.transfers:
            payload["payment_intent_data"] = {"transfer_group": intent.transfer_group}
        return payload


class CheckoutIntentStore(ABC):
    """Abstract interface for persisted checkout intents."""

    @abstractmethod
    async def save(self, record: IntentRecord) -> None:
        pass

    @abstractmethod
    async def get_by_session(self, processor_session_id: str) -> Optional[IntentRecord]:
        pass


class InMemoryCheckoutIntentStore(CheckoutIntentStore):
    """In-memory intent store for development and testing."""

    def __init__(self):
        self._records: Dict[str, IntentRecord] = {}

    async def save(self, record: IntentRecord) -> None:
        self._records[record.processor_session_id] = record

    async def get_by_session(self, processor_session_id: str) -> Optional[IntentRecord]:
        return self._records.get(processor_session_id)
