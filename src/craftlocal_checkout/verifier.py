"""
Cart verification against the canonical pricing store.

The client-submitted cart is untrusted: its prices are discarded and every
line is re-priced from the store of record. Verification is all-or-nothing;
one bad line fails the whole cart.
"""
from __future__ import annotations

import logging
from collections import Counter
from decimal import Decimal
from typing import Optional, Sequence

from craftlocal_checkout.exceptions import (
    CheckoutValidationError,
    InsufficientInventory,
    ProductNotFound,
    ProductUnavailable,
)
from craftlocal_checkout.models import CartLineRequest, ListingStatus, VerifiedLine
from craftlocal_checkout.pricing import CanonicalPricingStore

logger = logging.getLogger(__name__)


class CartVerifier:
    """Re-derives a trustworthy cart from client input."""

    def __init__(self, pricing_store: CanonicalPricingStore):
        self.pricing_store = pricing_store

    @staticmethod
    def _validate_shape(cart: Sequence[CartLineRequest]) -> None:
        if not cart:
            raise CheckoutValidationError("Cart is empty", reason="empty_cart")
        for line in cart:
            if not line.listing_id:
                raise CheckoutValidationError("Cart line is missing a listing id", reason="missing_listing_id")
            if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
                raise CheckoutValidationError(
                    f"Quantity for listing '{line.listing_id}' must be a positive integer",
                    reason="invalid_quantity",
                    details={"listing_id": line.listing_id},
                )

    async def verify(
        self,
        cart: Sequence[CartLineRequest],
        buyer_id: Optional[str] = None,
    ) -> list[VerifiedLine]:
        """
        Verify a cart and return one VerifiedLine per requested line.

        Args:
            cart: Client-submitted cart lines
            buyer_id: Authenticated buyer, used to reject self-purchases

        Returns:
            Verified lines priced from the canonical store

        Raises:
            CheckoutValidationError: Malformed cart or self-purchase
            ProductNotFound: A listing id is absent from the store
            ProductUnavailable: A listing is not active
            InsufficientInventory: Requested quantity exceeds tracked inventory
        """
        self._validate_shape(cart)

        # One batch fetch for all distinct ids, first-seen order
        listing_ids = list(dict.fromkeys(line.listing_id for line in cart))
        records = await self.pricing_store.fetch_many(listing_ids)

        requested = Counter()
        for line in cart:
            requested[line.listing_id] += line.quantity

        for listing_id in listing_ids:
            record = records.get(listing_id)
            if record is None:
                logger.info(f"Cart verification failed: listing '{listing_id}' not found")
                raise ProductNotFound(listing_id)

            if record.status != ListingStatus.ACTIVE.value:
                logger.info(f"Cart verification failed: listing '{listing_id}' is {record.status}")
                raise ProductUnavailable(listing_id, record.status)

            if buyer_id is not None and record.seller_id == buyer_id:
                raise CheckoutValidationError(
                    "You cannot purchase your own listings",
                    reason="self_purchase",
                    details={"listing_id": listing_id},
                )

            wanted = requested[listing_id]
            if record.available_quantity is not None and record.available_quantity < wanted:
                logger.info(
                    f"Cart verification failed: listing '{listing_id}' has "
                    f"{record.available_quantity} available, {wanted} requested"
                )
                raise InsufficientInventory(listing_id, wanted, record.available_quantity)

        verified = [
            VerifiedLine(
                listing_id=line.listing_id,
                seller_id=records[line.listing_id].seller_id,
                title=records[line.listing_id].title,
                unit_price=Decimal(records[line.listing_id].price),
                quantity=line.quantity,
            )
            for line in cart
        ]

        mismatched = [
            line.listing_id
            for line, v in zip(cart, verified)
            if line.price is not None and Decimal(str(line.price)) != v.unit_price
        ]
        if mismatched:
            logger.warning(f"Client-submitted prices ignored for listings: {mismatched}")

        return verified
