"""Split verified lines into per-seller groups."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Mapping, Optional, Sequence

from craftlocal_checkout.models import SellerAccount, SellerGroup, VerifiedLine

logger = logging.getLogger(__name__)


class SellerGrouper:
    """Partitions a verified cart by seller.

    Groups appear in order of each seller's first line; lines keep their
    cart order within a group.
    """

    def group(
        self,
        verified_lines: Sequence[VerifiedLine],
        seller_accounts: Optional[Mapping[str, SellerAccount]] = None,
    ) -> list[SellerGroup]:
        seller_accounts = seller_accounts or {}
        buckets: dict[str, list[VerifiedLine]] = {}
        for line in verified_lines:
            buckets.setdefault(line.seller_id, []).append(line)

        groups: list[SellerGroup] = []
        for seller_id, lines in buckets.items():
            account = seller_accounts.get(seller_id)
            destination = account.connect_account_id if account and account.payout_ready else None
            if destination is None:
                # Funds stay with the platform until a manual payout
                logger.info(f"Seller {seller_id} has no payout-ready account; payout will be manual")
            groups.append(
                SellerGroup(
                    seller_id=seller_id,
                    lines=tuple(lines),
                    subtotal=sum((line.line_total for line in lines), Decimal("0")),
                    connect_destination=destination,
                )
            )
        return groups
