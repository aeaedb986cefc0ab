"""Platform fee calculation.

Two policies exist, selected per checkout mode:
  standard: buyer pays subtotal + fee; every seller receives their subtotal.
    $100 cart at 10% → buyer pays $110.00, sellers receive $100.00.
  escrow: buyer pays the subtotal; each seller's share of the fee is
    deducted from their payout.
    $100 order at 5% → buyer pays $100.00, seller receives $95.00.

Cent conversion happens here and nowhere else: each unit price is rounded
half up once, and every fee is rounded half up once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Sequence

from craftlocal_checkout.config import FeePolicy
from craftlocal_checkout.models import CheckoutMode, SellerGroup
from craftlocal_checkout.money import apply_rate, to_cents

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeBreakdown:
    """Result of a fee calculation across all seller groups."""

    mode: CheckoutMode
    fee_rate: Decimal
    groups: tuple[SellerGroup, ...]
    subtotal_cents: int
    platform_fee_cents: int
    total_cents: int

    @property
    def payout_total_cents(self) -> int:
        return sum(g.payout_amount for g in self.groups)

    @property
    def fee_percentage(self) -> str:
        return f"{self.fee_rate * 100:.2f}%"


class FeeCalculator:
    """Applies a FeePolicy to seller groups."""

    def compute_fees(self, groups: Sequence[SellerGroup], policy: FeePolicy) -> FeeBreakdown:
        priced: list[SellerGroup] = []
        for group in groups:
            line_amounts = tuple(to_cents(line.unit_price) * line.quantity for line in group.lines)
            priced.append(replace(group, line_amounts_cents=line_amounts, subtotal_cents=sum(line_amounts)))

        subtotal_cents = sum(g.subtotal_cents for g in priced)

        if policy.is_additive:
            platform_fee = apply_rate(subtotal_cents, policy.rate)
            final_groups = [
                replace(g, payout_amount=g.subtotal_cents, platform_fee_share=0)
                for g in priced
            ]
            total_cents = subtotal_cents + platform_fee
        else:
            final_groups = []
            for g in priced:
                share = apply_rate(g.subtotal_cents, policy.rate)
                final_groups.append(
                    replace(g, payout_amount=g.subtotal_cents - share, platform_fee_share=share)
                )
            platform_fee = sum(g.platform_fee_share for g in final_groups)
            total_cents = subtotal_cents

        breakdown = FeeBreakdown(
            mode=policy.mode,
            fee_rate=policy.rate,
            groups=tuple(final_groups),
            subtotal_cents=subtotal_cents,
            platform_fee_cents=platform_fee,
            total_cents=total_cents,
        )
        logger.debug(
            f"Fees ({policy.mode.value} @ {policy.fee_percentage}): subtotal={subtotal_cents} "
            f"fee={platform_fee} total={total_cents} across {len(final_groups)} seller(s)"
        )
        return breakdown
