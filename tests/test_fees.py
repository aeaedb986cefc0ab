"""
Seller grouping and platform fee tests.

Money must be conserved exactly: integer cents, half-up rounding applied
once per amount.
"""
from __future__ import annotations

from decimal import Decimal

import pytest

from craftlocal_checkout.config import FeePolicy
from craftlocal_checkout.fees import FeeCalculator
from craftlocal_checkout.grouping import SellerGrouper
from craftlocal_checkout.models import CheckoutMode, SellerAccount, VerifiedLine
from craftlocal_checkout.money import apply_rate, to_cents

STANDARD = FeePolicy(CheckoutMode.STANDARD, Decimal("0.10"))
ESCROW = FeePolicy(CheckoutMode.ESCROW, Decimal("0.05"))


def _line(listing_id: str, seller_id: str, price: str, quantity: int = 1) -> VerifiedLine:
    return VerifiedLine(listing_id, seller_id, listing_id.title(), Decimal(price), quantity)


class TestMoney:
    """Cent conversion helpers."""

    @pytest.mark.parametrize(
        "amount,expected",
        [
            ("10.99", 1099),
            ("0.005", 1),
            ("0.004", 0),
            ("12.345", 1235),
            (19.99, 1999),
        ],
    )
    def test_to_cents_rounds_half_up(self, amount, expected):
        assert to_cents(amount) == expected

    def test_apply_rate_rounds_half_up(self):
        assert apply_rate(1005, Decimal("0.10")) == 101  # 100.5
        assert apply_rate(1004, Decimal("0.10")) == 100  # 100.4


class TestSellerGrouper:
    """Partitioning by seller."""

    def test_groups_in_first_occurrence_order(self):
        lines = [
            _line("scarf", "seller_b", "35.50"),
            _line("mug", "seller_a", "25.00", 2),
            _line("soap", "seller_b", "10.99"),
        ]
        groups = SellerGrouper().group(lines)

        assert [g.seller_id for g in groups] == ["seller_b", "seller_a"]
        assert [l.listing_id for l in groups[0].lines] == ["scarf", "soap"]
        assert groups[0].subtotal == Decimal("46.49")
        assert groups[1].subtotal == Decimal("50.00")

    def test_subtotals_sum_to_cart_subtotal(self):
        lines = [
            _line("a", "s1", "3.33", 3),
            _line("b", "s2", "0.01", 7),
            _line("c", "s1", "19.99"),
        ]
        groups = SellerGrouper().group(lines)
        assert sum(g.subtotal for g in groups) == sum(l.line_total for l in lines)

    def test_destination_only_for_payout_ready_sellers(self):
        accounts = {
            "s1": SellerAccount("s1", "acct_1", charges_enabled=True, payouts_enabled=True),
            "s2": SellerAccount("s2", "acct_2", charges_enabled=True, payouts_enabled=False),
        }
        groups = SellerGrouper().group(
            [_line("a", "s1", "1.00"), _line("b", "s2", "1.00"), _line("c", "s3", "1.00")],
            accounts,
        )
        assert [g.connect_destination for g in groups] == ["acct_1", None, None]


class TestFeeCalculator:
    """Standard (additive) and escrow (subtractive) fee policies."""

    def test_standard_two_sellers(self):
        """$50.00 + $35.50 at 10% → fee 855, total 9405."""
        groups = SellerGrouper().group([
            _line("mug", "seller_a", "25.00", 2),
            _line("scarf", "seller_b", "35.50"),
        ])
        breakdown = FeeCalculator().compute_fees(groups, STANDARD)

        assert breakdown.subtotal_cents == 8550
        assert breakdown.platform_fee_cents == 855
        assert breakdown.total_cents == 9405
        assert [g.payout_amount for g in breakdown.groups] == [5000, 3550]
        assert all(g.platform_fee_share == 0 for g in breakdown.groups)

    def test_standard_conservation(self):
        groups = SellerGrouper().group([
            _line("a", "s1", "3.33", 3),
            _line("b", "s2", "0.01", 7),
            _line("c", "s3", "19.99"),
        ])
        breakdown = FeeCalculator().compute_fees(groups, STANDARD)

        assert sum(g.subtotal_cents for g in breakdown.groups) + breakdown.platform_fee_cents == breakdown.total_cents

    def test_escrow_single_seller(self):
        """$100.00 at 5% → seller 9500, fee 500, buyer pays 10000."""
        groups = SellerGrouper().group([_line("candle", "seller_c", "100.00")])
        breakdown = FeeCalculator().compute_fees(groups, ESCROW)

        group = breakdown.groups[0]
        assert group.payout_amount == 9500
        assert group.platform_fee_share == 500
        assert breakdown.platform_fee_cents == 500
        assert breakdown.total_cents == 10000

    def test_escrow_conservation_with_rounding(self):
        groups = SellerGrouper().group([
            _line("a", "s1", "10.01"),
            _line("b", "s2", "0.99", 3),
        ])
        breakdown = FeeCalculator().compute_fees(groups, ESCROW)

        payouts = sum(g.payout_amount for g in breakdown.groups)
        shares = sum(g.platform_fee_share for g in breakdown.groups)
        assert payouts + shares == breakdown.total_cents
        assert shares == breakdown.platform_fee_cents
        # 1001 * 0.05 = 50.05 → 50 ; 297 * 0.05 = 14.85 → 15
        assert [g.platform_fee_share for g in breakdown.groups] == [50, 15]

    def test_zero_rate(self):
        groups = SellerGrouper().group([_line("a", "s1", "12.00")])
        breakdown = FeeCalculator().compute_fees(groups, FeePolicy(CheckoutMode.STANDARD, Decimal("0")))
        assert breakdown.platform_fee_cents == 0
        assert breakdown.total_cents == 1200

    def test_line_amounts_match_unit_price_times_quantity(self):
        groups = SellerGrouper().group([_line("a", "s1", "10.99", 3)])
        breakdown = FeeCalculator().compute_fees(groups, STANDARD)
        assert breakdown.groups[0].line_amounts_cents == (3297,)
