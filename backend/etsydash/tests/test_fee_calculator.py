"""Unit tests for Etsy fee and net revenue calculations."""

from decimal import Decimal

import pytest

from etsydash.services.fee_calculator import compute_fees, compute_net_revenue, to_decimal


def test_single_item_fees():
    fees = compute_fees(25)

    assert fees.listing_fee == Decimal("0.20")
    assert fees.transaction_fee == Decimal("1.625")
    assert fees.processing_fee == Decimal("1.00")
    assert fees.total_fees == Decimal("2.825")


def test_net_revenue_with_shipping():
    result = compute_net_revenue(25, 1, shipping_collected=5)

    assert result.gross_revenue == Decimal("30")
    assert result.fees.total_fees == Decimal("2.825")
    assert result.net_revenue == Decimal("27.175")
    assert result.profit == Decimal("27.175")
    assert abs(result.margin - Decimal("90.5833")) < Decimal("0.001")


def test_discount_larger_than_subtotal_clamps_to_listing_fee():
    fees = compute_fees(10, 1, 50)

    assert fees.transaction_fee == 0
    assert fees.processing_fee == 0
    assert fees.total_fees == Decimal("0.20")


def test_listing_fee_scales_with_quantity():
    fees = compute_fees(10, 3)

    assert fees.listing_fee == Decimal("0.60")
    # 30 * 0.065
    assert fees.transaction_fee == Decimal("1.950")
    # 30 * 0.03 + 0.25
    assert fees.processing_fee == Decimal("1.15")


def test_listing_count_overrides_quantity_multiplier():
    fees = compute_fees(Decimal("40.00"), 1, 0, listing_count=2)

    assert fees.listing_fee == Decimal("0.40")
    assert fees.transaction_fee == Decimal("2.60")


@pytest.mark.parametrize("price,quantity,discount", [
    (0, 1, 0),
    (5, 1, 5),
    (1, 2, 100),
    ("19.99", 4, "3.50"),
])
def test_fee_components_never_negative(price, quantity, discount):
    fees = compute_fees(price, quantity, discount)

    assert fees.listing_fee >= 0
    assert fees.transaction_fee >= 0
    assert fees.processing_fee >= 0
    assert fees.total_fees == fees.listing_fee + fees.transaction_fee + fees.processing_fee


def test_zero_gross_has_zero_margin():
    result = compute_net_revenue(0, 1)

    assert result.gross_revenue == 0
    assert result.margin == 0
    # Only the listing fee applies
    assert result.net_revenue == Decimal("-0.20")


def test_cost_reduces_profit_not_net():
    result = compute_net_revenue(25, 1, cost=10)

    assert result.net_revenue == Decimal("25") - Decimal("2.825")
    assert result.profit == result.net_revenue - 10


def test_to_decimal_uses_string_form():
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal(None) == 0
