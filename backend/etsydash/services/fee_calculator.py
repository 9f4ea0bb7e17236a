"""Etsy fee and net revenue calculations.

WHAT: Derives marketplace fees and profit/margin from price, quantity,
      shipping, discount and cost inputs
WHY: Order sync stores fees per receipt; pricing views preview them per item
REFERENCES:
  - etsydash/services/etsy_sync_service.py: order fees at first ingestion
  - etsydash/tests/test_fee_calculator.py: Unit tests

Fee rules (USD-style decimal units, currency is passed through untouched):
  - listing fee:      0.20 per listing unit
  - transaction fee:  6.5% of the effective subtotal
  - processing fee:   3% of the effective subtotal + 0.25, only when it is > 0
  - effective subtotal = max(0, price * quantity - discount)

Pure functions, no I/O. Callers validate quantity (>= 1) before calling.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

Number = Union[int, float, str, Decimal]

LISTING_FEE = Decimal("0.20")
TRANSACTION_FEE_RATE = Decimal("0.065")
PROCESSING_FEE_RATE = Decimal("0.03")
PROCESSING_FEE_FIXED = Decimal("0.25")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class FeeBreakdown:
    listing_fee: Decimal
    transaction_fee: Decimal
    processing_fee: Decimal
    total_fees: Decimal


@dataclass(frozen=True)
class NetRevenueBreakdown:
    gross_revenue: Decimal
    fees: FeeBreakdown
    net_revenue: Decimal
    profit: Decimal
    margin: Decimal
    discount: Decimal


def to_decimal(value: Optional[Number]) -> Decimal:
    """Coerce a numeric input to Decimal via its string form (None -> 0)."""
    if value is None:
        return _ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def compute_fees(
    price: Number,
    quantity: Number = 1,
    discount: Number = 0,
    *,
    listing_count: Optional[int] = None,
) -> FeeBreakdown:
    """Calculate Etsy fees for a sale.

    Args:
        price: Unit price (or a whole subtotal with quantity=1)
        quantity: Units sold; multiplies price and, by default, the listing fee
        discount: Amount taken off price * quantity; may exceed it
        listing_count: Overrides the listing-fee multiplier. Order sync passes
            the receipt's transaction count here since per-unit listing fees
            cannot be separated from the receipt payload.

    Returns:
        FeeBreakdown with every component >= 0

    Examples:
        compute_fees(25)         → 0.20 + 1.625 + 1.00 = 2.825
        compute_fees(10, 1, 50)  → subtotal clamps to 0, only the 0.20 listing fee
    """
    price = to_decimal(price)
    quantity = to_decimal(quantity)
    discount = to_decimal(discount)

    effective_subtotal = max(_ZERO, price * quantity - discount)
    multiplier = quantity if listing_count is None else Decimal(listing_count)

    listing_fee = max(_ZERO, LISTING_FEE * multiplier)
    transaction_fee = effective_subtotal * TRANSACTION_FEE_RATE
    if effective_subtotal > 0:
        processing_fee = effective_subtotal * PROCESSING_FEE_RATE + PROCESSING_FEE_FIXED
    else:
        processing_fee = _ZERO

    return FeeBreakdown(
        listing_fee=listing_fee,
        transaction_fee=transaction_fee,
        processing_fee=processing_fee,
        total_fees=listing_fee + transaction_fee + processing_fee,
    )


def compute_net_revenue(
    price: Number,
    quantity: Number,
    shipping_collected: Number = 0,
    cost: Number = 0,
    discount: Number = 0,
) -> NetRevenueBreakdown:
    """Calculate gross revenue, fees, net revenue, profit and margin.

    gross = max(0, price * quantity + shipping - discount)
    net = gross - fees.total_fees
    profit = net - cost
    margin = profit / gross * 100 (0 when gross is 0)

    Example:
        compute_net_revenue(25, 1, 5) → gross 30, net 27.175, margin ≈ 90.58
    """
    price = to_decimal(price)
    quantity = to_decimal(quantity)
    shipping_collected = to_decimal(shipping_collected)
    cost = to_decimal(cost)
    discount = to_decimal(discount)

    gross_revenue = max(_ZERO, price * quantity + shipping_collected - discount)
    fees = compute_fees(price, quantity, discount)
    net_revenue = gross_revenue - fees.total_fees
    profit = net_revenue - cost
    margin = profit / gross_revenue * _HUNDRED if gross_revenue > 0 else _ZERO

    return NetRevenueBreakdown(
        gross_revenue=gross_revenue,
        fees=fees,
        net_revenue=net_revenue,
        profit=profit,
        margin=margin,
        discount=discount,
    )
