"""Pure pricing calculator for orders.

All functions here are deterministic and side-effect free: the same line
items and discount always produce equal results. Prices must come from the
catalog snapshot; this module never sees client-supplied prices.

Rules:
    subtotal = sum(unit_price * quantity)
    discount = min(applied discount, subtotal)
    tax      = round_half_up(TAX_RATE * (subtotal - discount))
    total    = subtotal - discount + tax

Every amount is quantized to the currency minor unit with ROUND_HALF_UP.
"""

from dataclasses import replace
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Iterable, Optional, Sequence

from .domain import AppliedDiscount, LineItem, Pricing

TAX_RATE = Decimal("0.18")
MINOR_UNIT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Quantize ``value`` to the minor unit using round-half-up.

    Floats are converted through ``str`` so ``0.1`` stays ``0.10``.
    """
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def subtotal_of(items: Iterable[LineItem]) -> Decimal:
    return to_money(sum((it.gross for it in items), ZERO))


def compute(items: Sequence[LineItem], discount: Optional[AppliedDiscount] = None) -> Pricing:
    """Compute order totals.

    Args:
        items: Line items carrying snapshot unit prices.
        discount: Result of ``DiscountValidator.validate`` or None.

    Returns:
        Pricing with non-negative fields satisfying
        ``total == subtotal - discount + tax``.
    """
    subtotal = subtotal_of(items)
    amount = to_money(discount.capped_discount_amount) if discount else ZERO
    amount = max(ZERO, min(amount, subtotal))
    tax = to_money(TAX_RATE * (subtotal - amount))
    return Pricing(subtotal=subtotal, discount=amount, tax=tax, total=subtotal - amount + tax)


def allocate(
    items: Sequence[LineItem],
    discount_amount: Decimal,
    eligible: Optional[set] = None,
) -> list:
    """Spread an order-level discount over the lines.

    Largest-remainder allocation: each eligible line first gets its
    proportional share rounded down to the minor unit, then the cents left
    over go one at a time to the lines with the largest remainders (ties
    to the earlier line). Shares are never negative, never exceed the
    line's gross amount, and add up exactly to ``discount_amount``.

    Args:
        items: Lines to allocate over (their existing ``line_discount`` is
            replaced).
        discount_amount: Order discount, already capped to the subtotal.
        eligible: Product ids the discount applies to; None means all.

    Returns:
        New list of LineItem with ``line_discount`` set.

    Raises:
        ValueError: If the discount exceeds the eligible lines' gross.
    """
    discount_amount = to_money(discount_amount)
    targets = [i for i, it in enumerate(items) if eligible is None or it.product_id in eligible]
    base = sum((items[i].gross for i in targets), ZERO)
    if discount_amount > base:
        raise ValueError(f"Discount {discount_amount} exceeds the eligible amount {base}.")

    shares = {}
    if discount_amount > ZERO:
        remainders = []
        for i in targets:
            exact = discount_amount * items[i].gross / base
            shares[i] = exact.quantize(MINOR_UNIT, rounding=ROUND_DOWN)
            remainders.append((exact - shares[i], i))
        leftover = int((discount_amount - sum(shares.values(), ZERO)) / MINOR_UNIT)
        # stable sort keeps the earlier line first on equal remainders
        for _, i in sorted(remainders, key=lambda r: r[0], reverse=True):
            if leftover == 0:
                break
            if shares[i] + MINOR_UNIT <= to_money(items[i].gross):
                shares[i] += MINOR_UNIT
                leftover -= 1

    return [
        LineItem(
            product_id=it.product_id,
            quantity=it.quantity,
            unit_price=to_money(it.unit_price),
            line_discount=shares.get(i, ZERO),
        )
        for i, it in enumerate(items)
    ]


def price_order(
    items: Sequence[LineItem],
    discount: Optional[AppliedDiscount] = None,
    eligible: Optional[set] = None,
) -> tuple:
    """Return ``(allocated_items, pricing)`` for an order.

    The discount never exceeds the gross of the lines it applies to.
    """
    if discount is not None and eligible is not None:
        base = subtotal_of(it for it in items if it.product_id in eligible)
        if discount.capped_discount_amount > base:
            discount = replace(discount, capped_discount_amount=base)
    pricing = compute(items, discount)
    return allocate(items, pricing.discount, eligible), pricing
