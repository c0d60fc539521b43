"""Unit tests for the pure pricing calculator."""

from decimal import Decimal

import pytest

from orders.domain import AppliedDiscount, LineItem
from orders.pricing import allocate, compute, price_order, to_money

D = Decimal


def line(pid, price, qty):
    return LineItem(product_id=pid, quantity=qty, unit_price=D(price))


def test_single_line_without_discount():
    p = compute([line("P-100", "100.00", 2)])
    assert (p.subtotal, p.discount, p.tax, p.total) == (D("200.00"), D("0.00"), D("36.00"), D("236.00"))


def test_capped_percentage_discount():
    applied = AppliedDiscount(code="SAVE20", percent_off=D("20"), capped_discount_amount=D("150.00"))
    p = compute([line("P-500", "500.00", 2)], applied)
    assert (p.subtotal, p.discount, p.tax, p.total) == (D("1000.00"), D("150.00"), D("153.00"), D("1003.00"))


def test_discount_never_exceeds_subtotal():
    applied = AppliedDiscount(code="BIG", percent_off=D("100"), capped_discount_amount=D("500.00"))
    p = compute([line("A", "200.00", 1)], applied)
    assert p.discount == D("200.00")
    assert p.tax == D("0.00")
    assert p.total == D("0.00")


def test_tax_rounds_half_up():
    # 0.18 * 0.25 = 0.045, banker's rounding would give 0.04
    p = compute([line("A", "0.25", 1)])
    assert p.tax == D("0.05")
    assert p.total == D("0.30")


def test_totals_identity_and_non_negative():
    applied = AppliedDiscount(code="X", percent_off=D("15"), capped_discount_amount=D("37.49"))
    p = compute([line("A", "19.99", 3), line("B", "249.50", 1), line("C", "0.01", 7)], applied)
    assert p.total == p.subtotal - p.discount + p.tax
    assert min(p.subtotal, p.discount, p.tax, p.total) >= 0


def test_compute_is_deterministic():
    items = [line("A", "33.33", 3), line("B", "0.99", 11)]
    applied = AppliedDiscount(code="X", percent_off=D("10"), capped_discount_amount=D("11.08"))
    assert compute(items, applied) == compute(list(items), applied)


def test_to_money_converts_floats_through_str():
    assert to_money(0.1) == D("0.10")
    assert to_money("2.675") == D("2.68")


def test_allocate_gives_leftover_cents_to_earlier_lines_on_ties():
    items = allocate([line("A", "10.00", 1), line("B", "10.00", 1), line("C", "10.00", 1)], D("10.00"))
    assert [it.line_discount for it in items] == [D("3.34"), D("3.33"), D("3.33")]
    assert sum(it.line_discount for it in items) == D("10.00")


def test_allocate_never_gives_a_line_a_negative_share():
    items = allocate([line(f"P-{n}", "0.50", 1) for n in range(10)], D("0.05"))
    shares = [it.line_discount for it in items]
    assert all(s >= 0 for s in shares)
    assert sum(shares) == D("0.05")
    assert all(it.line_total <= it.gross for it in items)


def test_allocate_leftover_goes_to_largest_remainders():
    # exact shares 0.5714.., 0.2857.., 0.1428..
    items = allocate([line("A", "4.00", 1), line("B", "2.00", 1), line("C", "1.00", 1)], D("1.00"))
    assert [it.line_discount for it in items] == [D("0.57"), D("0.29"), D("0.14")]


def test_allocate_rejects_discount_above_eligible_gross():
    with pytest.raises(ValueError):
        allocate([line("A", "10.00", 1), line("B", "90.00", 1)], D("20.00"), eligible={"A"})



def test_allocate_is_proportional_to_gross():
    items = allocate([line("A", "100.00", 1), line("B", "200.00", 1)], D("100.00"))
    assert [it.line_discount for it in items] == [D("33.33"), D("66.67")]


def test_allocate_skips_ineligible_lines():
    items = allocate([line("A", "100.00", 1), line("B", "200.00", 1)], D("30.00"), eligible={"B"})
    assert items[0].line_discount == D("0.00")
    assert items[1].line_discount == D("30.00")
    assert items[1].line_total == D("170.00")


def test_price_order_line_totals_add_up():
    applied = AppliedDiscount(code="X", percent_off=D("20"), capped_discount_amount=D("150.00"))
    items, pricing = price_order([line("A", "300.00", 2), line("B", "400.00", 1)], applied)
    assert sum(it.line_total for it in items) == pricing.subtotal - pricing.discount


def test_price_order_caps_discount_to_eligible_lines():
    applied = AppliedDiscount(code="X", percent_off=D("100"), capped_discount_amount=D("300.00"))
    items, pricing = price_order([line("A", "100.00", 1), line("B", "200.00", 1)], applied, eligible={"A"})
    assert pricing.discount == D("100.00")
    assert [it.line_discount for it in items] == [D("100.00"), D("0.00")]
    assert sum(it.line_total for it in items) == pricing.subtotal - pricing.discount
