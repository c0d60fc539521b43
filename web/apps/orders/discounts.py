"""Discount code validation and usage accounting.

``DiscountValidator.validate`` is read-only and can be retried freely; the
usage counter only moves through ``DiscountValidator.apply``, which the
order service calls once, after the order has been persisted.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from .domain import AppliedDiscount, DiscountStorePort
from .errors import BelowMinimum, Expired, InvalidCode, UsageLimitReached, ValidationError
from .pricing import ZERO, to_money

logger = logging.getLogger(__name__)

MAX_PERCENT_OFF = Decimal(100)


def normalize_code(code: str) -> str:
    """Normalize a user-entered code: trim whitespace and upper-case."""
    return (code or "").strip().upper()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DiscountValidator:
    """Evaluate discount codes against an order subtotal.

    Args:
        store: DiscountStorePort used to look codes up and count usage.
        clock: Callable returning the current aware datetime; injected in
            tests.
    """

    def __init__(self, store: DiscountStorePort, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def validate(
        self,
        code: str,
        order_subtotal: Decimal,
        now: Optional[datetime] = None,
        eligible_subtotal: Optional[Decimal] = None,
    ) -> AppliedDiscount:
        """Check a code and compute the discount it grants.

        Rules are evaluated in order: existence, validity window, minimum
        order value, usage limit.

        Args:
            code: Code as typed by the buyer.
            order_subtotal: Order subtotal used for the minimum check.
            now: Evaluation time, defaults to the validator clock.
            eligible_subtotal: Subtotal of the discount-eligible products.
                The percentage applies to it when given, otherwise to
                ``order_subtotal``.

        Returns:
            AppliedDiscount with the capped amount.

        Raises:
            ValidationError: If the subtotal is negative, or the stored code
                has a percentage outside 0..100.
            InvalidCode, Expired, BelowMinimum, UsageLimitReached.
        """
        normalized = normalize_code(code)
        subtotal = to_money(order_subtotal)
        if subtotal < ZERO:
            raise ValidationError("Subtotal must not be negative.", field="subtotal")
        if not normalized:
            raise InvalidCode(code=normalized)

        discount = self.store.get(normalized)
        if discount is None:
            raise InvalidCode(code=normalized)
        if not ZERO <= discount.percent_off <= MAX_PERCENT_OFF:
            logger.error(
                "discount code misconfigured",
                extra={"code": normalized, "percent_off": str(discount.percent_off)},
            )
            raise ValidationError("The discount code is misconfigured.", code=normalized)

        now = now or self.clock()
        if now < discount.valid_from:
            raise Expired("The discount code is not active yet.", code=normalized)
        if now > discount.valid_until:
            raise Expired("The discount code has expired.", code=normalized)

        if discount.min_order_value is not None and subtotal < discount.min_order_value:
            raise BelowMinimum(
                f"Minimum order value for this code is {to_money(discount.min_order_value)}.",
                code=normalized,
                min_order_value=str(to_money(discount.min_order_value)),
            )

        if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
            raise UsageLimitReached(code=normalized)

        base = subtotal if eligible_subtotal is None else to_money(eligible_subtotal)
        amount = to_money(base * discount.percent_off / Decimal(100))
        if discount.max_discount_amount is not None:
            amount = min(amount, to_money(discount.max_discount_amount))

        return AppliedDiscount(
            code=normalized,
            percent_off=discount.percent_off,
            capped_discount_amount=amount,
        )

    def apply(self, code: str) -> bool:
        """Record one use of ``code``.

        Returns:
            True when the usage counter was incremented. A False result
            means another order consumed the last use in between; it is
            logged, not raised, because the order is already durable.
        """
        normalized = normalize_code(code)
        applied = self.store.increment_usage(normalized)
        if not applied:
            logger.warning("discount usage not incremented", extra={"discount_code": normalized})
        return applied
