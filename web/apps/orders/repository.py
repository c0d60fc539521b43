"""Repository layer for persisting orders and discount codes.

This module maps the domain dataclasses onto the Django ORM models so the
engine is not coupled to ORM details. ``OrderRepository`` implements
``OrderStorePort`` and ``DiscountRepository`` implements
``DiscountStorePort``.

Status updates use optimistic concurrency: the row is only updated when
its ``version`` still equals the version the caller read, with a single
conditional ``UPDATE``. Database connectivity problems surface as
``DependencyUnavailable`` so callers can retry.
"""

from contextlib import contextmanager
from dataclasses import asdict
from typing import List, Optional

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, OperationalError, transaction
from django.db.models import F, Q
from django.utils import timezone

from .domain import (
    Address,
    DiscountCode,
    LineItem,
    Order,
    OrderQuery,
    OrderStatus,
    PaymentMethod,
    Pricing,
    StatusChange,
)
from .errors import ConflictingUpdate, DependencyUnavailable, NotFound
from .models import DiscountCodeModel, OrderLineModel, OrderModel, StatusChangeModel

ORDERING = {
    "recent": "-created_at",
    "oldest": "created_at",
    "highest": "-total",
    "lowest": "total",
}


@contextmanager
def _database():
    """Translate connectivity failures into ``DependencyUnavailable``."""
    try:
        yield
    except OperationalError as e:
        raise DependencyUnavailable("Order database unavailable.") from e


def _to_domain(obj: OrderModel) -> Order:
    """Build a domain ``Order`` from a model with prefetched relations."""
    return Order(
        id=str(obj.id),
        buyer_id=obj.buyer_id,
        items=[
            LineItem(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_discount=line.line_discount,
            )
            for line in obj.lines.all()
        ],
        shipping_address=Address(**obj.shipping_address),
        billing_address=Address(**obj.billing_address),
        payment_method=PaymentMethod(obj.payment_method),
        pricing=Pricing(subtotal=obj.subtotal, discount=obj.discount, tax=obj.tax, total=obj.total),
        status=OrderStatus(obj.status),
        created_at=obj.created_at,
        status_history=[
            StatusChange(status=OrderStatus(h.status), timestamp=h.timestamp, reason=h.reason)
            for h in obj.history.all()
        ],
        discount_code=obj.discount_code,
        reservation_id=obj.reservation_id,
        currency=obj.currency,
        version=obj.version,
    )


class OrderRepository:
    """Repository that persists Order domain objects using Django ORM."""

    def create(self, order: Order) -> Order:
        """Persist a new order with its lines and initial history.

        Returns:
            The order as read back from the database.

        Raises:
            ConflictingUpdate: If an order with the same id exists.
            DependencyUnavailable: If the database cannot be reached.
        """
        with _database():
            try:
                with transaction.atomic():
                    obj = OrderModel.objects.create(
                        id=order.id,
                        buyer_id=order.buyer_id,
                        status=order.status.value,
                        payment_method=order.payment_method.value,
                        discount_code=order.discount_code,
                        shipping_address=asdict(order.shipping_address),
                        billing_address=asdict(order.billing_address),
                        subtotal=order.pricing.subtotal,
                        discount=order.pricing.discount,
                        tax=order.pricing.tax,
                        total=order.pricing.total,
                        currency=order.currency,
                        reservation_id=order.reservation_id,
                        version=order.version,
                        created_at=order.created_at or timezone.now(),
                    )
                    OrderLineModel.objects.bulk_create(
                        [
                            OrderLineModel(
                                order=obj,
                                position=i,
                                product_id=it.product_id,
                                quantity=it.quantity,
                                unit_price=it.unit_price,
                                line_discount=it.line_discount,
                            )
                            for i, it in enumerate(order.items)
                        ]
                    )
                    StatusChangeModel.objects.bulk_create(
                        [
                            StatusChangeModel(order=obj, status=h.status.value, timestamp=h.timestamp, reason=h.reason)
                            for h in order.status_history
                        ]
                    )
            except IntegrityError as e:
                raise ConflictingUpdate("Order already exists.", order_id=order.id) from e
        return self.get(order.id)

    def get(self, order_id: str) -> Order:
        with _database():
            try:
                obj = OrderModel.objects.prefetch_related("lines", "history").get(id=order_id)
            except (OrderModel.DoesNotExist, DjangoValidationError):
                raise NotFound("Order not found.", order_id=str(order_id))
            return _to_domain(obj)

    def list_by_buyer(self, buyer_id: str, query: OrderQuery) -> List[Order]:
        return self._list(OrderModel.objects.filter(buyer_id=buyer_id), query)

    def list_all(self, query: OrderQuery) -> List[Order]:
        return self._list(OrderModel.objects.all(), query)

    def _list(self, qs, query: OrderQuery) -> List[Order]:
        if query.status is not None:
            qs = qs.filter(status=query.status.value)
        qs = qs.order_by(ORDERING[query.sort], "-created_at").prefetch_related("lines", "history")
        with _database():
            return [_to_domain(o) for o in qs]

    def update_status(self, order_id: str, change: StatusChange, expected_version: int) -> Order:
        """Apply a status change guarded by ``expected_version``.

        Raises:
            NotFound: If the order does not exist.
            ConflictingUpdate: If another writer bumped the version first.
        """
        with _database():
            try:
                with transaction.atomic():
                    updated = OrderModel.objects.filter(id=order_id, version=expected_version).update(
                        status=change.status.value,
                        version=F("version") + 1,
                        updated_at=timezone.now(),
                    )
                    if not updated:
                        if not OrderModel.objects.filter(id=order_id).exists():
                            raise NotFound("Order not found.", order_id=str(order_id))
                        raise ConflictingUpdate(order_id=str(order_id))
                    StatusChangeModel.objects.create(
                        order_id=order_id,
                        status=change.status.value,
                        timestamp=change.timestamp,
                        reason=change.reason,
                    )
            except DjangoValidationError:
                raise NotFound("Order not found.", order_id=str(order_id))
        return self.get(order_id)


class DiscountRepository:
    """Discount code storage backed by ``DiscountCodeModel``."""

    def get(self, code: str) -> Optional[DiscountCode]:
        with _database():
            obj = DiscountCodeModel.objects.filter(code=code).first()
        if obj is None:
            return None
        return DiscountCode(
            code=obj.code,
            percent_off=obj.percent_off,
            valid_from=obj.valid_from,
            valid_until=obj.valid_until,
            min_order_value=obj.min_order_value,
            max_discount_amount=obj.max_discount_amount,
            usage_limit=obj.usage_limit,
            usage_count=obj.usage_count,
        )

    def increment_usage(self, code: str) -> bool:
        """Conditionally bump ``usage_count`` in a single UPDATE."""
        with _database():
            updated = (
                DiscountCodeModel.objects.filter(code=code)
                .filter(Q(usage_limit__isnull=True) | Q(usage_count__lt=F("usage_limit")))
                .update(usage_count=F("usage_count") + 1)
            )
        return updated > 0
