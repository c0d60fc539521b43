"""Order lifecycle controller.

``OrderService`` turns a basket into a priced ``pending`` order and moves
orders through the status state machine. It coordinates the ports declared
in ``domain`` and owns the compensation rules:

- any failure after stock has been reserved releases the reservation
  before the error is surfaced, so no hold is left without an order;
- a status change is checked against the state machine before any side
  effect, so a rejected transition never mutates anything;
- stock is confirmed before a ``confirmed`` status is persisted and put
  back on hold if that write fails, so a pending order never owns a
  confirmed reservation. Stock is released after a ``cancelled`` status
  is persisted. Every reservation call is idempotent.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from .catalog import CatalogSnapshotReader
from .discounts import DiscountValidator, normalize_code
from .domain import (
    SORT_OPTIONS,
    Address,
    CatalogPort,
    DiscountStorePort,
    EventPublisher,
    LineItem,
    Order,
    OrderQuery,
    OrderStatus,
    OrderStorePort,
    PaymentMethod,
    ReservationStatus,
    StatusChange,
    StockPort,
    can_transition,
)
from .errors import (
    ConflictingUpdate,
    DependencyUnavailable,
    InvalidTransition,
    NotFound,
    ProductUnavailable,
    ValidationError,
)
from .events import LoggingEventPublisher, OrderCancelled, OrderCreated, OrderStatusChanged, publish_quietly
from .pricing import price_order, subtotal_of, to_money
from .reservations import merge_quantities

logger = logging.getLogger(__name__)

EXPIRED_HOLD_REASON = "reservation expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderService:
    """Domain service responsible for placing and progressing orders.

    Args:
        catalog: CatalogPort providing product snapshots.
        stock: StockPort holding inventory for orders.
        discounts: DiscountStorePort backing discount validation.
        store: OrderStorePort persisting orders.
        events: EventPublisher for notifications (logged by default).
        clock: Callable returning the current aware datetime.
        currency: ISO code stamped on new orders.
    """

    def __init__(
        self,
        catalog: CatalogPort,
        stock: StockPort,
        discounts: DiscountStorePort,
        store: OrderStorePort,
        events: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
        currency: str = "INR",
    ):
        self.catalog = CatalogSnapshotReader(catalog)
        self.stock = stock
        self.discounts = DiscountValidator(discounts, clock=clock)
        self.store = store
        self.events = events or LoggingEventPublisher()
        self.clock = clock
        self.currency = currency

    # ---- checkout ----
    def create_order(
        self,
        buyer_id: str,
        items: Iterable[tuple],
        shipping_address: Address,
        billing_address: Optional[Address] = None,
        payment_method: str = PaymentMethod.COD.value,
        discount_code: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Order:
        """Place an order: snapshot, reserve, discount, price, persist.

        Args:
            buyer_id: Identifier of the buyer.
            items: ``(product_id, quantity)`` pairs. Duplicate products are
                merged. Prices are always read from the catalog.
            shipping_address: Delivery address.
            billing_address: Billing address; defaults to the shipping one.
            payment_method: One of ``PaymentMethod`` values.
            discount_code: Optional code typed by the buyer.
            now: Evaluation time for the discount window.

        Returns:
            The persisted order in ``pending`` status.

        Raises:
            ValidationError: Malformed input, raised before stock is touched.
            ProductUnavailable: Unknown or inactive product, or quantity
                above the available stock.
            InsufficientStock: Stock was taken by a concurrent checkout.
            InvalidDiscount: The code cannot be applied (subclass tells why).
            DependencyUnavailable: Catalog, stock or store unreachable.
        """
        if not buyer_id or not str(buyer_id).strip():
            raise ValidationError("Buyer id is required.", field="buyer_id")
        if shipping_address is None:
            raise ValidationError("Shipping address is required.", field="shipping_address")
        quantities = merge_quantities(items)
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"Unsupported payment method {payment_method!r}.", field="payment_method")
        code = normalize_code(discount_code) if discount_code else ""
        now = now or self.clock()

        # 1) Snapshot
        try:
            snapshot = self.catalog.get_snapshot(quantities)
        except NotFound as e:
            raise ProductUnavailable(e.message, **e.details) from e
        for product_id, quantity in quantities.items():
            if quantity > snapshot[product_id].available_stock:
                raise ProductUnavailable(
                    f"Only {snapshot[product_id].available_stock} unit(s) of {product_id} available.",
                    product_id=product_id,
                )

        # 2) Reserve stock
        order_id = str(uuid.uuid4())
        try:
            reservation = self.stock.reserve(order_id, list(quantities.items()))
        except DependencyUnavailable:
            # The ledger may have committed before the connection dropped.
            self._release_quietly(order_id)
            raise

        # 3..5) Discount, pricing, persistence; roll the hold back on failure
        try:
            lines = [
                LineItem(product_id=pid, quantity=qty, unit_price=to_money(snapshot[pid].price))
                for pid, qty in quantities.items()
            ]
            eligible = {pid for pid in quantities if snapshot[pid].discount_eligible}
            applied = None
            if code:
                applied = self.discounts.validate(
                    code,
                    subtotal_of(lines),
                    now=now,
                    eligible_subtotal=subtotal_of(it for it in lines if it.product_id in eligible),
                )
            priced, pricing = price_order(lines, applied, eligible)
            order = Order(
                id=order_id,
                buyer_id=str(buyer_id).strip(),
                items=priced,
                shipping_address=shipping_address,
                billing_address=billing_address or shipping_address,
                payment_method=method,
                pricing=pricing,
                status=OrderStatus.PENDING,
                created_at=now,
                status_history=[StatusChange(OrderStatus.PENDING, now)],
                discount_code=applied.code if applied else None,
                reservation_id=reservation.reservation_id,
                currency=self.currency,
            )
            order = self.store.create(order)
        except Exception:
            self._release_quietly(order_id)
            raise

        # 6) Post-commit effects
        if order.discount_code:
            try:
                self.discounts.apply(order.discount_code)
            except Exception:
                logger.exception("discount usage update failed", extra={"order_id": order.id})
        publish_quietly(self.events, OrderCreated(order_id=order.id, buyer_id=order.buyer_id, total=order.pricing.total))
        logger.info("order created", extra={"order_id": order.id, "total": str(order.pricing.total)})
        return order

    def _release_quietly(self, order_id: str) -> None:
        try:
            self.stock.release(order_id)
        except Exception:
            # Left held; the stale-hold sweep releases it later.
            logger.exception("compensating release failed", extra={"order_id": order_id})

    # ---- lifecycle ----
    def _load_for_update(self, order_id: str, target: OrderStatus, expected_version: Optional[int]) -> Order:
        order = self.store.get(order_id)
        if expected_version is not None and expected_version != order.version:
            raise ConflictingUpdate(order_id=order_id, version=order.version)
        if not can_transition(order.status, target):
            raise InvalidTransition(
                f"Cannot move order from {order.status.value} to {target.value}.",
                status=order.status.value,
                target=target.value,
            )
        return order

    def cancel_order(self, order_id: str, reason: str, expected_version: Optional[int] = None) -> Order:
        """Cancel an order that has not shipped yet and release its stock.

        Raises:
            ValidationError: If ``reason`` is blank.
            NotFound: Unknown order.
            ConflictingUpdate: ``expected_version`` is stale or a concurrent
                update won.
            InvalidTransition: The order is shipped, delivered, returned or
                already cancelled.
        """
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required.", field="reason")
        order = self._load_for_update(order_id, OrderStatus.CANCELLED, expected_version)
        change = StatusChange(OrderStatus.CANCELLED, self.clock(), reason.strip())
        updated = self.store.update_status(order.id, change, order.version)
        try:
            self.stock.release(order.id)
        except Exception:
            logger.exception("stock release after cancellation failed", extra={"order_id": order.id})
        publish_quietly(self.events, OrderCancelled(order_id=order.id, reason=change.reason))
        logger.info("order cancelled", extra={"order_id": order.id})
        return updated

    def update_status(
        self,
        order_id: str,
        status: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Order:
        """Move an order to ``status`` following the state machine.

        ``confirmed`` confirms the stock reservation first; if the hold was
        already released (expired) the transition is rejected, and if the
        status write fails the reservation is put back on hold.
        ``cancelled`` is handled by ``cancel_order``.

        Raises:
            ValidationError: Unknown status value.
            NotFound, ConflictingUpdate, InvalidTransition.
        """
        try:
            target = OrderStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status {status!r}.", field="status")
        if target == OrderStatus.CANCELLED:
            return self.cancel_order(order_id, reason or "", expected_version)

        order = self._load_for_update(order_id, target, expected_version)
        if target == OrderStatus.CONFIRMED:
            try:
                rset = self.stock.confirm(order.id)
            except NotFound:
                rset = None
            except DependencyUnavailable:
                # The ledger may have committed before the connection dropped.
                self._revert_confirm(order.id)
                raise
            if rset is None or rset.status == ReservationStatus.RELEASED:
                raise InvalidTransition(
                    "The stock reservation for this order is no longer held.",
                    status=order.status.value,
                    target=target.value,
                )

        change = StatusChange(target, self.clock(), reason.strip() if reason and reason.strip() else None)
        try:
            updated = self.store.update_status(order.id, change, order.version)
        except Exception:
            if target == OrderStatus.CONFIRMED:
                self._revert_confirm(order.id)
            raise
        publish_quietly(self.events, OrderStatusChanged(order_id=order.id, status=target.value))
        logger.info("order status changed", extra={"order_id": order.id, "status": target.value})
        return updated

    def _revert_confirm(self, order_id: str) -> None:
        """Put the hold back unless a concurrent update already moved the order on."""
        try:
            current = self.store.get(order_id)
        except Exception:
            logger.warning("order unreadable while reverting confirmation", extra={"order_id": order_id})
            current = None
        if current is not None and current.status != OrderStatus.PENDING:
            return
        try:
            self.stock.unconfirm(order_id)
        except Exception:
            logger.exception("reverting stock confirmation failed", extra={"order_id": order_id})

    # ---- reads ----
    def get_order(self, order_id: str) -> Order:
        return self.store.get(order_id)

    def list_orders(self, buyer_id: str, status: Optional[str] = None, sort: str = "recent") -> list:
        """List a buyer's orders, optionally filtered by status.

        Raises:
            ValidationError: Blank buyer, unknown status or sort option.
        """
        if not buyer_id:
            raise ValidationError("Buyer id is required.", field="buyer_id")
        return self.store.list_by_buyer(buyer_id, self._query(status, sort))

    def list_all_orders(self, status: Optional[str] = None, sort: str = "recent") -> list:
        """List every order for the seller, optionally filtered by status.

        Raises:
            ValidationError: Unknown status or sort option.
        """
        return self.store.list_all(self._query(status, sort))

    @staticmethod
    def _query(status: Optional[str], sort: str) -> OrderQuery:
        if sort not in SORT_OPTIONS:
            raise ValidationError(f"Sort must be one of {', '.join(SORT_OPTIONS)}.", field="sort")
        try:
            wanted = OrderStatus(status) if status else None
        except ValueError:
            raise ValidationError(f"Unknown status {status!r}.", field="status")
        return OrderQuery(status=wanted, sort=sort)

    def validate_discount(self, code: str, subtotal):
        """Checkout preview of a discount code; never consumes a use."""
        return self.discounts.validate(code, subtotal)

    # ---- maintenance ----
    def expire_stale_holds(self, max_age: timedelta) -> list:
        """Release abandoned holds and cancel their still-pending orders.

        Returns:
            Ids of the orders whose holds were released.
        """
        released = self.stock.expire_stale_holds(max_age)
        for order_id in released:
            try:
                order = self.store.get(order_id)
            except NotFound:
                # Hold of a checkout that never produced an order.
                continue
            if order.status != OrderStatus.PENDING:
                continue
            change = StatusChange(OrderStatus.CANCELLED, self.clock(), EXPIRED_HOLD_REASON)
            try:
                self.store.update_status(order_id, change, order.version)
            except ConflictingUpdate:
                logger.warning("expired order changed concurrently", extra={"order_id": order_id})
                continue
            publish_quietly(self.events, OrderCancelled(order_id=order_id, reason=EXPIRED_HOLD_REASON))
        return released
