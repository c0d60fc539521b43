"""Domain models and ports for orders.

This module contains the dataclasses used across the orders engine
(line items, pricing, orders, reservations, discount codes), the order
status state machine, and protocol definitions (ports) for the external
collaborators: the catalog, the stock ledger, the discount store, the
order store and the notification publisher.

The engine itself (``service.OrderService``) and the pure helpers
(``pricing``, ``discounts``, ``reservations``) only depend on what is
declared here, never on Django or HTTP details.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional, Protocol


# ---- Enums ----
class OrderStatus(str, Enum):
    """Order lifecycle statuses.

    ``pending → confirmed → processing → shipped → delivered`` is the happy
    path; ``cancelled`` and ``returned`` are alternate terminal states.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentMethod(str, Enum):
    COD = "cod"
    UPI = "upi"
    CARD = "card"
    NETBANKING = "netbanking"


class ReservationStatus(str, Enum):
    HELD = "held"
    CONFIRMED = "confirmed"
    RELEASED = "released"


# ---- State machine ----
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    # Return window policy is enforced by the caller.
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.RETURNED: set(),
}

CANCELLABLE_STATES = {s for s, targets in ALLOWED_TRANSITIONS.items() if OrderStatus.CANCELLED in targets}
TERMINAL_STATES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.RETURNED}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Return True when ``current → target`` is an allowed transition."""
    return target in ALLOWED_TRANSITIONS.get(current, set())


# ---- Value objects ----
@dataclass(frozen=True)
class Address:
    """Postal address captured at checkout."""

    full_name: str
    phone: str
    street: str
    city: str
    state: str = ""
    postal_code: str = ""
    country: str = "India"
    email: Optional[str] = None


@dataclass(frozen=True)
class LineItem:
    """A single priced line of an order.

    Attributes:
        product_id: Catalog identifier of the product.
        quantity: Units ordered (integer >= 1).
        unit_price: Snapshot price at order time. Never taken from the
            client.
        line_discount: Part of the order-level discount allocated to this
            line by ``pricing.allocate``.

    The dataclass is frozen because lines are immutable once persisted.
    """

    product_id: str
    quantity: int
    unit_price: Decimal
    line_discount: Decimal = Decimal("0.00")

    @property
    def gross(self) -> Decimal:
        return self.unit_price * self.quantity

    @property
    def line_total(self) -> Decimal:
        return self.gross - self.line_discount


@dataclass(frozen=True)
class Pricing:
    """Order totals. ``total == subtotal - discount + tax`` always holds."""

    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class ProductSnapshot:
    """Authoritative product data read at checkout time."""

    product_id: str
    price: Decimal
    available_stock: int
    active: bool = True
    discount_eligible: bool = True


@dataclass
class DiscountCode:
    """A seller-defined percentage discount code.

    ``code`` is stored normalized (trimmed, upper-cased). Optional limits
    are ``None`` when unset.
    """

    code: str
    percent_off: Decimal
    valid_from: datetime
    valid_until: datetime
    min_order_value: Optional[Decimal] = None
    max_discount_amount: Optional[Decimal] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0


@dataclass(frozen=True)
class AppliedDiscount:
    """Outcome of a successful discount validation."""

    code: str
    percent_off: Decimal
    capped_discount_amount: Decimal


@dataclass(frozen=True)
class StatusChange:
    status: OrderStatus
    timestamp: datetime
    reason: Optional[str] = None


# ---- Entities ----
@dataclass
class StockReservation:
    """A quantity of one product held for one order."""

    reservation_id: str
    order_id: str
    product_id: str
    quantity: int
    status: ReservationStatus
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ReservationSet:
    """All reservations taken for an order by a single ``reserve`` call."""

    reservation_id: str
    order_id: str
    reservations: tuple

    @property
    def status(self) -> ReservationStatus:
        """Status shared by the set; ``released`` wins over the others."""
        statuses = {r.status for r in self.reservations}
        if ReservationStatus.RELEASED in statuses:
            return ReservationStatus.RELEASED
        if ReservationStatus.HELD in statuses:
            return ReservationStatus.HELD
        return ReservationStatus.CONFIRMED

    def quantities(self) -> dict:
        return {r.product_id: r.quantity for r in self.reservations}


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Identifier (UUID string) assigned before stock is reserved.
        buyer_id: Identifier of the buyer placing the order.
        items: Non-empty list of LineItem objects.
        shipping_address / billing_address: Addresses captured at checkout.
        payment_method: How the buyer pays.
        pricing: Totals snapshot computed at creation.
        status: Current OrderStatus.
        created_at: Creation timestamp (timezone aware).
        status_history: Every status the order went through, oldest first.
        discount_code: Normalized code applied to the order, if any.
        reservation_id: Reference to the stock ReservationSet.
        currency: ISO currency code (e.g. 'INR').
        version: Optimistic concurrency token, bumped on every update.
    """

    id: str
    buyer_id: str
    items: List[LineItem]
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod
    pricing: Pricing
    status: OrderStatus = OrderStatus.PENDING
    created_at: Optional[datetime] = None
    status_history: List[StatusChange] = field(default_factory=list)
    discount_code: Optional[str] = None
    reservation_id: Optional[str] = None
    currency: str = "INR"
    version: int = 1


SORT_OPTIONS = ("recent", "oldest", "highest", "lowest")


@dataclass(frozen=True)
class OrderQuery:
    """Filters and ordering for order listings."""

    status: Optional[OrderStatus] = None
    sort: str = "recent"


# ---- Ports (DIP) ----
class CatalogPort(Protocol):
    """Port describing the catalog read used at checkout."""

    def fetch(self, product_ids: Iterable[str]) -> dict:
        """Return snapshots for the known ids.

        Args:
            product_ids: Identifiers to look up.

        Returns:
            dict mapping product id to ProductSnapshot. Unknown ids are
            simply absent; ``catalog.CatalogSnapshotReader`` turns gaps into
            errors.

        Raises:
            DependencyUnavailable: If the catalog cannot be reached.
        """
        raise NotImplementedError()


class StockPort(Protocol):
    """Port describing the stock reservation ledger."""

    def reserve(self, order_id: str, items: Iterable[tuple]) -> ReservationSet:
        """Hold ``(product_id, quantity)`` pairs for an order, all or nothing.

        Raises:
            InsufficientStock: If any product lacks stock; nothing is held.
        """
        raise NotImplementedError()

    def confirm(self, order_id: str) -> ReservationSet:
        """Move the order's held reservations to confirmed (idempotent)."""
        raise NotImplementedError()

    def unconfirm(self, order_id: str) -> Optional[ReservationSet]:
        """Move confirmed reservations back to held (idempotent).

        Compensates a confirm whose order status change was not persisted,
        so the hold stays visible to the stale-hold sweep.
        """
        raise NotImplementedError()

    def release(self, order_id: str) -> Optional[ReservationSet]:
        """Release held or confirmed reservations, restoring stock once."""
        raise NotImplementedError()

    def expire_stale_holds(self, max_age: timedelta) -> List[str]:
        """Release held reservations older than ``max_age``.

        Returns:
            Ids of the orders whose holds were released.
        """
        raise NotImplementedError()


class DiscountStorePort(Protocol):
    """Port describing discount code storage."""

    def get(self, code: str) -> Optional[DiscountCode]:
        """Return the code (already normalized by the caller) or None."""
        raise NotImplementedError()

    def increment_usage(self, code: str) -> bool:
        """Increment usage if still under the limit.

        Returns:
            True if the counter was incremented, False if the limit was
            already reached or the code vanished.
        """
        raise NotImplementedError()


class OrderStorePort(Protocol):
    """Port describing order persistence."""

    def create(self, order: Order) -> Order:
        raise NotImplementedError()

    def get(self, order_id: str) -> Order:
        """Raises NotFound when the order does not exist."""
        raise NotImplementedError()

    def list_by_buyer(self, buyer_id: str, query: OrderQuery) -> List[Order]:
        raise NotImplementedError()

    def list_all(self, query: OrderQuery) -> List[Order]:
        """Every order in the store, for the seller's order screen."""
        raise NotImplementedError()

    def update_status(self, order_id: str, change: StatusChange, expected_version: int) -> Order:
        """Apply ``change`` if the stored version equals ``expected_version``.

        Returns:
            The updated order with its version bumped.

        Raises:
            NotFound: If the order does not exist.
            ConflictingUpdate: If the stored version differs.
        """
        raise NotImplementedError()


class EventPublisher(Protocol):
    """Fire-and-forget sink for order notification events."""

    def publish(self, event) -> None:
        raise NotImplementedError()
