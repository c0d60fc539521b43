"""In-process adapters for the orders domain ports.

These implement ``CatalogPort``, ``DiscountStorePort`` and
``OrderStorePort`` without any network or database calls. They are used by
unit tests and by local development, where the in-process
``reservations.StockReservationManager`` is the stock ledger. Stored
objects are deep-copied in and out so callers never share mutable state
with the store.
"""

import copy
import threading
from dataclasses import replace
from typing import Iterable, List, Optional

from .domain import DiscountCode, Order, OrderQuery, ProductSnapshot, StatusChange
from .errors import ConflictingUpdate, NotFound, ValidationError
from .pricing import to_money
from .reservations import StockReservationManager

SORT_KEYS = {
    "recent": (lambda o: o.created_at, True),
    "oldest": (lambda o: o.created_at, False),
    "highest": (lambda o: o.pricing.total, True),
    "lowest": (lambda o: o.pricing.total, False),
}


def sort_orders(orders: List[Order], sort: str) -> List[Order]:
    """Sort orders by one of the storefront list options."""
    if sort not in SORT_KEYS:
        raise ValidationError(f"Unknown sort option {sort!r}.", field="sort")
    key, reverse = SORT_KEYS[sort]
    return sorted(orders, key=key, reverse=reverse)


class InMemoryCatalog:
    """Catalog kept in a dict.

    When a ``StockReservationManager`` is attached, the available stock
    reported in snapshots is read from it, so reservations made by other
    checkouts are reflected immediately.
    """

    def __init__(self, stock: Optional[StockReservationManager] = None):
        self.stock = stock
        self._products = {}
        self._lock = threading.Lock()

    def add(
        self,
        product_id: str,
        price,
        stock: int = 0,
        active: bool = True,
        discount_eligible: bool = True,
    ) -> ProductSnapshot:
        """Register or replace a product and, if attached, seed its stock."""
        snap = ProductSnapshot(
            product_id=product_id,
            price=to_money(price),
            available_stock=stock,
            active=active,
            discount_eligible=discount_eligible,
        )
        with self._lock:
            self._products[product_id] = snap
        if self.stock is not None:
            self.stock.set_stock(product_id, stock)
        return snap

    def fetch(self, product_ids: Iterable[str]) -> dict:
        with self._lock:
            found = {pid: self._products[pid] for pid in product_ids if pid in self._products}
        if self.stock is None:
            return found
        return {pid: replace(snap, available_stock=self.stock.available(pid)) for pid, snap in found.items()}


class InMemoryDiscountStore:
    """Discount codes kept in a dict keyed by normalized code."""

    def __init__(self, codes: Iterable[DiscountCode] = ()):
        self._codes = {}
        self._lock = threading.Lock()
        for code in codes:
            self.add(code)

    def add(self, discount: DiscountCode) -> None:
        with self._lock:
            self._codes[discount.code.strip().upper()] = copy.deepcopy(discount)

    def get(self, code: str) -> Optional[DiscountCode]:
        with self._lock:
            found = self._codes.get(code)
            return copy.deepcopy(found) if found else None

    def increment_usage(self, code: str) -> bool:
        with self._lock:
            found = self._codes.get(code)
            if found is None:
                return False
            if found.usage_limit is not None and found.usage_count >= found.usage_limit:
                return False
            found.usage_count += 1
            return True


class InMemoryOrderStore:
    """Order store with optimistic versioning, guarded by a lock."""

    def __init__(self):
        self._orders = {}
        self._lock = threading.Lock()

    def create(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._orders:
                raise ConflictingUpdate("Order already exists.", order_id=order.id)
            self._orders[order.id] = copy.deepcopy(order)
            return copy.deepcopy(order)

    def get(self, order_id: str) -> Order:
        with self._lock:
            found = self._orders.get(order_id)
            if found is None:
                raise NotFound("Order not found.", order_id=order_id)
            return copy.deepcopy(found)

    def list_by_buyer(self, buyer_id: str, query: OrderQuery) -> List[Order]:
        with self._lock:
            orders = [
                copy.deepcopy(o)
                for o in self._orders.values()
                if o.buyer_id == buyer_id and (query.status is None or o.status == query.status)
            ]
        return sort_orders(orders, query.sort)

    def list_all(self, query: OrderQuery) -> List[Order]:
        with self._lock:
            orders = [
                copy.deepcopy(o) for o in self._orders.values() if query.status is None or o.status == query.status
            ]
        return sort_orders(orders, query.sort)

    def update_status(self, order_id: str, change: StatusChange, expected_version: int) -> Order:
        with self._lock:
            found = self._orders.get(order_id)
            if found is None:
                raise NotFound("Order not found.", order_id=order_id)
            if found.version != expected_version:
                raise ConflictingUpdate(order_id=order_id, version=found.version)
            found.status = change.status
            found.status_history.append(change)
            found.version += 1
            return copy.deepcopy(found)

    def __len__(self) -> int:
        with self._lock:
            return len(self._orders)
