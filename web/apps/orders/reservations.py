"""In-process stock reservation manager.

``StockReservationManager`` is the single point of truth for stock when the
engine runs without the inventory service (local development, tests, a
single-process deployment). It implements ``domain.StockPort``.

Concurrency model:
    - one ``threading.Lock`` per product guards its available count;
    - a batch reserve takes the locks of every product in the batch in
      sorted order (no deadlocks between overlapping baskets), checks all
      quantities, then decrements all of them, so a reservation is either
      fully held or not held at all;
    - a separate book lock guards the reservation records. It is never
      held while waiting for a product lock, and product locks are never
      held while waiting for it.
"""

import logging
import threading
import uuid
from collections import OrderedDict, defaultdict
from contextlib import ExitStack
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional

from .domain import ReservationSet, ReservationStatus, StockReservation
from .errors import InsufficientStock, NotFound, ValidationError

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (ReservationStatus.HELD, ReservationStatus.CONFIRMED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_quantities(items: Iterable[tuple]) -> "OrderedDict[str, int]":
    """Merge ``(product_id, quantity)`` pairs, keeping first-seen order.

    Raises:
        ValidationError: On a blank product id or a quantity below 1.
    """
    merged: "OrderedDict[str, int]" = OrderedDict()
    for product_id, quantity in items:
        if not product_id:
            raise ValidationError("Product id is required.", field="product_id")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("Quantity must be an integer >= 1.", product_id=product_id)
        merged[product_id] = merged.get(product_id, 0) + quantity
    if not merged:
        raise ValidationError("At least one item is required.", field="items")
    return merged


class StockReservationManager:
    """Hold, confirm and release stock for orders.

    Args:
        stock: Initial available quantity per product id.
        clock: Callable returning the current aware datetime.
    """

    def __init__(self, stock: Optional[dict] = None, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._available = dict(stock or {})
        self._locks = defaultdict(threading.Lock)
        self._registry_lock = threading.Lock()
        self._book_lock = threading.RLock()
        self._book = {}  # order_id -> ReservationSet

    # ---- stock ledger ----
    def _lock_for(self, product_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks[product_id]

    def available(self, product_id: str) -> int:
        with self._lock_for(product_id):
            return self._available.get(product_id, 0)

    def set_stock(self, product_id: str, quantity: int) -> None:
        """Set the available quantity of a product (seeding, restocks)."""
        if quantity < 0:
            raise ValidationError("Stock must not be negative.", product_id=product_id)
        with self._lock_for(product_id):
            self._available[product_id] = quantity

    def _restore(self, quantities: dict) -> None:
        for product_id, quantity in quantities.items():
            with self._lock_for(product_id):
                self._available[product_id] = self._available.get(product_id, 0) + quantity

    # ---- reservations ----
    def get(self, order_id: str) -> Optional[ReservationSet]:
        with self._book_lock:
            return self._book.get(order_id)

    def reserve(self, order_id: str, items: Iterable[tuple]) -> ReservationSet:
        """Atomically hold every ``(product_id, quantity)`` for ``order_id``.

        Re-issuing a reserve for an order that still holds stock returns the
        existing set unchanged.

        Raises:
            ValidationError: For malformed items.
            InsufficientStock: When any product lacks stock; nothing is held.
        """
        quantities = merge_quantities(items)
        existing = self.get(order_id)
        if existing is not None and existing.status != ReservationStatus.RELEASED:
            return existing

        with ExitStack() as stack:
            for product_id in sorted(quantities):
                stack.enter_context(self._lock_for(product_id))
            for product_id, quantity in quantities.items():
                if self._available.get(product_id, 0) < quantity:
                    logger.info(
                        "reservation rejected",
                        extra={"order_id": order_id, "product_id": product_id, "requested": quantity},
                    )
                    raise InsufficientStock(
                        f"Only {self._available.get(product_id, 0)} unit(s) of {product_id} available.",
                        product_id=product_id,
                    )
            for product_id, quantity in quantities.items():
                self._available[product_id] -= quantity

        now = self.clock()
        reservation_id = str(uuid.uuid4())
        rset = ReservationSet(
            reservation_id=reservation_id,
            order_id=order_id,
            reservations=tuple(
                StockReservation(
                    reservation_id=reservation_id,
                    order_id=order_id,
                    product_id=product_id,
                    quantity=quantity,
                    status=ReservationStatus.HELD,
                    created_at=now,
                    updated_at=now,
                )
                for product_id, quantity in quantities.items()
            ),
        )
        with self._book_lock:
            self._book[order_id] = rset
        logger.info("stock held", extra={"order_id": order_id, "reservation_id": reservation_id})
        return rset

    def confirm(self, order_id: str) -> ReservationSet:
        """Move held reservations of ``order_id`` to confirmed.

        Idempotent. Released reservations stay released; callers inspect
        the returned set's status.

        Raises:
            NotFound: If the order never reserved stock.
        """
        with self._book_lock:
            rset = self._book.get(order_id)
            if rset is None:
                raise NotFound("No reservation for this order.", order_id=order_id)
            now = self.clock()
            for r in rset.reservations:
                if r.status == ReservationStatus.HELD:
                    r.status = ReservationStatus.CONFIRMED
                    r.updated_at = now
            return rset

    def unconfirm(self, order_id: str) -> Optional[ReservationSet]:
        """Put confirmed reservations of ``order_id`` back on hold.

        ``created_at`` is kept, so an old hold is expired by the next sweep.
        Unknown orders are a no-op returning None.
        """
        with self._book_lock:
            rset = self._book.get(order_id)
            if rset is None:
                return None
            now = self.clock()
            for r in rset.reservations:
                if r.status == ReservationStatus.CONFIRMED:
                    r.status = ReservationStatus.HELD
                    r.updated_at = now
        logger.info("stock confirmation reverted", extra={"order_id": order_id})
        return rset

    def release(self, order_id: str) -> Optional[ReservationSet]:
        """Release every active reservation of ``order_id``.

        Stock is restored exactly once: a second call finds nothing active
        and does nothing. Unknown orders are a no-op returning None.
        """
        with self._book_lock:
            rset = self._book.get(order_id)
            if rset is None:
                return None
            restored = self._mark_released(rset)
        if restored:
            self._restore(restored)
            logger.info("stock released", extra={"order_id": order_id, "reservation_id": rset.reservation_id})
        return rset

    def _mark_released(self, rset: ReservationSet) -> dict:
        """Flag active reservations as released; caller holds the book lock."""
        restored = {}
        now = self.clock()
        for r in rset.reservations:
            if r.status in ACTIVE_STATUSES:
                r.status = ReservationStatus.RELEASED
                r.updated_at = now
                restored[r.product_id] = restored.get(r.product_id, 0) + r.quantity
        return restored

    def expire_stale_holds(self, max_age: timedelta) -> List[str]:
        """Release held reservations created more than ``max_age`` ago.

        Sets confirmed in the meantime are left alone. Sets released more
        than ``max_age`` ago are dropped from the book.
        """
        cutoff = self.clock() - max_age
        released = []
        to_restore = []
        with self._book_lock:
            for order_id, rset in self._book.items():
                if rset.status != ReservationStatus.HELD:
                    continue
                if min(r.created_at for r in rset.reservations) >= cutoff:
                    continue
                to_restore.append(self._mark_released(rset))
                released.append(order_id)
            forgotten = [
                order_id
                for order_id, rset in self._book.items()
                if rset.status == ReservationStatus.RELEASED
                and max(r.updated_at for r in rset.reservations) < cutoff
            ]
            for order_id in forgotten:
                del self._book[order_id]
        for restored in to_restore:
            self._restore(restored)
        if released:
            logger.info("stale holds expired", extra={"count": len(released)})
        return released
