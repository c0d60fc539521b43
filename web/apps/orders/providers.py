"""Service provider helpers for wiring OrderService with ports.

This module exposes a small factory function `get_order_service` that
returns a configured `OrderService` instance. Orders and discount codes are
always stored through the Django repositories. The catalog and stock ports
depend on ``settings.USE_HTTP_ADAPTERS``:

- enabled: the HTTP clients talking to the inventory service;
- disabled: a process-wide in-memory catalog with a
  ``StockReservationManager``, seeded from ``settings.LOCAL_CATALOG``. This
  is the mode used by tests and single-process local development.
"""

import threading

from django.conf import settings

from .adapters import InMemoryCatalog
from .events import LoggingEventPublisher
from .http_adapters import HttpCatalogClient, HttpStockClient
from .repository import DiscountRepository, OrderRepository
from .reservations import StockReservationManager
from .service import OrderService

_local_lock = threading.Lock()
_local_inventory = None


def get_local_inventory() -> InMemoryCatalog:
    """Return the process-wide in-memory catalog (created on first use).

    The catalog carries its ``StockReservationManager`` in ``.stock``.
    """
    global _local_inventory
    with _local_lock:
        if _local_inventory is None:
            catalog = InMemoryCatalog(stock=StockReservationManager())
            for product in getattr(settings, "LOCAL_CATALOG", []):
                catalog.add(**product)
            _local_inventory = catalog
        return _local_inventory


def reset_local_inventory() -> None:
    """Drop the in-memory catalog so the next call re-seeds it."""
    global _local_inventory
    with _local_lock:
        _local_inventory = None


def get_order_service() -> OrderService:
    """Return a configured OrderService instance.

    Returns:
        OrderService: A service instance with appropriate ports.
    """
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        catalog, stock = HttpCatalogClient(), HttpStockClient()
    else:
        catalog = get_local_inventory()
        stock = catalog.stock
    return OrderService(
        catalog=catalog,
        stock=stock,
        discounts=DiscountRepository(),
        store=OrderRepository(),
        events=LoggingEventPublisher(),
        currency=getattr(settings, "ORDERS_CURRENCY", "INR"),
    )
