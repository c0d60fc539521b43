from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

LOCAL_CATALOG = [
    {"product_id": "P-100", "price": "100.00", "stock": 10},
    {"product_id": "P-500", "price": "500.00", "stock": 5},
    {"product_id": "P-LAST", "price": "250.00", "stock": 1},
    {"product_id": "P-NODISC", "price": "200.00", "stock": 10, "discount_eligible": False},
    {"product_id": "P-OFF", "price": "50.00", "stock": 10, "active": False},
]


class FixedClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def local_inventory(settings):
    """Run every test against a freshly seeded in-process catalog."""
    from django.core.cache import cache

    from orders import providers

    settings.USE_HTTP_ADAPTERS = False
    settings.LOCAL_CATALOG = LOCAL_CATALOG
    providers.reset_local_inventory()
    cache.clear()  # throttle counters
    yield providers.get_local_inventory()
    providers.reset_local_inventory()


@pytest.fixture
def address():
    from orders.domain import Address

    return Address(full_name="Asha Rao", phone="+91 98450 00000", street="12 MG Road", city="Bengaluru",
                   state="KA", postal_code="560001")


@pytest.fixture
def address_payload():
    return {
        "full_name": "Asha Rao",
        "phone": "+91 98450 00000",
        "street": "12 MG Road",
        "city": "Bengaluru",
        "state": "KA",
        "postal_code": "560001",
    }


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def make_code():
    """Factory for DiscountCode values valid around ``NOW``."""
    from orders.domain import DiscountCode

    def make(code="SAVE20", percent_off="20", **kwargs):
        kwargs.setdefault("valid_from", NOW - timedelta(days=1))
        kwargs.setdefault("valid_until", NOW + timedelta(days=30))
        return DiscountCode(code=code, percent_off=Decimal(percent_off), **kwargs)

    return make


@pytest.fixture
def stock(clock):
    from orders.reservations import StockReservationManager

    return StockReservationManager(clock=clock)


@pytest.fixture
def catalog(stock):
    from orders.adapters import InMemoryCatalog

    catalog = InMemoryCatalog(stock=stock)
    for product in LOCAL_CATALOG:
        catalog.add(**product)
    return catalog


@pytest.fixture
def discount_store(make_code):
    from orders.adapters import InMemoryDiscountStore

    return InMemoryDiscountStore([
        make_code("SAVE20", "20", max_discount_amount=Decimal("150")),
        make_code("MIN500", "10", min_order_value=Decimal("500")),
        make_code("ONCE", "10", usage_limit=1),
    ])


@pytest.fixture
def order_store():
    from orders.adapters import InMemoryOrderStore

    return InMemoryOrderStore()


@pytest.fixture
def engine(catalog, stock, discount_store, order_store, clock):
    """OrderService wired to in-memory adapters and a fixed clock."""
    from orders.service import OrderService

    return OrderService(catalog, stock, discount_store, order_store, clock=clock)


@pytest.fixture
def db_discount(db):
    """Create DiscountCodeModel rows valid around the real current time."""
    from django.utils import timezone

    from orders.models import DiscountCodeModel

    def create(code="SAVE20", percent_off="20", **kwargs):
        now = timezone.now()
        kwargs.setdefault("valid_from", now - timedelta(days=1))
        kwargs.setdefault("valid_until", now + timedelta(days=30))
        return DiscountCodeModel.objects.create(code=code, percent_off=Decimal(percent_off), **kwargs)

    return create
