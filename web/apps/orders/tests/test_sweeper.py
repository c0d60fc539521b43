import threading
from datetime import datetime, timedelta, timezone
from io import StringIO

import pytest
from django.core.management import CommandError, call_command

from orders import providers
from orders.models import OrderModel
from orders.sweeper import HoldSweeper, build_sweeper, start_local_sweeper, stop_local_sweeper


class FakeService:
    def __init__(self, fail_first=False):
        self.calls = []
        self.fail_first = fail_first
        self.swept = threading.Event()

    def expire_stale_holds(self, max_age):
        self.calls.append(max_age)
        if self.fail_first and len(self.calls) == 1:
            raise RuntimeError("inventory down")
        self.swept.set()
        return ["o-1"]


def test_sweep_once_passes_max_age():
    service = FakeService()
    sweeper = HoldSweeper(lambda: service, max_age=timedelta(minutes=15))
    assert sweeper.sweep_once() == ["o-1"]
    assert service.calls == [timedelta(minutes=15)]


def test_thread_survives_failed_sweep_and_stops():
    service = FakeService(fail_first=True)
    sweeper = HoldSweeper(lambda: service, max_age=timedelta(minutes=15), interval=0.01)
    sweeper.start()
    try:
        assert service.swept.wait(timeout=5)
        assert sweeper.running
    finally:
        sweeper.stop(timeout=5)
    assert not sweeper.running
    assert len(service.calls) >= 2


@pytest.fixture
def local_sweeper_settings(settings):
    settings.ORDERS_SWEEPER_AUTOSTART = True
    settings.ORDERS_SWEEP_INTERVAL_SECS = 60
    settings.ORDERS_HOLD_MAX_AGE_SECS = 900
    yield settings
    stop_local_sweeper(timeout=5)


def test_local_sweeper_starts_once_per_process(local_sweeper_settings):
    service = FakeService()
    first = start_local_sweeper(lambda: service)
    second = start_local_sweeper(lambda: FakeService())

    assert first is second
    assert first.running
    assert service.swept.wait(timeout=5)
    assert first.max_age == timedelta(seconds=900)


@pytest.mark.parametrize("flag", ["USE_HTTP_ADAPTERS", "autostart_off"])
def test_local_sweeper_not_started(local_sweeper_settings, flag):
    if flag == "USE_HTTP_ADAPTERS":
        local_sweeper_settings.USE_HTTP_ADAPTERS = True
    else:
        local_sweeper_settings.ORDERS_SWEEPER_AUTOSTART = False
    assert start_local_sweeper(lambda: FakeService()) is None


@pytest.mark.django_db
def test_local_sweep_cancels_stale_orders(client, address_payload, local_inventory):
    r = client.post(
        "/api/orders/",
        data={"buyer_id": "b1", "items": [{"product_id": "P-100", "quantity": 3}], "shipping_address": address_payload},
        content_type="application/json",
    )
    assert r.status_code == 201
    assert local_inventory.stock.available("P-100") == 7

    later = datetime.now(timezone.utc) + timedelta(hours=1)
    local_inventory.stock.clock = lambda: later
    assert build_sweeper().sweep_once() == [r.json()["id"]]

    assert local_inventory.stock.available("P-100") == 10
    order = OrderModel.objects.get(id=r.json()["id"])
    assert order.status == "cancelled"
    assert order.history.last().reason == "reservation expired"


def test_sweep_holds_command_refuses_in_process_ledger():
    with pytest.raises(CommandError, match="USE_HTTP_ADAPTERS"):
        call_command("sweep_holds", "--once")


def test_sweep_holds_command_with_inventory_service(settings, monkeypatch):
    settings.USE_HTTP_ADAPTERS = True
    service = FakeService()
    monkeypatch.setattr(providers, "get_order_service", lambda: service)
    out = StringIO()
    call_command("sweep_holds", "--once", "--max-age", "600", stdout=out)

    assert "released 1 hold(s)" in out.getvalue()
    assert service.calls == [timedelta(seconds=600)]
