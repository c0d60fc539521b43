"""Unit tests for the HTTP adapters to the inventory service.

These tests verify that the HTTP clients map responses to domain objects
and engine errors by monkeypatching ``httpx.Client.post``.
"""

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from orders import http_adapters
from orders.domain import ReservationStatus
from orders.errors import DependencyUnavailable, InsufficientStock, NotFound
from orders.http_adapters import HttpCatalogClient, HttpStockClient

RSET = {
    "reservation_id": "r-1",
    "order_id": "o-1",
    "reservations": [
        {
            "product_id": "P-100",
            "quantity": 2,
            "status": "held",
            "created_at": "2025-06-01T12:00:00+00:00",
            "updated_at": "2025-06-01T12:00:00+00:00",
        }
    ],
}


class DummyResp:
    """Minimal httpx-like response stub for adapter tests."""

    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}

    def json(self):
        return self._json


@pytest.fixture(autouse=True)
def closed_circuits(settings):
    settings.HTTP_RETRY_MAX = 0
    http_adapters._catalog_cb.on_success()
    http_adapters._stock_cb.on_success()
    yield
    http_adapters._catalog_cb.on_success()
    http_adapters._stock_cb.on_success()


def respond(monkeypatch, resp, seen=None):
    def fake_post(self, url, json=None, headers=None, **kw):
        if seen is not None:
            seen.append({"url": url, "json": json, "headers": headers})
        return resp

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)


def test_catalog_fetch_parses_snapshots(monkeypatch):
    seen = []
    respond(monkeypatch, DummyResp(200, {"products": {
        "P-100": {"price": "100.00", "stock": 7, "active": True, "discount_eligible": False},
    }}), seen)
    snaps = HttpCatalogClient(base_url="http://inventory:9001").fetch(["P-100", "GONE"])
    assert set(snaps) == {"P-100"}
    assert snaps["P-100"].price == Decimal("100.00")
    assert snaps["P-100"].available_stock == 7
    assert snaps["P-100"].discount_eligible is False
    assert seen[0]["url"] == "http://inventory:9001/snapshot"
    assert seen[0]["json"] == {"product_ids": ["P-100", "GONE"]}


def test_stock_reserve_ok(monkeypatch):
    seen = []
    respond(monkeypatch, DummyResp(201, RSET), seen)
    rset = HttpStockClient(base_url="http://inventory:9001").reserve("o-1", [("P-100", 2)])
    assert rset.reservation_id == "r-1"
    assert rset.status == ReservationStatus.HELD
    assert rset.quantities() == {"P-100": 2}
    assert seen[0]["json"] == {"order_id": "o-1", "items": [{"product_id": "P-100", "quantity": 2}]}


def test_stock_reserve_insufficient(monkeypatch):
    detail = {"reserved": False, "detail": "INSUFFICIENT_STOCK", "product_id": "P-100"}
    respond(monkeypatch, DummyResp(422, {"detail": detail}))
    with pytest.raises(InsufficientStock) as e:
        HttpStockClient(base_url="http://x").reserve("o-1", [("P-100", 99)])
    assert e.value.details["product_id"] == "P-100"


def test_stock_reserve_request_validation_422_is_unexpected(monkeypatch):
    respond(monkeypatch, DummyResp(422, {"detail": [{"loc": ["body", "items"], "msg": "too short"}]}))
    with pytest.raises(DependencyUnavailable):
        HttpStockClient(base_url="http://x").reserve("o-1", [("P-100", 1)])


def test_stock_confirm_and_release(monkeypatch):
    confirmed = dict(RSET, reservations=[dict(RSET["reservations"][0], status="confirmed")])
    respond(monkeypatch, DummyResp(200, confirmed))
    assert HttpStockClient(base_url="http://x").confirm("o-1").status == ReservationStatus.CONFIRMED

    respond(monkeypatch, DummyResp(404, {"detail": "NOT_FOUND"}))
    with pytest.raises(NotFound):
        HttpStockClient(base_url="http://x").confirm("o-1")
    assert HttpStockClient(base_url="http://x").release("o-1") is None


def test_stock_unconfirm(monkeypatch):
    seen = []
    respond(monkeypatch, DummyResp(200, RSET), seen)
    assert HttpStockClient(base_url="http://x").unconfirm("o-1").status == ReservationStatus.HELD
    assert seen[0]["url"] == "http://x/reservations/o-1/unconfirm"

    respond(monkeypatch, DummyResp(404, {"detail": "NOT_FOUND"}))
    assert HttpStockClient(base_url="http://x").unconfirm("o-1") is None


def test_stock_expire(monkeypatch):
    seen = []
    respond(monkeypatch, DummyResp(200, {"released": ["o-1", "o-2"]}), seen)
    assert HttpStockClient(base_url="http://x").expire_stale_holds(timedelta(minutes=15)) == ["o-1", "o-2"]
    assert seen[0]["json"] == {"max_age_seconds": 900.0}


def test_network_error_maps_to_dependency_unavailable(monkeypatch):
    def fake_post(self, url, json=None, headers=None, **kw):
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(DependencyUnavailable) as e:
        HttpCatalogClient(base_url="http://x").fetch(["P-100"])
    assert e.value.retryable is True


def test_request_id_is_propagated(monkeypatch):
    from gateway.middleware import REQUEST_ID_CTX

    seen = []
    respond(monkeypatch, DummyResp(200, {"products": {}}), seen)
    token = REQUEST_ID_CTX.set("rid-42")
    try:
        HttpCatalogClient(base_url="http://x").fetch(["P-100"])
    finally:
        REQUEST_ID_CTX.reset(token)
    assert seen[0]["headers"]["X-Request-ID"] == "rid-42"
    assert seen[0]["headers"]["X-Circuit-State"] == "CLOSED"
