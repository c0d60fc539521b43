import httpx
import pytest

from orders import http_adapters
from orders.errors import DependencyUnavailable
from orders.http_adapters import HttpCatalogClient, HttpStockClient


class R:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body or {}

    def json(self):
        return self._body


@pytest.fixture(autouse=True)
def fast_retries(settings, monkeypatch):
    settings.HTTP_RETRY_MAX = 2
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)
    # reset circuit breakers so state does not leak between tests
    http_adapters._catalog_cb.on_success()
    http_adapters._stock_cb.on_success()
    yield
    http_adapters._catalog_cb.on_success()
    http_adapters._stock_cb.on_success()


def test_catalog_retries_on_5xx(monkeypatch):
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return R(500)
        assert headers["X-Retry-Count"] == "1"
        return R(200, {"products": {}})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    assert HttpCatalogClient(base_url="http://x").fetch(["P-1"]) == {}
    assert calls["n"] == 2


def test_retries_are_bounded(monkeypatch):
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        raise httpx.ReadTimeout("slow")

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    with pytest.raises(DependencyUnavailable):
        HttpStockClient(base_url="http://x").release("o-1")
    assert calls["n"] == 3


def test_no_retry_on_4xx(monkeypatch):
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(404, {"detail": "NOT_FOUND"})

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    assert HttpStockClient(base_url="http://x").release("o-1") is None
    assert calls["n"] == 1


def test_circuit_opens_after_consecutive_failures(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 0
    monkeypatch.setattr(http_adapters._stock_cb, "fail_threshold", 2)
    calls = {"n": 0}

    def fake_post(self, url, json=None, headers=None, **kwargs):
        calls["n"] += 1
        return R(503)

    monkeypatch.setattr(httpx.Client, "post", fake_post, raising=True)
    client = HttpStockClient(base_url="http://x")
    for _ in range(2):
        with pytest.raises(DependencyUnavailable):
            client.release("o-1")
    assert http_adapters._stock_cb.state == "OPEN"

    with pytest.raises(DependencyUnavailable) as e:
        client.release("o-1")
    assert "circuit is open" in e.value.message
    assert calls["n"] == 2
    # catalog reads have their own breaker
    assert http_adapters._catalog_cb.state == "CLOSED"


def test_half_open_probe_closes_circuit(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 0
    breaker = http_adapters._stock_cb
    monkeypatch.setattr(breaker, "fail_threshold", 1)
    monkeypatch.setattr(breaker, "reset_timeout", 0.0)
    breaker.on_failure()
    assert breaker.state == "HALF_OPEN"

    monkeypatch.setattr(httpx.Client, "post", lambda self, url, json=None, headers=None, **kw: R(404), raising=True)
    assert HttpStockClient(base_url="http://x").release("o-1") is None
    assert breaker.state == "CLOSED"
