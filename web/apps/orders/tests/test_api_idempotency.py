import pytest

from orders.models import IdempotencyKey, OrderModel

CREATE_URL = "/api/orders/"


def body(address_payload, quantity=2, product="P-100"):
    return {
        "buyer_id": "buyer-1",
        "items": [{"product_id": product, "quantity": quantity}],
        "shipping_address": address_payload,
    }


def post(client, data, key):
    return client.post(CREATE_URL, data=data, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)


@pytest.mark.django_db
def test_idempotent_same_payload_returns_same_order_on_retry(client, address_payload, local_inventory):
    r1 = post(client, body(address_payload), "idem-same-1")
    assert r1.status_code == 201

    r2 = post(client, body(address_payload), "idem-same-1")
    assert r2.status_code == 201
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"

    assert OrderModel.objects.count() == 1
    assert local_inventory.stock.available("P-100") == 8
    assert str(IdempotencyKey.objects.get(key="idem-same-1").order_id) == r1.json()["id"]


@pytest.mark.django_db
def test_idempotent_conflict_on_different_payload_with_same_key(client, address_payload):
    assert post(client, body(address_payload, quantity=2), "idem-conflict-1").status_code == 201
    r2 = post(client, body(address_payload, quantity=3), "idem-conflict-1")
    assert r2.status_code == 409
    assert r2.json()["detail"] == "IDEMPOTENCY_CONFLICT"


@pytest.mark.django_db
def test_idempotent_replay_preserves_422_status(client, address_payload):
    payload = body(address_payload, quantity=999)
    r1 = post(client, payload, "idem-422")
    assert r1.status_code == 422

    r2 = post(client, payload, "idem-422")
    assert r2.status_code == 422
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"


@pytest.mark.django_db
def test_key_still_in_progress_is_rejected(client, address_payload):
    from orders.idempotency import get_or_create_idempotent

    get_or_create_idempotent("idem-busy", body(address_payload))
    r = post(client, body(address_payload), "idem-busy")
    assert r.status_code == 409


@pytest.mark.django_db
def test_retryable_failure_is_not_stored(client, address_payload, monkeypatch):
    from orders import providers
    from orders.errors import DependencyUnavailable

    real = providers.get_order_service

    class DownService:
        def create_order(self, **kwargs):
            raise DependencyUnavailable()

    monkeypatch.setattr(providers, "get_order_service", lambda: DownService())
    assert post(client, body(address_payload), "idem-503").status_code == 503
    assert not IdempotencyKey.objects.filter(key="idem-503").exists()

    monkeypatch.setattr(providers, "get_order_service", real)
    r = post(client, body(address_payload), "idem-503")
    assert r.status_code == 201
    assert "Idempotent-Replay" not in r.headers
