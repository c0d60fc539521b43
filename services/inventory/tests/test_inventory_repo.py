from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from repo import InsufficientStockError, InventoryRepo, init_db, make_engine


class Clock:
    def __init__(self):
        self.now = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def repo(clock):
    engine = make_engine("sqlite://")
    init_db(engine)
    r = InventoryRepo(engine, clock=clock)
    r.upsert("A", Decimal("100.00"), 5)
    r.upsert("B", Decimal("40.00"), 1)
    r.upsert("OFF", Decimal("10.00"), 9, active=False)
    return r


def test_snapshot_omits_unknown_ids(repo):
    snap = repo.snapshot(["A", "OFF", "NOPE"])
    assert set(snap) == {"A", "OFF"}
    assert snap["A"] == {"price": "100.00", "stock": 5, "active": True, "discount_eligible": True}
    assert snap["OFF"]["active"] is False


def test_reserve_decrements_and_merges_duplicates(repo):
    out = repo.reserve("o1", [("A", 1), ("A", 2)])
    assert [(r["product_id"], r["quantity"], r["status"]) for r in out["reservations"]] == [("A", 3, "held")]
    assert repo.available("A") == 2


def test_reserve_is_all_or_nothing(repo):
    with pytest.raises(InsufficientStockError) as e:
        repo.reserve("o1", [("A", 2), ("B", 2)])
    assert e.value.product_id == "B"
    assert repo.available("A") == 5
    assert repo.available("B") == 1
    assert repo.release("o1") is None


def test_reserve_rejects_inactive_and_unknown_products(repo):
    with pytest.raises(InsufficientStockError):
        repo.reserve("o1", [("OFF", 1)])
    with pytest.raises(InsufficientStockError):
        repo.reserve("o2", [("NOPE", 1)])


def test_reserve_again_returns_active_set(repo):
    first = repo.reserve("o1", [("A", 1)])
    again = repo.reserve("o1", [("A", 1)])
    assert again["reservation_id"] == first["reservation_id"]
    assert repo.available("A") == 4


def test_release_restores_stock_exactly_once(repo):
    repo.reserve("o1", [("A", 2), ("B", 1)])
    first = repo.release("o1")
    second = repo.release("o1")
    assert {r["status"] for r in first["reservations"]} == {"released"}
    assert second["reservation_id"] == first["reservation_id"]
    assert repo.available("A") == 5
    assert repo.available("B") == 1


def test_confirm_then_release_restores_stock(repo):
    repo.reserve("o1", [("A", 2)])
    confirmed = repo.confirm("o1")
    assert confirmed["reservations"][0]["status"] == "confirmed"
    assert repo.available("A") == 3
    repo.release("o1")
    assert repo.available("A") == 5


def test_confirm_unknown_order_returns_none(repo):
    assert repo.confirm("missing") is None


def test_unconfirm_returns_rows_to_held(repo, clock):
    repo.reserve("o1", [("A", 2)])
    repo.confirm("o1")
    out = repo.unconfirm("o1")
    assert out["reservations"][0]["status"] == "held"
    assert repo.available("A") == 3
    assert repo.unconfirm("missing") is None

    clock.now += timedelta(minutes=20)
    assert repo.expire(timedelta(minutes=15)) == ["o1"]
    assert repo.available("A") == 5


def test_expire_releases_only_old_holds(repo, clock):
    repo.reserve("old", [("A", 1)])
    repo.reserve("kept", [("B", 1)])
    repo.confirm("kept")
    clock.now += timedelta(minutes=20)
    repo.reserve("young", [("A", 1)])

    released = repo.expire(timedelta(minutes=15))

    assert released == ["old"]
    assert repo.available("A") == 4
    assert repo.available("B") == 0
