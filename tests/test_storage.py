import json
import threading
import time

import pytest

from gymshop.core.errors import NotFound
from gymshop.core.shop.models import Coupon
from gymshop.core.storage import Database, open_database


def _db(tmp_path):
    return Database(root=tmp_path / "store")


def test_put_persists_collection_file(tmp_path):
    db = _db(tmp_path)
    c = db.collection("coupons", Coupon)
    c.put(Coupon(id="c1", code="SAVE10", discount_percentage=10))

    doc = json.loads((tmp_path / "store" / "coupons.json").read_text(encoding="utf-8"))
    assert doc["kind"] == "coupons"
    assert doc["items"]["c1"]["code"] == "SAVE10"
    assert c.get("c1").discount_percentage == 10


def test_transaction_rolls_back_on_error(tmp_path):
    db = _db(tmp_path)
    c = db.collection("coupons", Coupon)

    with pytest.raises(RuntimeError):
        with db.transaction():
            c.put(Coupon(id="c1", code="A"))
            assert c.get("c1") is not None  # visible inside the block
            raise RuntimeError("boom")

    assert c.get("c1") is None
    assert not (tmp_path / "store" / "coupons.json").exists()


def test_nested_transaction_joins_outer(tmp_path):
    db = _db(tmp_path)
    c = db.collection("coupons", Coupon)

    with pytest.raises(ValueError):
        with db.transaction():
            with db.transaction():
                c.put(Coupon(id="inner", code="INNER"))
            assert c.get("inner") is not None
            raise ValueError("outer fails")

    assert c.count() == 0


def test_store_outside_transaction_is_rejected(tmp_path):
    db = _db(tmp_path)
    with pytest.raises(RuntimeError):
        db.store("coupons", {})


def test_require_and_delete(tmp_path):
    db = _db(tmp_path)
    c = db.collection("coupons", Coupon)
    c.put(Coupon(id="c1", code="A"))

    assert c.delete("c1") is True
    assert c.delete("c1") is False
    with pytest.raises(NotFound):
        c.require("c1", "Coupon")


def test_open_database_is_cached_per_root(tmp_path):
    a = open_database(tmp_path / "x")
    b = open_database(tmp_path / "x")
    assert a is b


def test_reads_never_see_a_partial_write(tmp_path):
    db = _db(tmp_path)
    c = db.collection("coupons", Coupon)
    for i in range(200):
        c.put(Coupon(id=f"c{i}", code=f"CODE{i}"))

    stop = threading.Event()
    errors = []

    def writer():
        n = 0
        while not stop.is_set():
            n += 1
            c.put(Coupon(id="c1", code=f"CODE1-{n}"))

    t = threading.Thread(target=writer)
    t.start()
    try:
        misses = sum(1 for _ in range(500) if c.get("c0") is None)
    except ValueError as e:
        errors.append(e)
        misses = -1
    finally:
        stop.set()
        t.join()

    assert errors == []
    assert misses == 0
    assert not list((tmp_path / "store").glob("*.tmp"))


def test_transactions_serialize_across_database_handles(tmp_path):
    pytest.importorskip("fcntl")
    # Two handles on one root stand in for two processes: each takes its own flock.
    first = Database(root=tmp_path / "store")
    second = Database(root=tmp_path / "store")
    first.collection("coupons", Coupon).put(Coupon(id="c1", code="X", max_redemptions=0))

    def bump(db):
        c = db.collection("coupons", Coupon)
        with db.transaction():
            coupon = c.require("c1")
            coupon.max_redemptions += 1
            c.put(coupon)

    entered = threading.Event()
    with first.transaction():
        coupon = first.collection("coupons", Coupon).require("c1")
        t = threading.Thread(target=lambda: (entered.set(), bump(second)))
        t.start()
        entered.wait()
        time.sleep(0.2)
        coupon.max_redemptions += 1
        first.collection("coupons", Coupon).put(coupon)
    t.join()

    assert first.collection("coupons", Coupon).require("c1").max_redemptions == 2
