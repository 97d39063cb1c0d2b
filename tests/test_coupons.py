from datetime import datetime, timedelta, timezone

import pytest

from gymshop.core.errors import Conflict, ValidationFailed
from gymshop.core.shop.coupons import CouponService, discount_for
from gymshop.core.shop.models import Coupon, DiscountType


def _iso(delta_days):
    return (datetime.now(timezone.utc) + timedelta(days=delta_days)).isoformat()


def test_discount_for_percentage_and_fixed():
    assert discount_for(Coupon(code="A", discount_percentage=10), 200) == 20.0
    assert discount_for(Coupon(code="B", discount_type=DiscountType.FIXED, discount_amount=50), 30) == 30.0
    assert discount_for(Coupon(code="C", discount_percentage=10), 0) == 0.0


def test_create_normalizes_code_and_rejects_duplicates(db):
    svc = CouponService(db)
    c = svc.create({"code": " save10 ", "discount_percentage": 10})
    assert c.code == "SAVE10"
    with pytest.raises(Conflict):
        svc.create({"code": "SAVE10"})
    with pytest.raises(ValidationFailed):
        svc.create({"discount_percentage": 5})


@pytest.mark.parametrize(
    "fields,message",
    [
        ({"is_active": False}, "Coupon is not active"),
        ({"expiration_date": _iso(-1)}, "Coupon has expired"),
    ],
)
def test_validate_rejects_unusable_coupons(db, fields, message):
    svc = CouponService(db)
    svc.create({"code": "BAD", "discount_percentage": 5, **fields})
    with pytest.raises(ValidationFailed) as e:
        svc.validate("bad")
    assert e.value.message == message


def test_validate_unknown_code(db):
    with pytest.raises(ValidationFailed) as e:
        CouponService(db).validate("NOPE")
    assert e.value.message == "Invalid coupon code"


def test_one_redemption_per_user(db):
    svc = CouponService(db)
    c = svc.create({"code": "ONCE", "discount_percentage": 5, "expiration_date": _iso(30)})
    svc.redeem("u1", c, "ORDER", "o1")

    with pytest.raises(ValidationFailed) as e:
        svc.validate("ONCE", "u1")
    assert e.value.message == "You have already used this coupon"
    assert svc.validate("ONCE", "u2").id == c.id

    assert svc.cancel_redemption("u1", c.id, "ORDER", "o1") is True
    assert svc.validate("ONCE", "u1").id == c.id


def test_usage_limit_counts_live_orders(client, member, catalog, db):
    svc = CouponService(db)
    c = svc.create({"code": "LIMIT1", "discount_percentage": 5, "max_redemptions": 1})
    client.post("/api/v1/cart/items", json={"product_id": "shaker"}, headers=member["headers"])
    r = client.post("/api/v1/orders", json={"coupon_code": "limit1"}, headers=member["headers"])
    assert r.status_code == 201

    with pytest.raises(ValidationFailed) as e:
        svc.validate("LIMIT1", "someone-else")
    assert e.value.message == "Coupon usage limit reached"
    assert svc.usage_stats(c.id)["remaining"] == 0


def test_validate_endpoint_previews_discount(client, member, db):
    CouponService(db).create({"code": "SAVE10", "discount_percentage": 10})
    r = client.post("/api/v1/coupons/validate", json={"code": "save10", "total": 200}, headers=member["headers"])
    assert r.status_code == 200
    body = r.json()
    assert body["valid"] is True
    assert body["discount"] == 20.0
    assert body["total_after_discount"] == 180.0

    r = client.post("/api/v1/coupons/validate", json={"code": "missing"}, headers=member["headers"])
    assert r.status_code == 400


def test_admin_coupon_crud(client, admin_user):
    h = admin_user["headers"]
    r = client.post("/api/v1/admin/coupons", json={"code": "summer", "discount_percentage": 15}, headers=h)
    assert r.status_code == 201
    cid = r.json()["id"]
    assert r.json()["code"] == "SUMMER"

    assert client.post("/api/v1/admin/coupons", json={"code": "SUMMER"}, headers=h).status_code == 409

    r = client.put(f"/api/v1/admin/coupons/{cid}", json={"discount_percentage": 20}, headers=h)
    assert r.json()["discount_percentage"] == 20

    listed = client.get("/api/v1/admin/coupons", headers=h).json()["items"]
    assert listed[0]["usage"]["total"] == 0

    r = client.get(f"/api/v1/admin/coupons/{cid}/usage", headers=h)
    assert r.json()["remaining"] is None

    assert client.delete(f"/api/v1/admin/coupons/{cid}", headers=h).status_code == 200
    assert client.delete(f"/api/v1/admin/coupons/{cid}", headers=h).status_code == 404
