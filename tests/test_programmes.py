from datetime import datetime, timedelta, timezone

import pytest

from gymshop.core.shop.coupons import CouponService
from gymshop.core.shop.payments import PaymentService


def _buy(client, user, programme_id="fat-loss-12w", **body):
    payload = {"payment_method": "VODAFONE_CASH", "payment_proof_url": "https://cdn.example/proof.jpg", **body}
    return client.post(f"/api/v1/programmes/{programme_id}/purchase", json=payload, headers=user["headers"])


def test_purchase_creates_pending_purchase_and_payment(client, member, catalog):
    r = _buy(client, member)
    assert r.status_code == 201
    purchase, payment = r.json()["purchase"], r.json()["payment"]
    assert purchase["status"] == "PENDING"
    assert purchase["purchase_number"].startswith("PROG-")
    assert purchase["price"] == 40.0
    assert payment["method"] == "VODAFONE_CASH"
    assert payment["payment_proof_url"] == "https://cdn.example/proof.jpg"
    assert payment["paymentable_type"] == "PROGRAMME"


def test_purchase_priced_in_request_currency(client, member, catalog):
    headers = {**member["headers"], "X-User-Currency": "AED"}
    r = client.post(
        "/api/v1/programmes/fat-loss-12w/purchase",
        json={"payment_method": "PAYMOB", "via_gateway": True},
        headers=headers,
    )
    assert r.json()["purchase"]["price"] == 147.0
    assert r.json()["purchase"]["currency"] == "AED"
    assert r.json()["payment"] is None


def test_duplicate_purchase_conflicts(client, member, catalog):
    assert _buy(client, member).status_code == 201
    r = _buy(client, member)
    assert r.status_code == 409
    assert r.json()["detail"] == "You have already purchased this programme"


def test_rejected_purchase_can_be_bought_again(client, member, admin_user, catalog):
    purchase = _buy(client, member).json()["purchase"]
    r = client.post(
        f"/api/v1/admin/programmes/purchases/{purchase['id']}/reject",
        json={"reason": "No proof"},
        headers=admin_user["headers"],
    )
    assert r.json()["status"] == "REJECTED"
    assert _buy(client, member).status_code == 201


def test_admin_approve_completes_and_awards(client, member, admin_user, catalog, tables):
    purchase = _buy(client, member).json()["purchase"]
    pending = client.get("/api/v1/admin/programmes/purchases/pending", headers=admin_user["headers"]).json()["items"]
    assert [p["id"] for p in pending] == [purchase["id"]]

    r = client.post(f"/api/v1/admin/programmes/purchases/{purchase['id']}/approve", headers=admin_user["headers"])
    assert r.json()["status"] == "COMPLETE"
    assert tables.users.require(member["id"]).loyalty_points == 40


def test_my_programmes_embeds_programme(client, member, catalog):
    _buy(client, member)
    items = client.get("/api/v1/programmes/mine", headers=member["headers"]).json()["items"]
    assert len(items) == 1
    assert items[0]["programme"]["name"] == "12 Week Fat Loss"


@pytest.mark.parametrize(
    "programme_id,body,status",
    [
        ("missing", {}, 400),
        ("fat-loss-12w", {"payment_proof_url": None}, 400),
        ("fat-loss-12w", {"payment_method": "CASH"}, 400),
    ],
)
def test_purchase_validation(client, member, catalog, programme_id, body, status):
    assert _buy(client, member, programme_id, **body).status_code == status


def test_inactive_programme_not_purchasable(client, member, admin_user, catalog):
    client.put("/api/v1/admin/programmes/fat-loss-12w", json={"is_active": False}, headers=admin_user["headers"])
    r = _buy(client, member)
    assert r.json()["detail"] == "Programme not available"


def test_timed_out_purchase_releases_coupon(client, db, member, catalog, tables):
    CouponService(db).create({"code": "FIT10", "discount_percentage": 10})
    purchase = _buy(client, member, coupon_code="FIT10").json()["purchase"]
    assert purchase["price"] == 36.0
    assert tables.redemptions.count() == 1

    later = datetime.now(timezone.utc) + timedelta(minutes=45)
    assert PaymentService(db).cleanup_stale(now=later)["cancelled_programme_purchases"] == 1

    stored = tables.purchases.require(purchase["id"])
    assert stored.status.value == "CANCELLED"
    assert stored.cancellation_reason == "Payment timeout"
    assert stored.cancelled_at
    assert tables.redemptions.count() == 0

    again = _buy(client, member, coupon_code="FIT10")
    assert again.status_code == 201
    assert again.json()["purchase"]["coupon_id"] == stored.coupon_id
