import json
import re
from datetime import datetime, timedelta, timezone

import pytest

from gymshop.core.shop.payments import PaymentService


def _card_subscription(client, user):
    r = client.post(
        "/api/v1/subscriptions",
        json={"plan_id": "monthly", "payment_method": "CARD", "transaction_id": "txn-77"},
        headers=user["headers"],
    )
    assert r.status_code == 201
    return r.json()["subscription"], r.json()["payment"]


def test_manual_reference_format(db):
    assert re.fullmatch(r"PAY-\d{13}-[A-Z0-9]{9}", PaymentService(db).new_reference())


def test_verify_reports_in_flight_reference(client, member, catalog):
    sub, payment = _card_subscription(client, member)

    r = client.get(f"/api/v1/payments/verify/{payment['payment_reference']}")
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["status"] == "PENDING"
    assert body["order_reference"] == sub["subscription_number"]
    assert body["order_type"] == "SUBSCRIPTION"
    assert body["webhook_processed"] is False

    by_txn = client.get("/api/v1/payments/verify/txn-77").json()
    assert by_txn["payment_id"] == payment["id"]
    assert by_txn["success"] is False

    assert client.get("/api/v1/payments/verify/nope").status_code == 404


@pytest.mark.parametrize(
    "currency,expected",
    [
        ("SAR", ["paymob", "tabby"]),
        ("AED", ["paymob", "tabby"]),
        ("USD", ["paymob"]),
        ("EGP", []),
    ],
)
def test_providers_by_currency(client, currency, expected):
    body = client.get("/api/v1/payments/providers", headers={"X-User-Currency": currency}).json()
    assert body["currency"] == currency
    assert [p["id"] for p in body["providers"]] == expected


def test_paymob_always_settles_in_sar(client):
    body = client.get("/api/v1/payments/providers", headers={"X-User-Currency": "USD"}).json()
    assert body["providers"][0] == {"id": "paymob", "name": "Paymob", "methods": ["card", "apple_pay"], "settles_in": "SAR"}


def test_upload_proof(client, member, make_user, admin_user, catalog):
    _, payment = _card_subscription(client, member)
    url = f"/api/v1/payments/{payment['id']}/proof"
    proof = {"payment_proof_url": "https://cdn.example/receipt.png"}

    other = make_user(email="other@example.com")
    assert client.post(url, json=proof, headers=other["headers"]).status_code == 404

    r = client.post(url, json=proof, headers=member["headers"])
    assert r.status_code == 200
    assert r.json()["payment_proof_url"] == "https://cdn.example/receipt.png"

    client.post(f"/api/v1/admin/payments/{payment['id']}/approve", headers=admin_user["headers"])
    r = client.post(url, json=proof, headers=member["headers"])
    assert r.status_code == 400
    assert r.json()["detail"] == "Proof can only be attached to pending payments"


def test_admin_approve_activates_subscription(client, member, admin_user, catalog, tables, tmp_path):
    sub, payment = _card_subscription(client, member)
    r = client.post(f"/api/v1/admin/payments/{payment['id']}/approve", headers=admin_user["headers"])
    assert r.status_code == 200
    body = r.json()
    assert body["payment"]["status"] == "SUCCESS"
    assert body["payment"]["processed_at"]
    assert body["paymentable"] == {"type": "SUBSCRIPTION", "id": sub["id"], "status": "ACTIVE"}
    assert tables.users.require(member["id"]).loyalty_points == 50

    records = [json.loads(line) for line in (tmp_path / "audit.log").read_text(encoding="utf-8").splitlines()]
    changes = [r for r in records if r.get("type") == "payment_status"]
    assert changes == [
        {
            "ts_ms": changes[0]["ts_ms"],
            "type": "payment_status",
            "payment_id": payment["id"],
            "provider": "manual",
            "reference": payment["payment_reference"],
            "from": "PENDING",
            "to": "SUCCESS",
        }
    ]

    again = client.post(f"/api/v1/admin/payments/{payment['id']}/approve", headers=admin_user["headers"])
    assert again.status_code == 400
    assert again.json()["detail"] == "Only pending payments can be approved"


def test_admin_reject_rejects_subscription(client, member, admin_user, catalog):
    sub, payment = _card_subscription(client, member)
    r = client.post(
        f"/api/v1/admin/payments/{payment['id']}/reject",
        json={"reason": "Transfer not received"},
        headers=admin_user["headers"],
    )
    body = r.json()
    assert body["payment"]["status"] == "FAILED"
    assert body["payment"]["metadata"]["rejection_reason"] == "Transfer not received"
    assert body["paymentable"] == {"type": "SUBSCRIPTION", "id": sub["id"], "status": "REJECTED"}

    r = client.post(f"/api/v1/admin/payments/{payment['id']}/reject", json={}, headers=admin_user["headers"])
    assert r.status_code == 400


def test_review_is_admin_only(client, member, catalog):
    _, payment = _card_subscription(client, member)
    assert client.post(f"/api/v1/admin/payments/{payment['id']}/approve", headers=member["headers"]).status_code == 403
    assert client.get("/api/v1/admin/payments/pending", headers=member["headers"]).status_code == 403


def test_cleanup_stale_cancels_old_pending(client, db, member, catalog, tables):
    _, payment = _card_subscription(client, member)
    client.post(
        "/api/v1/programmes/fat-loss-12w/purchase",
        json={"payment_method": "VODAFONE_CASH", "payment_proof_url": "https://cdn.example/p.jpg"},
        headers=member["headers"],
    )
    svc = PaymentService(db)

    assert svc.cleanup_stale(older_than_minutes=30)["cancelled_payments"] == 0

    later = datetime.now(timezone.utc) + timedelta(hours=1)
    result = svc.cleanup_stale(older_than_minutes=30, now=later)
    assert result["cancelled_payments"] == 2
    assert result["cancelled_programme_purchases"] == 1
    cancelled = tables.payments.require(payment["id"])
    assert cancelled.status.value == "CANCELLED"
    assert cancelled.metadata["cancelled_reason"] == "stale"


def test_cleanup_endpoint(client, member, admin_user, catalog):
    _card_subscription(client, member)
    r = client.post("/api/v1/admin/payments/cleanup", json={}, headers=admin_user["headers"])
    assert r.status_code == 200
    assert r.json()["cancelled_payments"] == 0
    assert client.post("/api/v1/admin/payments/cleanup", json={"older_than_minutes": 0}, headers=admin_user["headers"]).status_code == 422


def test_history_and_pending_exclude_coin_payments(client, make_user, admin_user, catalog):
    rich = make_user(email="rich@example.com", points=2000)
    client.post("/api/v1/rewards/redeem", json={"item_id": "shaker", "category": "products"}, headers=rich["headers"])
    _, payment = _card_subscription(client, rich)

    history = client.get("/api/v1/payments", headers=rich["headers"]).json()
    assert history["total"] == 1
    assert history["items"][0]["id"] == payment["id"]

    pending = client.get("/api/v1/admin/payments/pending", headers=admin_user["headers"]).json()
    assert [p["id"] for p in pending["items"]] == [payment["id"]]


def test_stats(client, make_user, admin_user, catalog):
    rich = make_user(email="rich@example.com", points=2000)
    client.post("/api/v1/rewards/redeem", json={"item_id": "shaker", "category": "products"}, headers=rich["headers"])
    _card_subscription(client, rich)

    stats = client.get("/api/v1/admin/payments/stats", headers=admin_user["headers"]).json()
    assert stats["by_status"] == {"COMPLETED": 1, "PENDING": 1}
    assert stats["by_method"] == {"GYMMAWY_COINS": 1, "CARD": 1}
    assert stats["amounts"]["PENDING"] == {"USD": 45.0}
