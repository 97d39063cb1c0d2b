from datetime import datetime, timedelta, timezone

import pytest

from gymshop.core.errors import GatewayError
from gymshop.core.gateways.tabby import map_tabby_status
from gymshop.core.reconcile.tabby import MAX_SWEEP_ERRORS, TabbyCaptureSweep, TabbyWebhookProcessor, merchant_urls
from gymshop.core.shop.models import PaymentStatus
from gymshop.core.shop.payments import PaymentService

WEBHOOK = "/api/v1/payments/tabby/webhook"


def _checkout(client, user, **extra):
    body = {"amount": 225, "currency": "SAR", "items": [{"title": "Whey", "quantity": 1, "unit_price": 225}], **extra}
    return client.post("/api/v1/payments/tabby/checkout", json=body, headers=user["headers"])


def _order(client, user):
    client.post("/api/v1/cart/items", json={"product_id": "shaker", "quantity": 2}, headers=user["headers"])
    return client.post("/api/v1/orders", json={"currency": "SAR"}, headers=user["headers"]).json()


def _event(client, sign, event, payment_id="tp_1", status=None):
    raw, headers = sign({"event": event, "payment": {"id": payment_id, "status": status or event.split(".")[-1].upper()}})
    r = client.post(WEBHOOK, content=raw, headers=headers)
    assert r.status_code == 200
    assert r.json() == {"received": True}
    return r


def test_status_mapping():
    assert map_tabby_status("closed") == "COMPLETED"
    assert map_tabby_status("AUTHORIZED") == "AUTHORIZED"
    assert map_tabby_status("EXPIRED") == "FAILED"
    assert map_tabby_status("weird") == "PENDING"


def test_parse_accepts_bare_payment_bodies():
    assert TabbyWebhookProcessor.parse({"id": "tp_9", "status": "closed"})["event"] == "payment.closed"
    assert TabbyWebhookProcessor.parse({"event": "payment.created", "data": {"id": "x"}})["id"] == "x"


def test_merchant_urls():
    urls = merchant_urls("PAY-1", base="https://shop.example/")
    assert urls["cancel"] == "https://shop.example/payment/cancel?payment_id=PAY-1"


# ------------------------------------------------------------
# Checkout
# ------------------------------------------------------------
def test_checkout_creates_pending_payment(client, member, tabby_fake, tables):
    r = _checkout(client, member)
    assert r.status_code == 201
    body = r.json()
    assert body["checkout_session"]["id"] == "cs_1"
    assert body["checkout_session"]["checkout_url"] == "https://checkout.tabby.ai/1"
    assert body["payment"]["transaction_id"] == "tp_1"
    assert body["payment"]["status"] == "PENDING"
    assert body["payment"]["method"] == "TABBY"

    sent = tabby_fake.sessions[0]
    assert sent["payment"]["amount"] == "225.00"
    assert sent["payment"]["buyer"]["email"] == "member@example.com"
    assert sent["payment"]["order"]["reference_id"] == body["payment"]["payment_reference"]
    assert sent["merchant_urls"]["success"].startswith("https://shop.example/payment/success?payment_id=PAY-")


def test_checkout_currency_guard(client, member, tabby_fake):
    r = _checkout(client, member, currency="USD")
    assert r.status_code == 400
    assert tabby_fake.sessions == []


def test_checkout_rejected_by_prescoring(client, member, tabby_fake, tables):
    tabby_fake.session_status = "rejected"
    r = _checkout(client, member)
    assert r.status_code == 400
    body = r.json()
    assert body["tabby_status"] == "rejected"
    assert body["message_en"].startswith("Sorry, Tabby")
    assert body["message_ar"]
    assert tables.payments.count() == 0


def test_checkout_links_own_order_only(client, member, make_user, tabby_fake, catalog):
    order = _order(client, member)
    r = _checkout(client, member, paymentable_type="order", paymentable_id=order["id"])
    assert r.json()["payment"]["paymentable_type"] == "ORDER"

    other = make_user(email="other@example.com")
    r = _checkout(client, other, paymentable_type="ORDER", paymentable_id=order["id"])
    assert r.status_code == 404


def test_availability(client):
    assert client.get("/api/v1/payments/tabby/availability", params={"currency": "aed"}).json()["available"] is True
    body = client.get("/api/v1/payments/tabby/availability").json()
    assert body == {"currency": "USD", "available": False, "supported_currencies": ["SAR", "AED"]}


# ------------------------------------------------------------
# Webhook
# ------------------------------------------------------------
def test_webhook_rejects_bad_signature(client, tabby_fake):
    r = client.post(WEBHOOK, content=b"{}", headers={"x-tabby-signature": "nope"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid signature"


def test_authorized_activates_and_captures(client, member, tabby_fake, catalog, tables, tabby_sign):
    order = _order(client, member)
    payment = _checkout(client, member, amount=60, paymentable_type="ORDER", paymentable_id=order["id"]).json()["payment"]

    _event(client, tabby_sign, "payment.authorized")

    stored = tables.payments.require(payment["id"])
    assert stored.status == PaymentStatus.SUCCESS
    assert stored.metadata["tabby_status"] == "CLOSED"
    assert stored.metadata["capture_id"] == "cap_1"
    assert tabby_fake.captures == [("tp_1", 60.0, f"auto-capture-{payment['payment_reference']}")]
    assert tables.orders.require(order["id"]).status.value == "PAID"

    _event(client, tabby_sign, "payment.authorized")
    assert len(tabby_fake.captures) == 1
    assert len(tables.payments.require(payment["id"]).metadata["webhook_replays"]) == 1


def test_failed_capture_is_left_for_sweep(client, member, admin_user, tabby_fake, tables, tabby_sign):
    payment = _checkout(client, member).json()["payment"]
    tabby_fake.capture_error = GatewayError("Tabby request failed: HTTP 500")
    _event(client, tabby_sign, "payment.authorized")

    stored = tables.payments.require(payment["id"])
    assert stored.status == PaymentStatus.SUCCESS
    assert stored.metadata["tabby_status"] == "AUTHORIZED"
    assert "captured_at" not in stored.metadata

    tabby_fake.capture_error = None
    tabby_fake.remote["tp_1"] = "AUTHORIZED"
    r = client.post("/api/v1/admin/payments/tabby/sweep", json={}, headers=admin_user["headers"])
    assert r.json() == {"checked": 1, "fulfilled": 0, "captured": 1, "closed": 0, "failed": 0, "errors": 0}

    stored = tables.payments.require(payment["id"])
    assert stored.metadata["captured_by"] == "sweep"
    assert stored.metadata["tabby_status"] == "CLOSED"


def _authorized_uncaptured(client, member, tabby_fake, tabby_sign):
    payment = _checkout(client, member).json()["payment"]
    tabby_fake.capture_error = GatewayError("down")
    _event(client, tabby_sign, "payment.authorized")
    tabby_fake.capture_error = None
    return payment


def test_sweep_follows_remote_state(client, member, tabby_fake, db, tables, tabby_sign):
    closed = _authorized_uncaptured(client, member, tabby_fake, tabby_sign)
    tabby_fake.remote["tp_1"] = "CLOSED"
    report = TabbyCaptureSweep(db, tabby_fake).run()
    assert report["closed"] == 1
    assert tables.payments.require(closed["id"]).metadata["captured_by"] == "remote"

    expired = _checkout(client, member).json()["payment"]
    tabby_fake.capture_error = GatewayError("down")
    _event(client, tabby_sign, "payment.authorized", payment_id="tp_2")
    tabby_fake.remote["tp_2"] = "EXPIRED"
    report = TabbyCaptureSweep(db, tabby_fake).run()
    assert report["failed"] == 1
    assert tables.payments.require(expired["id"]).status == PaymentStatus.FAILED


def test_sweep_gives_up_after_repeated_errors(client, member, tabby_fake, db, tables, tabby_sign):
    payment = _authorized_uncaptured(client, member, tabby_fake, tabby_sign)
    sweep = TabbyCaptureSweep(db, tabby_fake)
    for _ in range(MAX_SWEEP_ERRORS - 1):
        assert sweep.run()["errors"] == 1
    assert tables.payments.require(payment["id"]).status == PaymentStatus.SUCCESS

    report = sweep.run()
    assert report["failed"] == 1
    stored = tables.payments.require(payment["id"])
    assert stored.status == PaymentStatus.FAILED
    assert stored.metadata["tabby_status"] == "CAPTURE_FAILED"
    assert stored.metadata["cron_error_count"] == MAX_SWEEP_ERRORS
    assert sweep.run()["checked"] == 0


def test_rejected_event_fails_payment(client, member, tabby_fake, tables, tabby_sign):
    payment = _checkout(client, member).json()["payment"]
    body = {"event": "payment.rejected", "payment": {"id": "tp_1", "status": "REJECTED", "rejection_reason": "not_approved"}}
    raw, headers = tabby_sign(body)
    client.post(WEBHOOK, content=raw, headers=headers)

    stored = tables.payments.require(payment["id"])
    assert stored.status == PaymentStatus.FAILED
    assert stored.metadata["rejection_reason"] == "not_approved"


def test_updated_closed_settles_pending_payment(client, member, tabby_fake, tables, tabby_sign):
    payment = _checkout(client, member).json()["payment"]
    _event(client, tabby_sign, "payment.updated", status="CLOSED")
    stored = tables.payments.require(payment["id"])
    assert stored.status == PaymentStatus.SUCCESS
    assert stored.metadata["tabby_status"] == "CLOSED"
    assert tabby_fake.captures == []


def test_created_and_unknown_events_are_acknowledged(client, member, tabby_fake, tables, tabby_sign):
    payment = _checkout(client, member).json()["payment"]
    _event(client, tabby_sign, "payment.created", status="NEW")
    _event(client, tabby_sign, "payment.authorized", payment_id="tp_unknown")
    assert tables.payments.require(payment["id"]).status == PaymentStatus.PENDING


def test_unified_webhook_dispatches_to_tabby(client, member, tabby_fake, tables, tabby_sign):
    payment = _checkout(client, member).json()["payment"]
    raw, headers = tabby_sign({"event": "payment.authorized", "payment": {"id": "tp_1", "status": "AUTHORIZED"}})
    r = client.post("/api/v1/payments/webhook/TABBY", content=raw, headers=headers)
    assert r.json() == {"received": True}
    assert tables.payments.require(payment["id"]).status == PaymentStatus.SUCCESS


# ------------------------------------------------------------
# Merchant operations
# ------------------------------------------------------------
def test_capture_refund_close(client, member, admin_user, tabby_fake, tables, tabby_sign):
    h = admin_user["headers"]
    payment = _checkout(client, member).json()["payment"]

    r = client.post("/api/v1/admin/payments/tabby/tp_1/close", headers=h)
    assert r.status_code == 400

    r = client.post("/api/v1/admin/payments/tabby/tp_1/capture", json={}, headers=h)
    assert r.status_code == 400

    tabby_fake.capture_error = GatewayError("down")
    _event(client, tabby_sign, "payment.authorized")
    tabby_fake.capture_error = None

    r = client.post(f"/api/v1/admin/payments/tabby/{payment['payment_reference']}/capture", json={"amount": 100}, headers=h)
    assert r.json()["status"] == "COMPLETED"
    assert r.json()["metadata"]["tabby_status"] == "CLOSED"
    assert tabby_fake.captures[-1][:2] == ("tp_1", 100.0)

    r = client.post("/api/v1/admin/payments/tabby/tp_1/refund", json={"reason": "Returned"}, headers=h)
    assert r.json()["status"] == "REFUNDED"
    assert tabby_fake.refunds == [("tp_1", 225.0, "Returned")]

    assert client.post("/api/v1/admin/payments/tabby/missing/refund", json={}, headers=h).status_code == 404


def test_status_is_owner_scoped(client, member, admin_user, make_user, tabby_fake):
    _checkout(client, member)
    r = client.get("/api/v1/payments/tabby/tp_1/status", headers=member["headers"])
    assert r.json()["status"] == "PENDING"

    other = make_user(email="other@example.com")
    r = client.get("/api/v1/payments/tabby/tp_1/status", headers=other["headers"])
    assert r.status_code == 404
    assert r.json()["payment_id"] == "tp_1"

    assert client.get("/api/v1/payments/tabby/cs_1/status", headers=admin_user["headers"]).status_code == 200


def test_register_webhook_defaults_to_versioned_route(client, admin_user, tabby_fake):
    r = client.post("/api/v1/admin/payments/tabby/webhooks", json={"is_test": True}, headers=admin_user["headers"])
    assert r.json()["webhook"]["url"] == "https://api.example/api/v1/payments/tabby/webhook"
    assert r.json()["webhook"]["currency"] == "SAR"

    items = client.get("/api/v1/admin/payments/tabby/webhooks", headers=admin_user["headers"]).json()["items"]
    assert len(items) == 1


# ------------------------------------------------------------
# Late settlement and interrupted fulfilment
# ------------------------------------------------------------
def test_authorized_after_stale_cleanup_pays_order(client, db, member, tabby_fake, catalog, tables, tabby_sign):
    order = _order(client, member)
    payment = _checkout(client, member, amount=60, paymentable_type="ORDER", paymentable_id=order["id"]).json()["payment"]
    later = datetime.now(timezone.utc) + timedelta(minutes=45)
    PaymentService(db).cleanup_stale(now=later)
    assert tables.payments.require(payment["id"]).status == PaymentStatus.CANCELLED

    _event(client, tabby_sign, "payment.authorized")

    stored = tables.payments.require(payment["id"])
    assert stored.status == PaymentStatus.SUCCESS
    assert stored.metadata["reopened_at"]
    assert stored.metadata["fulfilled_at"]
    assert "webhook_replays" not in stored.metadata
    assert tables.orders.require(order["id"]).status.value == "PAID"
    assert len(tabby_fake.captures) == 1


def test_rejected_after_stale_cleanup_is_recorded_as_replay(client, db, member, tabby_fake, tables, tabby_sign):
    payment = _checkout(client, member).json()["payment"]
    later = datetime.now(timezone.utc) + timedelta(minutes=45)
    PaymentService(db).cleanup_stale(now=later)

    _event(client, tabby_sign, "payment.rejected")
    stored = tables.payments.require(payment["id"])
    assert stored.status == PaymentStatus.CANCELLED
    assert len(stored.metadata["webhook_replays"]) == 1


def test_sweep_finishes_interrupted_fulfilment(db, member, client, tabby_fake, catalog, tables, monkeypatch):
    order = _order(client, member)
    payment = _checkout(client, member, amount=60, paymentable_type="ORDER", paymentable_id=order["id"]).json()["payment"]

    def crash(self, payment):
        raise RuntimeError("worker died")

    body = {"event": "payment.authorized", "payment": {"id": "tp_1", "status": "AUTHORIZED"}}
    with monkeypatch.context() as m, pytest.raises(RuntimeError):
        m.setattr(TabbyWebhookProcessor, "fulfil", crash)
        TabbyWebhookProcessor(db, tabby_fake).handle(TabbyWebhookProcessor.parse(body), body)

    stored = tables.payments.require(payment["id"])
    assert stored.status == PaymentStatus.SUCCESS
    assert "fulfilled_at" not in stored.metadata
    assert tables.orders.require(order["id"]).status.value == "PENDING"

    tabby_fake.remote["tp_1"] = "AUTHORIZED"
    report = TabbyCaptureSweep(db, tabby_fake).run()
    assert report["fulfilled"] == 1
    assert report["captured"] == 1
    assert tables.orders.require(order["id"]).status.value == "PAID"
    assert tables.payments.require(payment["id"]).metadata["fulfilled_at"]

    assert TabbyCaptureSweep(db, tabby_fake).run()["fulfilled"] == 0


def test_delete_webhook(client, admin_user, tabby_fake):
    h = admin_user["headers"]
    hook = client.post("/api/v1/admin/payments/tabby/webhooks", json={}, headers=h).json()["webhook"]
    r = client.delete(f"/api/v1/admin/payments/tabby/webhooks/{hook['id']}", headers=h)
    assert r.json() == {"deleted": hook["id"]}
    assert client.get("/api/v1/admin/payments/tabby/webhooks", headers=h).json()["items"] == []
