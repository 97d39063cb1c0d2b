"""
Tabby checkout, webhook events and the capture sweep.

Lifecycle of a TABBY payment:
    checkout            -> PENDING (transaction_id = Tabby payment id)
    payment.authorized  -> SUCCESS, entity activated, auto-capture attempted
    payment.closed      -> SUCCESS, tabby_status CLOSED
    rejected / expired  -> FAILED

Authorized payments whose capture failed, and settled payments whose
fulfilment never ran, are retried by TabbyCaptureSweep.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from gymshop.core.config import frontend_url
from gymshop.core.errors import (
    GatewayUnavailable,
    NotFound,
    ShopError,
    Unauthorized,
    ValidationFailed,
)
from gymshop.core.gateways.tabby import TABBY_CURRENCIES, TabbyClient, map_tabby_status, verify_signature
from gymshop.core.observability.audit import audit_payment
from gymshop.core.observability.metrics import inc_named, record_webhook
from gymshop.core.shop.fulfilment import Fulfilment
from gymshop.core.shop.models import (
    Payment,
    PaymentableType,
    PaymentMethod,
    PaymentStatus,
    _utc_now_iso,
    money,
)
from gymshop.core.shop.payments import PaymentService, is_stale_cancelled
from gymshop.core.shop.state_machine import can_transition, is_terminal
from gymshop.core.shop.tables import Tables
from gymshop.core.storage import Database

log = logging.getLogger("gymshop.payments.tabby")

SIGNATURE_HEADERS = ("x-tabby-signature", "x-signature")
MAX_SWEEP_ERRORS = 5

REJECTED_EN = "Sorry, Tabby is unable to approve this purchase, please use an alternative payment method for your order."
REJECTED_AR = "نأسف، تابي غير قادرة على الموافقة على هذه العملية. الرجاء استخدام طريقة دفع أخرى."


def is_available(currency: Optional[str]) -> bool:
    return (currency or "").upper() in TABBY_CURRENCIES


def merchant_urls(reference: str, base: Optional[str] = None) -> Dict[str, str]:
    base = (base or frontend_url()).rstrip("/")
    return {
        "success": f"{base}/payment/success?payment_id={reference}",
        "cancel": f"{base}/payment/cancel?payment_id={reference}",
        "failure": f"{base}/payment/failure?payment_id={reference}",
    }


def _amount(value: Any) -> str:
    return f"{float(value):.2f}"


def _checkout_url(session: Mapping[str, Any]) -> Optional[str]:
    products = ((session.get("configuration") or {}).get("available_products") or {})
    installments = products.get("installments") or []
    return installments[0].get("web_url") if installments else None


class TabbyCheckout:
    def __init__(self, db: Database, client: TabbyClient):
        self.db = db
        self.t = Tables(db)
        self.client = client
        self.payments = PaymentService(db)

    def build_payment(self, user, req: Mapping[str, Any], reference: str) -> Dict[str, Any]:
        buyer = dict(req.get("buyer") or {})
        buyer.setdefault("email", user.email)
        buyer.setdefault("phone", user.mobile_number)
        buyer.setdefault("name", f"{user.first_name} {user.last_name}".strip())

        items = [
            {
                "title": i.get("title"),
                "description": i.get("description") or "",
                "quantity": int(i.get("quantity") or 1),
                "unit_price": _amount(i.get("unit_price") or 0),
                "reference_id": i.get("reference_id") or "",
                "category": i.get("category") or "",
            }
            for i in (req.get("items") or [])
        ]

        payment: Dict[str, Any] = {
            "amount": _amount(req["amount"]),
            "currency": req["currency"],
            "description": req.get("description") or "Payment for order",
            "buyer": buyer,
            "buyer_history": {
                "registered_since": user.created_at,
                "loyalty_level": user.loyalty_points,
                "wishlist_count": 0,
                "is_social_networks_connected": False,
                "is_phone_number_verified": True,
                "is_email_verified": True,
            },
            "order": {
                "reference_id": reference,
                "tax_amount": "0.00",
                "shipping_amount": "0.00",
                "discount_amount": "0.00",
                "updated_at": _utc_now_iso(),
                "items": items,
            },
            "order_history": [],
            "items": items,
            "meta": {"order_id": req.get("paymentable_id"), "customer": user.id},
        }
        shipping = req.get("shipping_address")
        if shipping:
            payment["shipping_address"] = {
                "city": shipping.get("city"),
                "address": " ".join(x for x in (shipping.get("line1"), shipping.get("line2")) if x),
                "zip": shipping.get("zip"),
            }
        return payment

    def _link(self, user_id: str, req: Mapping[str, Any]):
        raw_type = req.get("paymentable_type")
        entity_id = req.get("paymentable_id")
        if not raw_type or not entity_id:
            return None, None
        try:
            kind = PaymentableType(str(raw_type).upper())
        except ValueError:
            raise ValidationFailed(f"Unsupported paymentable type: {raw_type}")
        table = {
            PaymentableType.ORDER: self.t.orders,
            PaymentableType.SUBSCRIPTION: self.t.subscriptions,
            PaymentableType.PROGRAMME: self.t.purchases,
        }[kind]
        entity = table.get(entity_id)
        if entity is None or entity.user_id != user_id:
            raise NotFound(f"{kind.value.title()} not found")
        return kind, entity_id

    def create(self, user_id: str, req: Mapping[str, Any]) -> Dict[str, Any]:
        currency = (req.get("currency") or "SAR").upper()
        if not is_available(currency):
            raise ValidationFailed("Tabby is only available for SAR (Saudi Arabia) and AED (UAE) currencies.")
        amount = float(req.get("amount") or 0)
        if amount <= 0:
            raise ValidationFailed("Amount is required and must be greater than 0")

        user = self.t.users.require(user_id, "User")
        kind, entity_id = self._link(user_id, req)
        reference = self.payments.new_reference()
        urls = merchant_urls(reference)

        body = self.build_payment(user, {**req, "currency": currency, "amount": amount}, reference)
        try:
            session = self.client.create_checkout_session(
                {"payment": body, "lang": req.get("lang") or "en", "merchant_urls": urls}
            )
        except GatewayUnavailable:
            raise GatewayUnavailable(
                "Payment service temporarily unavailable",
                extra={"message": "We are experiencing connectivity issues with our payment provider. Please try again in a few minutes."},
            )

        if (session.get("status") or "").lower() == "rejected":
            log.info("tabby pre-scoring rejected user=%s ref=%s", user_id, reference)
            raise ValidationFailed(
                "Tabby payment not available",
                extra={"message_en": REJECTED_EN, "message_ar": REJECTED_AR, "tabby_status": "rejected"},
            )

        tabby_payment_id = (session.get("payment") or {}).get("id")
        checkout_url = _checkout_url(session)
        payment = Payment(
            amount=money(amount),
            currency=currency,
            method=PaymentMethod.TABBY,
            transaction_id=tabby_payment_id,
            payment_reference=reference,
            paymentable_type=kind,
            paymentable_id=entity_id,
            user_id=user_id,
            customer_info={"email": body["buyer"].get("email"), "phone": body["buyer"].get("phone"), "name": body["buyer"].get("name")},
            metadata={
                **dict(req.get("metadata") or {}),
                "tabby_session_id": session.get("id"),
                "tabby_payment_id": tabby_payment_id,
                "checkout_url": checkout_url,
                "success_url": urls["success"],
                "cancel_url": urls["cancel"],
                "failure_url": urls["failure"],
            },
        )
        self.t.payments.put(payment)
        log.info("tabby checkout session=%s payment=%s ref=%s", session.get("id"), payment.id, reference)

        return {
            "checkout_session": {
                "id": session.get("id"),
                "payment_id": tabby_payment_id,
                "status": session.get("status"),
                "checkout_url": checkout_url,
                "expires_at": session.get("expires_at"),
            },
            "payment": payment.model_dump(mode="json"),
        }


class TabbyOperations:
    """Lookups and merchant-initiated actions on an existing Tabby payment."""

    def __init__(self, db: Database, client: TabbyClient):
        self.db = db
        self.t = Tables(db)
        self.client = client
        self.payments = PaymentService(db)

    def find(self, term: str) -> Optional[Payment]:
        tabby = self.t.payments.find(lambda p: p.method == PaymentMethod.TABBY)
        for match in (
            lambda p: p.transaction_id == term,
            lambda p: p.metadata.get("tabby_session_id") == term,
            lambda p: p.payment_reference == term,
        ):
            for p in tabby:
                if match(p):
                    return p
        return None

    def _require(self, term: str) -> Payment:
        payment = self.find(term)
        if payment is None:
            raise NotFound("Payment not found")
        if not payment.transaction_id:
            raise ValidationFailed("Payment has no Tabby payment id")
        return payment

    def status(self, term: str, *, user_id: Optional[str] = None, is_admin: bool = False) -> Dict[str, Any]:
        payment = self.find(term)
        if payment is None or (not is_admin and payment.user_id != user_id):
            raise NotFound("Payment not found", extra={"payment_id": term})
        return {
            "payment_id": term,
            "status": payment.status.value,
            "tabby_status": payment.metadata.get("tabby_status"),
            "amount": payment.amount,
            "currency": payment.currency,
            "method": payment.method.value,
            "created_at": payment.created_at,
            "updated_at": payment.updated_at,
        }

    def _finish(self, payment: Payment, status: PaymentStatus, tabby_status: str, extra: Dict[str, Any]) -> Payment:
        old = payment.status.value
        payment.metadata = {**payment.metadata, "tabby_status": tabby_status, **extra}
        payment.processed_at = payment.processed_at or _utc_now_iso()
        payment = self.payments.set_status(payment, status)
        audit_payment(payment.id, provider="tabby", old_status=old, new_status=payment.status.value, reference=payment.payment_reference)
        return payment

    def capture(self, term: str, amount: Optional[float] = None) -> Payment:
        with self.db.transaction():
            payment = self._require(term)
            if payment.status != PaymentStatus.SUCCESS:
                raise ValidationFailed("Only authorized payments can be captured")
            result = self.client.capture_payment(
                payment.transaction_id, amount or payment.amount, reference_id=f"capture-{payment.payment_reference}"
            )
            return self._finish(
                payment,
                PaymentStatus.COMPLETED,
                "CLOSED",
                {"captured_at": _utc_now_iso(), "capture_id": result.get("id")},
            )

    def refund(self, term: str, amount: Optional[float] = None, reason: Optional[str] = None) -> Payment:
        with self.db.transaction():
            payment = self._require(term)
            if payment.status not in (PaymentStatus.SUCCESS, PaymentStatus.COMPLETED):
                raise ValidationFailed("Only settled payments can be refunded")
            result = self.client.refund_payment(payment.transaction_id, amount or payment.amount, reason)
            return self._finish(
                payment,
                PaymentStatus.REFUNDED,
                "REFUNDED",
                {"refunded_at": _utc_now_iso(), "refund_id": result.get("id"), "refund_reason": reason},
            )

    def close(self, term: str) -> Payment:
        with self.db.transaction():
            payment = self._require(term)
            if payment.status not in (PaymentStatus.SUCCESS, PaymentStatus.COMPLETED):
                raise ValidationFailed("Only authorized payments can be closed")
            self.client.close_payment(payment.transaction_id)
            return self._finish(payment, PaymentStatus.COMPLETED, "CLOSED", {"closed_at": _utc_now_iso()})


class TabbyWebhookProcessor:
    def __init__(self, db: Database, client: Optional[TabbyClient] = None, *, secret: Optional[str] = None):
        self.db = db
        self.t = Tables(db)
        self.client = client
        self.secret = secret
        self.payments = PaymentService(db)
        self.fulfilment = Fulfilment(db)

    @staticmethod
    def signature_from(headers: Mapping[str, str]) -> Optional[str]:
        for name in SIGNATURE_HEADERS:
            value = headers.get(name)
            if value:
                return value
        return None

    @staticmethod
    def parse(body: Mapping[str, Any]) -> Dict[str, Any]:
        data = body.get("payment") or body.get("data") or body
        status = (data.get("status") or "").upper()
        event = body.get("event") or (f"payment.{status.lower()}" if status else "")
        return {"event": event, "id": data.get("id"), "status": status, "rejection_reason": data.get("rejection_reason")}

    def process(self, raw: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        if not verify_signature(raw, self.signature_from(headers), self.secret):
            record_webhook("tabby", "invalid_signature")
            raise Unauthorized("Invalid signature")

        try:
            body = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError):
            record_webhook("tabby", "malformed")
            raise ValidationFailed("Invalid webhook payload")
        if not isinstance(body, dict):
            record_webhook("tabby", "malformed")
            raise ValidationFailed("Invalid webhook payload")

        evt = self.parse(body)
        outcome = self.handle(evt, body)
        record_webhook("tabby", outcome)
        return {"received": True}

    def handle(self, evt: Dict[str, Any], body: Mapping[str, Any]) -> str:
        event = evt["event"]
        if event == "payment.created":
            return "ignored"

        payment = self.t.payments.find_one(lambda p: p.method == PaymentMethod.TABBY and p.transaction_id == evt["id"]) if evt["id"] else None
        if payment is None:
            log.warning("tabby webhook %s for unknown payment id=%s", event, evt["id"])
            return "not_found"

        if event == "payment.updated":
            mapped = map_tabby_status(evt["status"])
            if mapped == "AUTHORIZED":
                event = "payment.authorized"
            elif mapped == PaymentStatus.COMPLETED.value:
                event = "payment.closed"
            elif mapped == PaymentStatus.FAILED.value:
                event = "payment.rejected"

        if event == "payment.authorized":
            return self._authorized(payment, body)
        if event == "payment.closed":
            return self._closed(payment, body)
        if event in ("payment.rejected", "payment.expired"):
            return self._rejected(payment, evt, body)
        if event == "payment.updated":
            return self._updated(payment, evt, body)
        log.info("tabby webhook event %s ignored payment=%s", event, payment.id)
        return "ignored"

    def _record_replay(self, payment: Payment, body: Mapping[str, Any]) -> str:
        with self.db.transaction():
            fresh = self.payments.get(payment.id)
            history = list(fresh.metadata.get("webhook_replays") or [])
            history.append({"received_at": _utc_now_iso(), "event": body.get("event")})
            fresh.metadata = {**fresh.metadata, "webhook_replays": history[-20:], "last_webhook_data": dict(body)}
            self.t.payments.put(fresh)
        return "duplicate"

    def _transition(self, payment: Payment, status: PaymentStatus, meta: Dict[str, Any], body: Mapping[str, Any]) -> Payment:
        old = payment.status.value
        payment.metadata = {**payment.metadata, **meta, "webhook_data": dict(body)}
        if status in (PaymentStatus.SUCCESS, PaymentStatus.COMPLETED):
            payment.processed_at = payment.processed_at or _utc_now_iso()
        payment = self.payments.set_status(payment, status)
        audit_payment(payment.id, provider="tabby", old_status=old, new_status=payment.status.value, reference=payment.payment_reference)
        return payment

    def fulfil(self, payment: Payment) -> bool:
        """Apply a settled payment to its entity; ``fulfilled_at`` marks it done for the sweep."""
        try:
            self.fulfilment.apply_success(payment)
        except ShopError as e:
            log.error("tabby fulfilment failed payment=%s err=%s", payment.id, e.message)
            meta = {"fulfilment_error": e.message}
        else:
            meta = {"fulfilled_at": _utc_now_iso()}
        with self.db.transaction():
            fresh = self.payments.get(payment.id)
            fresh.metadata = {**fresh.metadata, **meta}
            self.t.payments.put(fresh)
        return "fulfilled_at" in meta

    def _authorized(self, payment: Payment, body: Mapping[str, Any]) -> str:
        with self.db.transaction():
            payment = self.payments.get(payment.id)
            if is_stale_cancelled(payment):
                payment = self.payments.reopen_stale(payment)
            if payment.status != PaymentStatus.PENDING:
                return self._record_replay(payment, body)
            payment = self._transition(
                payment, PaymentStatus.SUCCESS, {"tabby_status": "AUTHORIZED", "authorized_at": _utc_now_iso()}, body
            )
        self.fulfil(payment)
        self.auto_capture(payment)
        return "success"

    def auto_capture(self, payment: Payment) -> bool:
        if self.client is None:
            return False
        try:
            result = self.client.capture_payment(
                payment.transaction_id, payment.amount, reference_id=f"auto-capture-{payment.payment_reference}"
            )
        except ShopError as e:
            log.warning("tabby auto-capture failed payment=%s err=%s; left for sweep", payment.id, e.message)
            return False
        with self.db.transaction():
            fresh = self.payments.get(payment.id)
            fresh.metadata = {
                **fresh.metadata,
                "tabby_status": "CLOSED",
                "captured_at": _utc_now_iso(),
                "capture_id": result.get("id"),
            }
            self.t.payments.put(fresh)
        log.info("tabby auto-capture ok payment=%s", payment.id)
        return True

    def _closed(self, payment: Payment, body: Mapping[str, Any]) -> str:
        with self.db.transaction():
            payment = self.payments.get(payment.id)
            if is_stale_cancelled(payment):
                payment = self.payments.reopen_stale(payment)
            if is_terminal(payment.status):
                return self._record_replay(payment, body)
            meta = {"tabby_status": "CLOSED", "closed_at": _utc_now_iso()}
            if payment.status == PaymentStatus.PENDING:
                payment = self._transition(payment, PaymentStatus.SUCCESS, meta, body)
                settled_now = True
            else:
                payment.metadata = {**payment.metadata, **meta}
                payment.updated_at = _utc_now_iso()
                self.t.payments.put(payment)
                settled_now = False
        self.fulfil(payment)
        return "success" if settled_now else "duplicate"

    def _rejected(self, payment: Payment, evt: Dict[str, Any], body: Mapping[str, Any]) -> str:
        with self.db.transaction():
            payment = self.payments.get(payment.id)
            if is_terminal(payment.status) or not can_transition(payment.status, PaymentStatus.FAILED):
                return self._record_replay(payment, body)
            self._transition(
                payment,
                PaymentStatus.FAILED,
                {
                    "tabby_status": evt["status"] or "REJECTED",
                    "rejected_at": _utc_now_iso(),
                    "rejection_reason": evt.get("rejection_reason"),
                },
                body,
            )
        return "failed"

    def _updated(self, payment: Payment, evt: Dict[str, Any], body: Mapping[str, Any]) -> str:
        mapped = map_tabby_status(evt["status"])
        with self.db.transaction():
            payment = self.payments.get(payment.id)
            if is_terminal(payment.status):
                return self._record_replay(payment, body)
            target = PaymentStatus(mapped)
            meta = {"tabby_status": evt["status"], "tabby_updated_at": _utc_now_iso()}
            if target != payment.status and can_transition(payment.status, target):
                self._transition(payment, target, meta, body)
                return target.value.lower()
            payment.metadata = {**payment.metadata, **meta}
            payment.updated_at = _utc_now_iso()
            self.t.payments.put(payment)
        return "updated"


class TabbyCaptureSweep:
    """Retries what the webhook left unfinished: fulfilment of settled payments and capture."""

    def __init__(self, db: Database, client: TabbyClient):
        self.db = db
        self.t = Tables(db)
        self.client = client
        self.payments = PaymentService(db)
        self.processor = TabbyWebhookProcessor(db, client)

    def unfulfilled(self, limit: int) -> List[Payment]:
        items = self.t.payments.find(
            lambda p: p.method == PaymentMethod.TABBY
            and p.status in (PaymentStatus.SUCCESS, PaymentStatus.COMPLETED)
            and not p.metadata.get("fulfilled_at")
            and not p.metadata.get("fulfilment_error")
        )
        return sorted(items, key=lambda p: p.created_at)[:limit]

    def candidates(self, limit: int) -> List[Payment]:
        items = self.t.payments.find(
            lambda p: p.method == PaymentMethod.TABBY
            and p.status == PaymentStatus.SUCCESS
            and p.metadata.get("tabby_status") == "AUTHORIZED"
            and not p.metadata.get("captured_at")
        )
        return sorted(items, key=lambda p: p.created_at)[:limit]

    def _update(self, payment_id: str, *, status: Optional[PaymentStatus] = None, **meta: Any) -> Payment:
        with self.db.transaction():
            p = self.payments.get(payment_id)
            p.metadata = {**p.metadata, **meta}
            if status is not None:
                old = p.status.value
                p = self.payments.set_status(p, status)
                audit_payment(p.id, provider="tabby", old_status=old, new_status=p.status.value, reference=p.payment_reference)
            else:
                p.updated_at = _utc_now_iso()
                self.t.payments.put(p)
            return p

    def run(self, limit: int = 10) -> Dict[str, Any]:
        report = {"checked": 0, "fulfilled": 0, "captured": 0, "closed": 0, "failed": 0, "errors": 0}
        for payment in self.unfulfilled(limit):
            if self.processor.fulfil(payment):
                report["fulfilled"] += 1
        for payment in self.candidates(limit):
            report["checked"] += 1
            try:
                remote = self.client.get_payment(payment.transaction_id)
                remote_status = (remote.get("status") or "").upper()
                if remote_status == "AUTHORIZED":
                    result = self.client.capture_payment(
                        payment.transaction_id, payment.amount, reference_id=f"auto-capture-{payment.payment_reference}"
                    )
                    self._update(
                        payment.id, tabby_status="CLOSED", captured_at=_utc_now_iso(), capture_id=result.get("id"), captured_by="sweep"
                    )
                    report["captured"] += 1
                elif remote_status == "CLOSED":
                    self._update(payment.id, tabby_status="CLOSED", captured_at=_utc_now_iso(), captured_by="remote")
                    report["closed"] += 1
                elif remote_status in ("REJECTED", "EXPIRED"):
                    self._update(payment.id, status=PaymentStatus.FAILED, tabby_status=remote_status, failed_at=_utc_now_iso())
                    report["failed"] += 1
            except ShopError as e:
                report["errors"] += 1
                count = int(payment.metadata.get("cron_error_count") or 0) + 1
                log.warning("tabby sweep error payment=%s count=%d err=%s", payment.id, count, e.message)
                if count >= MAX_SWEEP_ERRORS:
                    self._update(
                        payment.id, status=PaymentStatus.FAILED, cron_error_count=count, cron_last_error=e.message, tabby_status="CAPTURE_FAILED"
                    )
                    report["failed"] += 1
                else:
                    self._update(payment.id, cron_error_count=count, cron_last_error=e.message)
        inc_named("tabby_sweep_runs")
        if report["checked"] or report["fulfilled"]:
            log.info("tabby sweep %s", report)
        return report
