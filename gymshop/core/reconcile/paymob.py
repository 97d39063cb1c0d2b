"""
Paymob checkout and webhook reconciliation.

The webhook is the only thing that moves a PAYMOB payment out of PENDING.
Delivery is at-least-once, so processing is idempotent: once a payment is
terminal (or already SUCCESS) a repeated delivery only records its payload.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from gymshop.core.config import api_url, frontend_url
from gymshop.core.currency.rates import convert_price
from gymshop.core.errors import NotFound, ShopError, ValidationFailed
from gymshop.core.gateways.paymob import PAYMENT_METHODS, PaymobClient, validate_payment_data, verify_hmac
from gymshop.core.observability.audit import audit_payment
from gymshop.core.observability.metrics import record_webhook
from gymshop.core.shop.fulfilment import Fulfilment
from gymshop.core.shop.models import (
    Payment,
    PaymentableType,
    PaymentMethod,
    PaymentStatus,
    _utc_now_iso,
    money,
    parse_iso,
)
from gymshop.core.shop.payments import STALE_AFTER_MINUTES, PaymentService, is_stale_cancelled
from gymshop.core.shop.state_machine import can_transition, is_terminal
from gymshop.core.shop.tables import Tables
from gymshop.core.storage import Database

log = logging.getLogger("gymshop.payments.paymob")

PAYMOB_CURRENCY = "SAR"
# Used when the rate table cannot convert the input currency.
FALLBACK_SAR_RATES = {"USD": 3.75, "AED": 1.02}

HMAC_HEADERS = ("x-paymob-hmac", "x-paymob-signature", "hmac")

_LINKS = (
    ("order_id", PaymentableType.ORDER),
    ("subscription_id", PaymentableType.SUBSCRIPTION),
    ("programme_purchase_id", PaymentableType.PROGRAMME),
)


def notification_url() -> str:
    return api_url("/payments/paymob/webhook")


def to_sar(amount: float, currency: str) -> Tuple[float, float]:
    """Returns (sar_amount, rate)."""
    cur = (currency or PAYMOB_CURRENCY).upper()
    if cur == PAYMOB_CURRENCY:
        return money(amount), 1.0
    if cur not in FALLBACK_SAR_RATES:
        raise ValidationFailed("Paymob supports SAR only; allowed input currencies: USD, AED (auto-converted)")
    try:
        converted = convert_price(amount, cur, PAYMOB_CURRENCY)
    except ShopError:
        log.warning("rate table conversion %s->SAR failed; using fallback rate", cur)
        converted = money(float(amount) * FALLBACK_SAR_RATES[cur])
    rate = converted / float(amount) if amount else FALLBACK_SAR_RATES[cur]
    return converted, rate


def decide_status(obj: Mapping[str, Any]) -> Tuple[PaymentStatus, str]:
    success = bool(obj.get("success"))
    error = bool(obj.get("error_occured"))
    voided = bool(obj.get("is_voided"))
    refunded = bool(obj.get("is_refunded"))

    if success and not error:
        if refunded:
            return PaymentStatus.REFUNDED, "Payment refunded"
        if voided:
            return PaymentStatus.FAILED, "Payment voided"
        return PaymentStatus.SUCCESS, "Payment successful"
    if error:
        return PaymentStatus.FAILED, "Payment failed with error"
    if voided:
        return PaymentStatus.FAILED, "Payment voided"
    if refunded:
        return PaymentStatus.REFUNDED, "Payment refunded"
    return PaymentStatus.PENDING, "Payment pending"


def is_replay(current: PaymentStatus, decided: PaymentStatus) -> bool:
    if is_terminal(current):
        return True
    if current == PaymentStatus.SUCCESS and decided == PaymentStatus.SUCCESS:
        return True
    # e.g. a late "pending" delivery for a payment that already settled
    return current != decided and not can_transition(current, decided)


class PaymobCheckout:
    def __init__(self, db: Database, client: PaymobClient):
        self.db = db
        self.t = Tables(db)
        self.client = client
        self.payments = PaymentService(db)

    def _link(self, user_id: str, req: Mapping[str, Any]) -> Tuple[Optional[PaymentableType], Optional[str]]:
        for key, kind in _LINKS:
            entity_id = req.get(key)
            if not entity_id:
                continue
            table = {
                PaymentableType.ORDER: self.t.orders,
                PaymentableType.SUBSCRIPTION: self.t.subscriptions,
                PaymentableType.PROGRAMME: self.t.purchases,
            }[kind]
            entity = table.get(entity_id)
            if entity is None or entity.user_id != user_id:
                raise NotFound(f"{kind.value.title()} not found")
            return kind, entity_id
        return None, None

    def create_intention(self, user_id: Optional[str], req: Mapping[str, Any]) -> Dict[str, Any]:
        amount = float(req.get("amount") or 0)
        if amount <= 0:
            raise ValidationFailed("Amount is required and must be greater than 0")

        currency = (req.get("currency") or PAYMOB_CURRENCY).upper()
        final_amount, rate = to_sar(amount, currency)

        method = req.get("payment_method") or "card"
        if method not in PAYMENT_METHODS:
            raise ValidationFailed("Paymob only accepts card and apple_pay payment methods")

        billing = dict(req.get("billing_data") or {})
        customer = dict(req.get("customer") or {})
        if not billing or not customer:
            raise ValidationFailed("Billing data and customer information are required")

        items = [dict(i) for i in (req.get("items") or [])]
        if rate != 1.0:
            for i in items:
                i["amount"] = money(float(i.get("amount") or 0) * rate)

        errors = validate_payment_data({"amount": final_amount, "items": items, "billing_data": billing, "customer": customer})
        if errors:
            raise ValidationFailed("Validation failed", extra={"errors": errors})

        kind, entity_id = self._link(user_id, req) if user_id else (None, None)
        reference = req.get("special_reference") or self.payments.new_reference()
        extras = dict(req.get("extras") or {})

        intention = self.client.create_intention(
            {
                "amount": final_amount,
                "currency": PAYMOB_CURRENCY,
                "payment_method": method,
                "items": items,
                "billing_data": billing,
                "customer": customer,
                "extras": {**extras, "user_id": user_id, "paymentable_type": kind.value if kind else None, "paymentable_id": entity_id},
                "special_reference": reference,
                "notification_url": notification_url(),
                "redirection_url": f"{frontend_url()}/payment/success?payment_id={reference}",
            }
        )

        payment = Payment(
            amount=final_amount,
            currency=PAYMOB_CURRENCY,
            method=PaymentMethod.PAYMOB,
            gateway_id=str(intention["id"]),
            payment_reference=reference,
            paymentable_type=kind,
            paymentable_id=entity_id,
            user_id=user_id,
            customer_info={
                "first_name": customer.get("first_name"),
                "last_name": customer.get("last_name"),
                "email": customer.get("email"),
                "phone": billing.get("phone_number"),
            },
            metadata={
                "intention_id": intention["id"],
                "client_secret": intention["client_secret"],
                "payment_method": method,
                "billing_data": billing,
                "items": items,
                "checkout_url": intention["checkout_url"],
                "original_amount": amount,
                "original_currency": currency,
                "extras": extras,
            },
        )
        self.t.payments.put(payment)
        log.info("paymob intention id=%s payment=%s ref=%s amount=%.2f SAR", intention["id"], payment.id, reference, final_amount)

        return {
            "intention_id": intention["id"],
            "client_secret": intention["client_secret"],
            "checkout_url": intention["checkout_url"],
            "payment_id": payment.id,
            "special_reference": reference,
        }

    def intention_status(self, intention_id: str, *, user_id: Optional[str] = None, is_admin: bool = False) -> Dict[str, Any]:
        payment = self.t.payments.find_one(lambda p: p.gateway_id == str(intention_id))
        if payment is None or (not is_admin and payment.user_id != user_id):
            raise NotFound("Payment not found")
        remote = self.client.get_intention(intention_id)
        return {"local": payment.model_dump(mode="json"), "remote": remote}

    def refund(self, payment_id: str, amount: Optional[float] = None) -> Payment:
        with self.db.transaction():
            payment = self.payments.get(payment_id)
            if payment.method != PaymentMethod.PAYMOB:
                raise ValidationFailed("Not a Paymob payment")
            if payment.status != PaymentStatus.SUCCESS:
                raise ValidationFailed("Only successful payments can be refunded")
            if not payment.transaction_id:
                raise ValidationFailed("Payment has no gateway transaction")
            refund_amount = float(amount) if amount else payment.amount
            if refund_amount <= 0 or refund_amount > payment.amount:
                raise ValidationFailed("Invalid refund amount")

            result = self.client.refund(payment.transaction_id, refund_amount)
            old = payment.status.value
            payment.processed_at = _utc_now_iso()
            payment.metadata = {
                **payment.metadata,
                "refund_details": {
                    "refunded_amount": refund_amount,
                    "refunded_at": _utc_now_iso(),
                    "refund_transaction_id": result.get("id"),
                },
            }
            payment = self.payments.set_status(payment, PaymentStatus.REFUNDED)
        audit_payment(payment.id, provider="paymob", old_status=old, new_status=payment.status.value, reference=payment.payment_reference)
        return payment

    def webhook_status(self, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        moment = now or datetime.now(timezone.utc)
        cutoff = moment - timedelta(minutes=STALE_AFTER_MINUTES)
        paymob = sorted(self.t.payments.find(lambda p: p.method == PaymentMethod.PAYMOB), key=lambda p: p.created_at, reverse=True)

        counts: Dict[str, int] = {}
        for p in paymob:
            counts[p.status.value] = counts.get(p.status.value, 0) + 1

        stuck = []
        for p in paymob:
            created = parse_iso(p.created_at)
            if p.status == PaymentStatus.PENDING and created is not None and created < cutoff:
                stuck.append(p)

        def _brief(p: Payment) -> Dict[str, Any]:
            return {
                "id": p.id,
                "payment_reference": p.payment_reference,
                "gateway_id": p.gateway_id,
                "transaction_id": p.transaction_id,
                "status": p.status.value,
                "created_at": p.created_at,
                "webhook_received": "webhook_data" in p.metadata,
            }

        return {
            "recent": [_brief(p) for p in paymob[:10]],
            "counts_by_status": counts,
            "stale_pending": [_brief(p) for p in stuck],
            "notification_url": notification_url(),
        }


class PaymobWebhookProcessor:
    def __init__(self, db: Database, *, hmac_secret: Optional[str] = None):
        self.db = db
        self.t = Tables(db)
        self.hmac_secret = hmac_secret
        self.payments = PaymentService(db)
        self.fulfilment = Fulfilment(db)

    @staticmethod
    def signature_from(headers: Mapping[str, str]) -> Optional[str]:
        for name in HMAC_HEADERS:
            value = headers.get(name)
            if value:
                return value
        return None

    def locate(self, obj: Mapping[str, Any]) -> Tuple[Optional[Payment], List[str]]:
        order = obj.get("order") or {}
        gateway_order = str(order["id"]) if order.get("id") is not None else None
        merchant_ref = order.get("merchant_order_id")
        txn_id = str(obj["id"]) if obj.get("id") is not None else None
        other_ref = obj.get("other_endpoint_reference")

        if gateway_order:
            hit = self.t.payments.find_one(lambda p: p.gateway_id == gateway_order)
            if hit is not None:
                return hit, []
        if merchant_ref:
            hit = self.t.payments.find_one(lambda p: p.payment_reference == merchant_ref)
            if hit is not None:
                return hit, []
        if txn_id:
            hit = self.t.payments.find_one(lambda p: p.transaction_id == txn_id)
            if hit is not None:
                return hit, []

        terms = [str(x) for x in (gateway_order, merchant_ref, txn_id, other_ref) if x]
        if terms:
            wanted = set(terms)
            hit = self.t.payments.find_one(
                lambda p: p.gateway_id in wanted or p.payment_reference in wanted or p.transaction_id in wanted
            )
            if hit is not None:
                return hit, terms
        return None, terms

    def _recent_references(self, limit: int = 5) -> List[Dict[str, Any]]:
        recent = sorted(self.t.payments.find(lambda p: p.method == PaymentMethod.PAYMOB), key=lambda p: p.created_at, reverse=True)
        return [
            {"id": p.id, "gateway_id": p.gateway_id, "payment_reference": p.payment_reference, "status": p.status.value}
            for p in recent[:limit]
        ]

    def process(self, raw: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        if not verify_hmac(raw, self.signature_from(headers), self.hmac_secret):
            record_webhook("paymob", "invalid_signature")
            raise ValidationFailed("Invalid HMAC signature")

        try:
            body = json.loads(raw.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError):
            record_webhook("paymob", "malformed")
            raise ValidationFailed("Failed to process webhook: body is not valid JSON")
        obj = body.get("obj") if isinstance(body, dict) else None
        if not isinstance(obj, dict):
            record_webhook("paymob", "malformed")
            raise ValidationFailed("Failed to process webhook: missing obj")
        webhook_type = body.get("type")

        decided, reason = decide_status(obj)
        txn_id = str(obj["id"]) if obj.get("id") is not None else None

        with self.db.transaction():
            payment, terms = self.locate(obj)
            if payment is None:
                record_webhook("paymob", "not_found")
                log.warning("paymob webhook for unknown payment terms=%s", terms)
                raise NotFound(
                    "Payment not found",
                    extra={"searched_for": terms, "recent_payments": self._recent_references()},
                )

            old = payment.status
            if decided == PaymentStatus.SUCCESS and is_stale_cancelled(payment):
                payment = self.payments.reopen_stale(payment)
            received = {"received_at": _utc_now_iso(), "type": webhook_type, "decided": decided.value}
            if is_replay(payment.status, decided):
                history = list(payment.metadata.get("webhook_replays") or [])
                history.append(received)
                payment.metadata = {**payment.metadata, "webhook_replays": history[-20:], "last_webhook_data": body}
                payment.updated_at = _utc_now_iso()
                self.t.payments.put(payment)
                duplicate = True
            else:
                payment.transaction_id = txn_id or payment.transaction_id
                payment.processed_at = _utc_now_iso()
                payment.metadata = {
                    **payment.metadata,
                    "webhook_data": body,
                    "transaction_details": {
                        "amount_cents": obj.get("amount_cents"),
                        "success": obj.get("success"),
                        "pending": obj.get("pending"),
                        "is_voided": obj.get("is_voided"),
                        "is_refunded": obj.get("is_refunded"),
                        "error_occured": obj.get("error_occured"),
                        "integration_id": obj.get("integration_id"),
                        "is_live": obj.get("is_live"),
                        "status_reason": reason,
                        "webhook_received_at": received["received_at"],
                        "webhook_type": webhook_type,
                    },
                }
                payment = self.payments.set_status(payment, decided)
                duplicate = False

        paymentable = None
        if not duplicate and decided == PaymentStatus.SUCCESS:
            paymentable = self._fulfil(payment)

        outcome = "duplicate" if duplicate else decided.value.lower()
        record_webhook("paymob", outcome)
        if not duplicate:
            audit_payment(
                payment.id,
                provider="paymob",
                old_status=old.value,
                new_status=payment.status.value,
                reference=payment.payment_reference,
                extra={"transaction_id": txn_id, "webhook_type": webhook_type},
            )
        log.info("paymob webhook payment=%s %s->%s duplicate=%s", payment.id, old.value, payment.status.value, duplicate)

        if paymentable is None and payment.paymentable_type is not None:
            paymentable = {"type": payment.paymentable_type.value, "id": payment.paymentable_id}
        return {
            "payment_id": payment.id,
            "status": payment.status.value,
            "transaction_id": txn_id,
            "webhook_type": webhook_type,
            "duplicate": duplicate,
            "paymentable": paymentable,
        }

    def _fulfil(self, payment: Payment) -> Optional[Dict[str, Any]]:
        # The payment stays SUCCESS; the error is kept for an operator.
        try:
            return self.fulfilment.apply_success(payment)
        except ShopError as e:
            log.error("paymob fulfilment failed payment=%s err=%s", payment.id, e.message)
            with self.db.transaction():
                fresh = self.payments.get(payment.id)
                fresh.metadata = {**fresh.metadata, "fulfilment_error": e.message}
                self.t.payments.put(fresh)
            return None
