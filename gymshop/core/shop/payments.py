from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from gymshop.core.errors import NotFound, ValidationFailed
from gymshop.core.observability.metrics import record_payment_status
from gymshop.core.storage import Database

from .loyalty import paginate
from .models import (
    Payment,
    PaymentableType,
    PaymentMethod,
    PaymentStatus,
    PurchaseStatus,
    _utc_now_iso,
    money,
    parse_iso,
)
from .numbering import MAX_REFERENCE_ATTEMPTS, payment_reference, unique_value
from .state_machine import ensure_transition
from .tables import Tables

log = logging.getLogger("gymshop.payments")

REQUIRES_TRANSACTION_ID = {PaymentMethod.CARD, PaymentMethod.TABBY, PaymentMethod.TAMARA}
REQUIRES_PROOF = {PaymentMethod.INSTA_PAY, PaymentMethod.VODAFONE_CASH}
MANUAL_METHODS = REQUIRES_TRANSACTION_ID | REQUIRES_PROOF
GATEWAY_METHODS = {PaymentMethod.PAYMOB, PaymentMethod.TABBY}

STALE_AFTER_MINUTES = 30
STALE_REASON = "stale"
TIMEOUT_REASON = "Payment timeout"


def parse_method(method: Optional[str]) -> PaymentMethod:
    try:
        return PaymentMethod((method or "").strip().upper())
    except ValueError:
        raise ValidationFailed(f"Unsupported payment method: {method}")


def needs_manual_record(method: PaymentMethod, via_gateway: bool = False) -> bool:
    """False when the payment record will be created by a gateway checkout instead."""
    if via_gateway and method in GATEWAY_METHODS:
        return False
    return method in MANUAL_METHODS


def validate_payment_method(method: PaymentMethod, transaction_id: Optional[str], payment_proof_url: Optional[str]) -> None:
    if method in REQUIRES_TRANSACTION_ID and not (transaction_id or "").strip():
        raise ValidationFailed(f"Transaction ID is required for {method.value} payments")
    if method in REQUIRES_PROOF and not (payment_proof_url or "").strip():
        raise ValidationFailed(f"Payment proof is required for {method.value} payments")


def is_stale_cancelled(payment: Payment) -> bool:
    """A gateway payment cancelled by stale cleanup; the gateway may still settle it."""
    return (
        payment.method in GATEWAY_METHODS
        and payment.status == PaymentStatus.CANCELLED
        and (payment.metadata or {}).get("cancelled_reason") == STALE_REASON
    )


class PaymentService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)

    def new_reference(self) -> str:
        return unique_value(
            payment_reference,
            lambda ref: self.t.payments.find_one(lambda p: p.payment_reference == ref) is not None,
            attempts=MAX_REFERENCE_ATTEMPTS,
        )

    def set_status(self, payment: Payment, status: PaymentStatus) -> Payment:
        ensure_transition(payment.status, status, what="payment")
        if payment.status != status:
            record_payment_status(payment.method.value, status.value)
        payment.status = status
        payment.updated_at = _utc_now_iso()
        return self.t.payments.put(payment)

    def reopen_stale(self, payment: Payment) -> Payment:
        """Undo a stale cancellation so a late gateway settlement can be applied."""
        if not is_stale_cancelled(payment):
            raise ValidationFailed("Only stale-cancelled gateway payments can be reopened")
        meta = {k: v for k, v in payment.metadata.items() if k not in ("cancelled_reason", "cancelled_at")}
        payment.metadata = {**meta, "reopened_at": _utc_now_iso(), "stale_cancelled_at": payment.metadata.get("cancelled_at")}
        payment.status = PaymentStatus.PENDING
        payment.updated_at = _utc_now_iso()
        log.warning("stale payment reopened by late settlement id=%s ref=%s", payment.id, payment.payment_reference)
        return self.t.payments.put(payment)

    def create_manual(
        self,
        *,
        user_id: str,
        method: PaymentMethod,
        amount: float,
        currency: str,
        paymentable_type: PaymentableType,
        paymentable_id: str,
        transaction_id: Optional[str] = None,
        payment_proof_url: Optional[str] = None,
    ) -> Payment:
        validate_payment_method(method, transaction_id, payment_proof_url)
        payment = Payment(
            amount=money(amount),
            currency=currency,
            method=method,
            transaction_id=(transaction_id or "").strip() or None,
            payment_proof_url=(payment_proof_url or "").strip() or None,
            payment_reference=self.new_reference(),
            paymentable_type=paymentable_type,
            paymentable_id=paymentable_id,
            user_id=user_id,
        )
        self.t.payments.put(payment)
        log.info("manual payment created id=%s method=%s ref=%s", payment.id, method.value, payment.payment_reference)
        return payment

    def get(self, payment_id: str) -> Payment:
        return self.t.payments.require(payment_id, "Payment")

    def upload_proof(self, user_id: str, payment_id: str, url: str) -> Payment:
        if not (url or "").strip():
            raise ValidationFailed("payment_proof_url is required")
        with self.db.transaction():
            payment = self.t.payments.get(payment_id)
            if payment is None or payment.user_id != user_id:
                raise NotFound("Payment not found")
            if payment.status != PaymentStatus.PENDING:
                raise ValidationFailed("Proof can only be attached to pending payments")
            payment.payment_proof_url = url.strip()
            payment.updated_at = _utc_now_iso()
            return self.t.payments.put(payment)

    # ------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------
    def _gateway_payments(self, predicate) -> List[Payment]:
        items = self.t.payments.find(lambda p: p.method != PaymentMethod.GYMMAWY_COINS and predicate(p))
        return sorted(items, key=lambda p: p.created_at, reverse=True)

    def history(self, user_id: str, *, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        out = paginate(self._gateway_payments(lambda p: p.user_id == user_id), page, page_size)
        out["items"] = [p.model_dump(mode="json") for p in out["items"]]
        return out

    def pending(self, *, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        out = paginate(self._gateway_payments(lambda p: p.status == PaymentStatus.PENDING), page, page_size)
        out["items"] = [p.model_dump(mode="json") for p in out["items"]]
        return out

    def stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {}
        by_method: Dict[str, int] = {}
        amounts: Dict[str, Dict[str, float]] = {}
        for p in self.t.payments.all():
            by_status[p.status.value] = by_status.get(p.status.value, 0) + 1
            by_method[p.method.value] = by_method.get(p.method.value, 0) + 1
            bucket = amounts.setdefault(p.status.value, {})
            bucket[p.currency] = money(bucket.get(p.currency, 0.0) + p.amount)
        return {"by_status": by_status, "by_method": by_method, "amounts": amounts}

    # ------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------
    def cleanup_stale(self, *, older_than_minutes: int = STALE_AFTER_MINUTES, now: Optional[datetime] = None) -> Dict[str, Any]:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=older_than_minutes)
        cancelled_payments: List[str] = []
        cancelled_purchases: List[str] = []

        def _stale(ts: str) -> bool:
            created = parse_iso(ts)
            return created is not None and created < cutoff

        from .programmes import ProgrammeService

        programmes = ProgrammeService(self.db)
        # Linked orders stay PENDING: a late gateway settlement reopens the payment and still pays them.
        with self.db.transaction():
            for p in self.t.payments.find(lambda p: p.status == PaymentStatus.PENDING and _stale(p.created_at)):
                p.metadata = {**p.metadata, "cancelled_reason": STALE_REASON, "cancelled_at": _utc_now_iso()}
                self.set_status(p, PaymentStatus.CANCELLED)
                cancelled_payments.append(p.id)
            for pp in self.t.purchases.find(lambda x: x.status == PurchaseStatus.PENDING and _stale(x.created_at)):
                programmes.cancel(pp.id, reason=TIMEOUT_REASON)
                cancelled_purchases.append(pp.id)

        if cancelled_payments or cancelled_purchases:
            log.info("stale cleanup payments=%d purchases=%d", len(cancelled_payments), len(cancelled_purchases))
        return {
            "cancelled_payments": len(cancelled_payments),
            "cancelled_programme_purchases": len(cancelled_purchases),
            "payment_ids": cancelled_payments,
        }

    # ------------------------------------------------------------
    # Public verification (payment redirect landing page)
    # ------------------------------------------------------------
    def find_by_any(self, term: str) -> Optional[Payment]:
        for field in ("transaction_id", "payment_reference", "gateway_id", "id"):
            hit = self.t.payments.find_one(lambda p, f=field: getattr(p, f) == term)
            if hit is not None:
                return hit
        return None

    def verify_public(self, term: str) -> Dict[str, Any]:
        payment = self.find_by_any(term)
        if payment is None:
            raise NotFound("Payment not found")

        order_reference = None
        if payment.paymentable_type == PaymentableType.ORDER:
            o = self.t.orders.get(payment.paymentable_id)
            order_reference = o.order_number if o else None
        elif payment.paymentable_type == PaymentableType.SUBSCRIPTION:
            s = self.t.subscriptions.get(payment.paymentable_id)
            order_reference = s.subscription_number if s else None
        elif payment.paymentable_type == PaymentableType.PROGRAMME:
            pp = self.t.purchases.get(payment.paymentable_id)
            order_reference = pp.purchase_number if pp else None

        settled = payment.status in (PaymentStatus.SUCCESS, PaymentStatus.COMPLETED)
        # The gateway redirects the browser before its webhook lands; a PAY-
        # reference that is still pending is reported as a success in flight.
        in_flight = payment.status == PaymentStatus.PENDING and term.startswith("PAY-")
        return {
            "success": settled or in_flight,
            "payment_id": payment.id,
            "status": payment.status.value,
            "amount": payment.amount,
            "currency": payment.currency,
            "method": payment.method.value,
            "order_reference": order_reference,
            "order_type": payment.paymentable_type.value if payment.paymentable_type else None,
            "webhook_processed": "webhook_data" in payment.metadata or payment.processed_at is not None,
        }
