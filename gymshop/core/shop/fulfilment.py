"""
What a settled payment does to the thing it paid for.

Shared by manual admin approval and both gateway webhooks so that an order,
subscription or programme purchase is activated the same way regardless of
how the money arrived. Entities that already left PENDING are left alone,
except a programme purchase that stale cleanup timed out, which is reopened.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from gymshop.core.errors import ValidationFailed
from gymshop.core.observability.audit import audit_payment
from gymshop.core.storage import Database

from .models import (
    OrderStatus,
    Payment,
    PaymentableType,
    PaymentStatus,
    PurchaseStatus,
    SubscriptionStatus,
    _utc_now_iso,
)
from .orders import OrderService
from .payments import TIMEOUT_REASON, PaymentService
from .programmes import ProgrammeService
from .subscriptions import SubscriptionService
from .tables import Tables

log = logging.getLogger("gymshop.payments")


class Fulfilment:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)
        self.orders = OrderService(db)
        self.subscriptions = SubscriptionService(db)
        self.programmes = ProgrammeService(db)
        self.payments = PaymentService(db)

    def _target(self, payment: Payment):
        if payment.paymentable_type is not None:
            return payment.paymentable_type, payment.paymentable_id
        legacy_order = (payment.metadata or {}).get("order_id")
        if legacy_order:
            return PaymentableType.ORDER, legacy_order
        return None, None

    def apply_success(self, payment: Payment) -> Optional[Dict[str, Any]]:
        kind, entity_id = self._target(payment)
        if kind is None or not entity_id:
            return None

        with self.db.transaction():
            if kind == PaymentableType.ORDER:
                order = self.t.orders.get(entity_id)
                if order is None:
                    log.warning("payment %s references missing order %s", payment.id, entity_id)
                    return None
                if order.status == OrderStatus.PENDING:
                    order = self.orders.activate(
                        order.id,
                        payment_method=payment.method.value,
                        payment_reference=payment.transaction_id or payment.payment_reference,
                    )
                return {"type": kind.value, "id": order.id, "status": order.status.value}

            if kind == PaymentableType.SUBSCRIPTION:
                sub = self.t.subscriptions.get(entity_id)
                if sub is None:
                    log.warning("payment %s references missing subscription %s", payment.id, entity_id)
                    return None
                if sub.status == SubscriptionStatus.PENDING:
                    sub = self.subscriptions.approve(sub.id)
                return {"type": kind.value, "id": sub.id, "status": sub.status.value}

            purchase = self.t.purchases.get(entity_id)
            if purchase is None:
                log.warning("payment %s references missing programme purchase %s", payment.id, entity_id)
                return None
            if purchase.status == PurchaseStatus.CANCELLED and purchase.cancellation_reason == TIMEOUT_REASON:
                purchase = self.programmes.reopen_timed_out(purchase.id)
            if purchase.status == PurchaseStatus.PENDING:
                purchase = self.programmes.approve(purchase.id)
            return {"type": kind.value, "id": purchase.id, "status": purchase.status.value}

    def apply_rejection(self, payment: Payment, reason: Optional[str]) -> Optional[Dict[str, Any]]:
        kind, entity_id = self._target(payment)
        if kind is None or not entity_id:
            return None

        with self.db.transaction():
            if kind == PaymentableType.ORDER:
                order = self.t.orders.get(entity_id)
                if order is not None and order.status == OrderStatus.PENDING:
                    order = self.orders.reject(order.id, reason)
                return {"type": kind.value, "id": entity_id, "status": order.status.value if order else None}

            if kind == PaymentableType.SUBSCRIPTION:
                sub = self.t.subscriptions.get(entity_id)
                if sub is not None and sub.status == SubscriptionStatus.PENDING:
                    sub = self.subscriptions.reject(sub.id, reason)
                return {"type": kind.value, "id": entity_id, "status": sub.status.value if sub else None}

            purchase = self.t.purchases.get(entity_id)
            if purchase is not None and purchase.status == PurchaseStatus.PENDING:
                purchase = self.programmes.cancel(purchase.id)
            return {"type": kind.value, "id": entity_id, "status": purchase.status.value if purchase else None}

    # ------------------------------------------------------------
    # Manual review
    # ------------------------------------------------------------
    def approve(self, payment_id: str, *, actor: Optional[str] = None) -> Dict[str, Any]:
        with self.db.transaction():
            payment = self.payments.get(payment_id)
            if payment.status != PaymentStatus.PENDING:
                raise ValidationFailed("Only pending payments can be approved")
            old = payment.status.value
            payment.processed_at = _utc_now_iso()
            payment.metadata = {**payment.metadata, "approved_by": actor}
            payment = self.payments.set_status(payment, PaymentStatus.SUCCESS)
            applied = self.apply_success(payment)
        audit_payment(payment.id, provider="manual", old_status=old, new_status=payment.status.value, reference=payment.payment_reference)
        return {"payment": payment, "paymentable": applied}

    def reject(self, payment_id: str, reason: Optional[str] = None, *, actor: Optional[str] = None) -> Dict[str, Any]:
        with self.db.transaction():
            payment = self.payments.get(payment_id)
            if payment.status != PaymentStatus.PENDING:
                raise ValidationFailed("Only pending payments can be rejected")
            old = payment.status.value
            payment.processed_at = _utc_now_iso()
            payment.metadata = {**payment.metadata, "rejected_by": actor, "rejection_reason": reason}
            payment = self.payments.set_status(payment, PaymentStatus.FAILED)
            applied = self.apply_rejection(payment, reason)
        audit_payment(payment.id, provider="manual", old_status=old, new_status=payment.status.value, reference=payment.payment_reference)
        return {"payment": payment, "paymentable": applied}
