from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from gymshop.core.currency.rates import price_for
from gymshop.core.errors import Conflict, ValidationFailed
from gymshop.core.storage import Database

from .coupons import CouponService, discount_for
from .loyalty import LoyaltyService
from .models import PaymentableType, ProgrammePurchase, PurchaseStatus, _utc_now_iso, money
from .numbering import programme_purchase_number, unique_value
from .payments import TIMEOUT_REASON, PaymentService, needs_manual_record, parse_method, validate_payment_method
from .state_machine import ensure_transition
from .tables import Tables

log = logging.getLogger("gymshop.programmes")

_HELD = {PurchaseStatus.PENDING, PurchaseStatus.COMPLETE}


class ProgrammeService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)
        self.coupons = CouponService(db)
        self.loyalty = LoyaltyService(db)
        self.payments = PaymentService(db)

    def _new_number(self) -> str:
        return unique_value(
            programme_purchase_number,
            lambda n: self.t.purchases.find_one(lambda p: p.purchase_number == n) is not None,
        )

    def _set_status(self, purchase: ProgrammePurchase, status: PurchaseStatus) -> ProgrammePurchase:
        ensure_transition(purchase.status, status, what="programme purchase")
        purchase.status = status
        return self.t.purchases.put(purchase)

    def purchase_with_payment(
        self,
        user_id: str,
        programme_id: str,
        *,
        currency: str,
        payment_method: str,
        transaction_id: Optional[str] = None,
        payment_proof_url: Optional[str] = None,
        coupon_code: Optional[str] = None,
        via_gateway: bool = False,
    ) -> Dict[str, Any]:
        method = parse_method(payment_method)
        manual = needs_manual_record(method, via_gateway)
        if manual:
            validate_payment_method(method, transaction_id, payment_proof_url)

        with self.db.transaction():
            programme = self.t.programmes.get(programme_id)
            if programme is None or not programme.is_active:
                raise ValidationFailed("Programme not available")
            held = self.t.purchases.find_one(
                lambda p: p.user_id == user_id and p.programme_id == programme_id and p.status in _HELD
            )
            if held is not None:
                raise Conflict("You have already purchased this programme")

            base = price_for(programme.prices, currency)
            coupon = self.coupons.validate(coupon_code, user_id) if coupon_code else None
            discount = discount_for(coupon, base) if coupon else 0.0

            purchase = ProgrammePurchase(
                purchase_number=self._new_number(),
                user_id=user_id,
                programme_id=programme.id,
                currency=currency,
                price=money(max(0.0, base - discount)),
                coupon_id=coupon.id if coupon else None,
                coupon_discount=discount,
                payment_method=method.value,
            )
            self.t.purchases.put(purchase)
            if coupon:
                self.coupons.redeem(user_id, coupon, PaymentableType.PROGRAMME.value, purchase.id)

            payment = None
            if manual:
                payment = self.payments.create_manual(
                    user_id=user_id,
                    method=method,
                    amount=purchase.price,
                    currency=currency,
                    paymentable_type=PaymentableType.PROGRAMME,
                    paymentable_id=purchase.id,
                    transaction_id=transaction_id,
                    payment_proof_url=payment_proof_url,
                )

        log.info("programme purchase id=%s programme=%s price=%.2f %s", purchase.id, programme.id, purchase.price, currency)
        return {"purchase": purchase, "payment": payment}

    def user_programmes(self, user_id: str) -> List[Dict[str, Any]]:
        out = []
        for p in sorted(self.t.purchases.find(lambda p: p.user_id == user_id), key=lambda p: p.created_at, reverse=True):
            programme = self.t.programmes.get(p.programme_id)
            out.append({**p.model_dump(mode="json"), "programme": programme.model_dump(mode="json") if programme else None})
        return out

    def get(self, purchase_id: str) -> ProgrammePurchase:
        return self.t.purchases.require(purchase_id, "Programme purchase")

    def approve(self, purchase_id: str) -> ProgrammePurchase:
        with self.db.transaction():
            purchase = self.t.purchases.require(purchase_id, "Programme purchase")
            if purchase.status != PurchaseStatus.PENDING:
                raise ValidationFailed("Programme purchase is not pending approval")
            purchase = self._set_status(purchase, PurchaseStatus.COMPLETE)
            points = self.loyalty.award_for_programme(purchase)
        log.info("programme purchase approved id=%s points=%d", purchase.id, points)
        return purchase

    def reject(self, purchase_id: str, reason: Optional[str] = None) -> ProgrammePurchase:
        with self.db.transaction():
            purchase = self.t.purchases.require(purchase_id, "Programme purchase")
            if purchase.status != PurchaseStatus.PENDING:
                raise ValidationFailed("Programme purchase is not pending approval")
            purchase.rejection_reason = reason
            self.coupons.cancel_redemption(purchase.user_id, purchase.coupon_id, PaymentableType.PROGRAMME.value, purchase.id)
            return self._set_status(purchase, PurchaseStatus.REJECTED)

    def cancel(self, purchase_id: str, reason: Optional[str] = None) -> ProgrammePurchase:
        with self.db.transaction():
            purchase = self.t.purchases.require(purchase_id, "Programme purchase")
            self.coupons.cancel_redemption(purchase.user_id, purchase.coupon_id, PaymentableType.PROGRAMME.value, purchase.id)
            purchase.cancellation_reason = reason
            purchase.cancelled_at = _utc_now_iso()
            return self._set_status(purchase, PurchaseStatus.CANCELLED)

    def reopen_timed_out(self, purchase_id: str) -> ProgrammePurchase:
        """Put a purchase cancelled by stale cleanup back to PENDING after the gateway settled it late."""
        with self.db.transaction():
            purchase = self.t.purchases.require(purchase_id, "Programme purchase")
            if purchase.status != PurchaseStatus.CANCELLED or purchase.cancellation_reason != TIMEOUT_REASON:
                raise ValidationFailed("Only timed-out programme purchases can be reopened")
            held = self.t.purchases.find_one(
                lambda p: p.id != purchase.id
                and p.user_id == purchase.user_id
                and p.programme_id == purchase.programme_id
                and p.status in _HELD
            )
            if held is not None:
                raise Conflict("You have already purchased this programme")
            # the gateway charged the discounted price
            coupon = self.t.coupons.get(purchase.coupon_id)
            if coupon is not None:
                self.coupons.redeem(purchase.user_id, coupon, PaymentableType.PROGRAMME.value, purchase.id)
            purchase.status = PurchaseStatus.PENDING
            purchase.cancellation_reason = None
            purchase.cancelled_at = None
            self.t.purchases.put(purchase)
        log.warning("timed-out programme purchase reopened id=%s", purchase.id)
        return purchase

    def pending(self) -> List[ProgrammePurchase]:
        items = self.t.purchases.find(lambda p: p.status == PurchaseStatus.PENDING)
        return sorted(items, key=lambda p: p.created_at, reverse=True)
