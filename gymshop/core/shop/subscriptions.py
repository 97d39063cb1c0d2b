from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from gymshop.core.currency.rates import price_for
from gymshop.core.errors import NotFound, ValidationFailed
from gymshop.core.storage import Database

from .coupons import CouponService, discount_for
from .loyalty import LoyaltyService
from .models import (
    PaymentableType,
    Subscription,
    SubscriptionStatus,
    _utc_now_iso,
    money,
    parse_iso,
)
from .numbering import subscription_number, unique_value
from .payments import PaymentService, needs_manual_record, parse_method, validate_payment_method
from .state_machine import ensure_transition
from .tables import Tables

log = logging.getLogger("gymshop.subscriptions")


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


class SubscriptionService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)
        self.coupons = CouponService(db)
        self.loyalty = LoyaltyService(db)
        self.payments = PaymentService(db)

    def _new_number(self) -> str:
        return unique_value(
            subscription_number,
            lambda n: self.t.subscriptions.find_one(lambda s: s.subscription_number == n) is not None,
        )

    def _set_status(self, sub: Subscription, status: SubscriptionStatus) -> Subscription:
        ensure_transition(sub.status, status, what="subscription")
        sub.status = status
        return self.t.subscriptions.put(sub)

    def quote(self, plan_id: str, *, is_medical: bool, currency: str, coupon=None) -> Dict[str, float]:
        plan = self.t.plans.get(plan_id)
        if plan is None or not plan.is_active:
            raise ValidationFailed("Invalid plan")
        prices = plan.medical_prices if is_medical else plan.prices
        if is_medical and not prices:
            raise ValidationFailed("Plan has no medical pricing")
        original = price_for(prices, currency)
        plan_discount = money(original * (plan.discount_percentage or 0) / 100.0)
        after_plan = money(original - plan_discount)
        coupon_discount = discount_for(coupon, after_plan) if coupon else 0.0
        return {
            "original_price": original,
            "plan_discount": plan_discount,
            "coupon_discount": coupon_discount,
            "price": money(max(0.0, after_plan - coupon_discount)),
        }

    def create_with_payment(
        self,
        user_id: str,
        *,
        plan_id: str,
        is_medical: bool,
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
            plan = self.t.plans.get(plan_id)
            if plan is None:
                raise ValidationFailed("Invalid plan")
            coupon = self.coupons.validate(coupon_code, user_id) if coupon_code else None
            q = self.quote(plan_id, is_medical=is_medical, currency=currency, coupon=coupon)

            sub = Subscription(
                subscription_number=self._new_number(),
                user_id=user_id,
                plan_id=plan.id,
                is_medical=is_medical,
                currency=currency,
                original_price=q["original_price"],
                plan_discount=q["plan_discount"],
                coupon_id=coupon.id if coupon else None,
                coupon_discount=q["coupon_discount"],
                price=q["price"],
                subscription_period_days=plan.subscription_period_days,
                gift_period_days=plan.gift_period_days,
                payment_method=method.value,
            )
            self.t.subscriptions.put(sub)
            if coupon:
                self.coupons.redeem(user_id, coupon, PaymentableType.SUBSCRIPTION.value, sub.id)

            payment = None
            if manual:
                payment = self.payments.create_manual(
                    user_id=user_id,
                    method=method,
                    amount=sub.price,
                    currency=currency,
                    paymentable_type=PaymentableType.SUBSCRIPTION,
                    paymentable_id=sub.id,
                    transaction_id=transaction_id,
                    payment_proof_url=payment_proof_url,
                )

        log.info("subscription created id=%s plan=%s price=%.2f %s", sub.id, plan.id, sub.price, currency)
        return {"subscription": sub, "payment": payment}

    # ------------------------------------------------------------
    # Member operations
    # ------------------------------------------------------------
    def list_for_user(self, user_id: str) -> List[Subscription]:
        self.expire_due()
        subs = self.t.subscriptions.find(lambda s: s.user_id == user_id)
        return sorted(subs, key=lambda s: s.created_at, reverse=True)

    def cancel(self, user_id: str, sub_id: str) -> Subscription:
        with self.db.transaction():
            sub = self.t.subscriptions.get(sub_id)
            if sub is None or sub.user_id != user_id:
                raise NotFound("Subscription not found")
            if sub.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING):
                raise ValidationFailed("Only active or pending subscriptions can be cancelled")
            sub.cancelled_at = _utc_now_iso()
            self.coupons.cancel_redemption(user_id, sub.coupon_id, PaymentableType.SUBSCRIPTION.value, sub.id)
            return self._set_status(sub, SubscriptionStatus.CANCELLED)

    # ------------------------------------------------------------
    # Back office
    # ------------------------------------------------------------
    def get(self, sub_id: str) -> Subscription:
        return self.t.subscriptions.require(sub_id, "Subscription")

    def approve(self, sub_id: str, *, now: Optional[datetime] = None) -> Subscription:
        with self.db.transaction():
            sub = self.t.subscriptions.require(sub_id, "Subscription")
            if sub.status != SubscriptionStatus.PENDING:
                raise ValidationFailed("Subscription is not pending approval")
            start = now or datetime.now(timezone.utc)
            sub.start_date = _iso(start)
            sub.end_date = _iso(start + timedelta(days=sub.subscription_period_days + sub.gift_period_days))
            sub = self._set_status(sub, SubscriptionStatus.ACTIVE)
            points = self.loyalty.award_for_subscription(sub)
        log.info("subscription approved id=%s end=%s points=%d", sub.id, sub.end_date, points)
        return sub

    def reject(self, sub_id: str, reason: Optional[str] = None) -> Subscription:
        with self.db.transaction():
            sub = self.t.subscriptions.require(sub_id, "Subscription")
            if sub.status != SubscriptionStatus.PENDING:
                raise ValidationFailed("Subscription is not pending approval")
            sub.rejection_reason = reason
            self.coupons.cancel_redemption(sub.user_id, sub.coupon_id, PaymentableType.SUBSCRIPTION.value, sub.id)
            return self._set_status(sub, SubscriptionStatus.REJECTED)

    def pending(self) -> List[Subscription]:
        subs = self.t.subscriptions.find(lambda s: s.status == SubscriptionStatus.PENDING)
        return sorted(subs, key=lambda s: s.created_at, reverse=True)

    def expire_due(self, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        moment = now or datetime.now(timezone.utc)
        expired: List[Dict[str, str]] = []
        with self.db.transaction():
            for sub in self.t.subscriptions.find(lambda s: s.status == SubscriptionStatus.ACTIVE):
                end = parse_iso(sub.end_date)
                if end is not None and end < moment:
                    self._set_status(sub, SubscriptionStatus.EXPIRED)
                    expired.append({"id": sub.id, "subscription_number": sub.subscription_number})
        if expired:
            log.info("expired %d subscription(s)", len(expired))
        return {"expired_count": len(expired), "expired": expired}

    def admin_update_status(self, sub_id: str, status: str) -> Subscription:
        try:
            target = SubscriptionStatus(status.upper())
        except ValueError:
            raise ValidationFailed(f"Unknown subscription status: {status}")
        sub = self.t.subscriptions.require(sub_id, "Subscription")
        if target == SubscriptionStatus.ACTIVE and sub.status == SubscriptionStatus.PENDING:
            return self.approve(sub_id)
        if target == SubscriptionStatus.REJECTED and sub.status == SubscriptionStatus.PENDING:
            return self.reject(sub_id)
        with self.db.transaction():
            return self._set_status(sub, target)
