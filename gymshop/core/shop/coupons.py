from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from gymshop.core.errors import Conflict, NotFound, ValidationFailed
from gymshop.core.storage import Database

from .models import (
    Coupon,
    CouponRedemption,
    DiscountType,
    OrderStatus,
    PurchaseStatus,
    SubscriptionStatus,
    money,
    parse_iso,
)
from .tables import Tables

log = logging.getLogger("gymshop.coupons")

_LIVE_SUBSCRIPTION = {SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE}
_LIVE_PURCHASE = {PurchaseStatus.PENDING, PurchaseStatus.COMPLETE}


def discount_for(coupon: Coupon, total: float) -> float:
    if total <= 0:
        return 0.0
    if coupon.discount_type == DiscountType.FIXED:
        return money(min(coupon.discount_amount, total))
    return money(total * coupon.discount_percentage / 100.0)


def _is_expired(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    exp = parse_iso(coupon.expiration_date)
    if exp is None:
        return False
    if exp.tzinfo is None:
        exp = exp.replace(tzinfo=timezone.utc)
    return exp < (now or datetime.now(timezone.utc))


class CouponService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)

    def get_by_code(self, code: str) -> Optional[Coupon]:
        c = (code or "").strip().upper()
        if not c:
            return None
        return self.t.coupons.find_one(lambda x: x.code == c)

    # ------------------------------------------------------------
    # Usage accounting
    # ------------------------------------------------------------
    def usage_counts(self, coupon_id: str) -> Dict[str, int]:
        orders = self.t.orders.count(lambda o: o.coupon_id == coupon_id and o.status != OrderStatus.CANCELLED)
        subs = self.t.subscriptions.count(lambda s: s.coupon_id == coupon_id and s.status in _LIVE_SUBSCRIPTION)
        progs = self.t.purchases.count(lambda p: p.coupon_id == coupon_id and p.status in _LIVE_PURCHASE)
        return {"orders": orders, "subscriptions": subs, "programmes": progs, "total": orders + subs + progs}

    def usage_stats(self, coupon_id: str) -> Dict[str, Any]:
        coupon = self.t.coupons.require(coupon_id, "Coupon")
        counts = self.usage_counts(coupon.id)
        remaining = None if coupon.max_redemptions <= 0 else max(0, coupon.max_redemptions - counts["total"])
        return {"coupon_id": coupon.id, "code": coupon.code, **counts, "remaining": remaining}

    # ------------------------------------------------------------
    # Validation / redemption
    # ------------------------------------------------------------
    def validate(self, code: str, user_id: Optional[str] = None) -> Coupon:
        coupon = self.get_by_code(code)
        if coupon is None:
            raise ValidationFailed("Invalid coupon code")
        return self._check(coupon, user_id)

    def validate_id(self, coupon_id: str, user_id: Optional[str] = None) -> Coupon:
        coupon = self.t.coupons.get(coupon_id)
        if coupon is None:
            raise ValidationFailed("Invalid coupon")
        return self._check(coupon, user_id)

    def _check(self, coupon: Coupon, user_id: Optional[str]) -> Coupon:
        if not coupon.is_active:
            raise ValidationFailed("Coupon is not active")
        if _is_expired(coupon):
            raise ValidationFailed("Coupon has expired")
        if user_id and self.t.redemptions.find_one(lambda r: r.coupon_id == coupon.id and r.user_id == user_id):
            raise ValidationFailed("You have already used this coupon")
        if coupon.max_redemptions > 0 and self.usage_counts(coupon.id)["total"] >= coupon.max_redemptions:
            raise ValidationFailed("Coupon usage limit reached")
        return coupon

    def preview(self, code: str, user_id: str, total: Optional[float] = None) -> Dict[str, Any]:
        coupon = self.validate(code, user_id)
        out: Dict[str, Any] = {"coupon": coupon.model_dump(mode="json"), "valid": True}
        if total is not None:
            d = discount_for(coupon, total)
            out["discount"] = d
            out["total_after_discount"] = money(max(0.0, total - d))
        return out

    def redeem(self, user_id: str, coupon: Coupon, source_type: str, source_id: str) -> CouponRedemption:
        r = CouponRedemption(coupon_id=coupon.id, user_id=user_id, source_type=source_type, source_id=source_id)
        self.t.redemptions.put(r)
        log.info("coupon redeemed code=%s source=%s:%s", coupon.code, source_type, source_id)
        return r

    def cancel_redemption(self, user_id: str, coupon_id: Optional[str], source_type: str, source_id: str) -> bool:
        if not coupon_id:
            return False
        with self.db.transaction():
            matches = self.t.redemptions.find(
                lambda r: r.coupon_id == coupon_id
                and r.user_id == user_id
                and r.source_type == source_type
                and r.source_id == source_id
            )
            for r in matches:
                self.t.redemptions.delete(r.id)
        return bool(matches)

    def user_coupons(self, user_id: str) -> List[Dict[str, Any]]:
        out = []
        for r in self.t.redemptions.find(lambda r: r.user_id == user_id):
            c = self.t.coupons.get(r.coupon_id)
            out.append({**r.model_dump(mode="json"), "code": c.code if c else None})
        return sorted(out, key=lambda x: x["created_at"], reverse=True)

    # ------------------------------------------------------------
    # Back office CRUD
    # ------------------------------------------------------------
    def create(self, data: Dict[str, Any]) -> Coupon:
        payload = dict(data)
        payload["code"] = (payload.get("code") or "").strip().upper()
        if not payload["code"]:
            raise ValidationFailed("code is required")
        try:
            coupon = Coupon.model_validate(payload)
        except ValidationError as e:
            raise ValidationFailed(f"Invalid coupon: {e.errors()[0].get('msg')}") from e
        with self.db.transaction():
            if self.get_by_code(coupon.code) is not None:
                raise Conflict("Coupon code already exists")
            self.t.coupons.put(coupon)
        return coupon

    def list(self) -> List[Dict[str, Any]]:
        out = []
        for c in sorted(self.t.coupons.all(), key=lambda c: c.created_at, reverse=True):
            out.append({**c.model_dump(mode="json"), "usage": self.usage_counts(c.id)})
        return out

    def get(self, coupon_id: str) -> Coupon:
        return self.t.coupons.require(coupon_id, "Coupon")

    def update(self, coupon_id: str, changes: Dict[str, Any]) -> Coupon:
        with self.db.transaction():
            current = self.t.coupons.require(coupon_id, "Coupon")
            data = current.model_dump()
            data.update({k: v for k, v in changes.items() if k not in ("id", "created_at")})
            data["code"] = str(data.get("code") or "").strip().upper()
            clash = self.get_by_code(data["code"])
            if clash is not None and clash.id != coupon_id:
                raise Conflict("Coupon code already exists")
            try:
                coupon = Coupon.model_validate(data)
            except ValidationError as e:
                raise ValidationFailed(f"Invalid coupon: {e.errors()[0].get('msg')}") from e
            return self.t.coupons.put(coupon)

    def delete(self, coupon_id: str) -> None:
        if not self.t.coupons.delete(coupon_id):
            raise NotFound("Coupon not found")
