"""
Spending loyalty points on catalog items.

A redemption always produces a PAID order priced in GYMMAWY_COINS so it shows
up in the member's order list. Packages and programmes additionally grant the
entitlement itself (an ACTIVE subscription or a COMPLETE purchase).
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from gymshop.core.currency.rates import COINS
from gymshop.core.errors import Conflict, NotFound, ValidationFailed
from gymshop.core.storage import Database

from .loyalty import LoyaltyService
from .models import (
    LoyaltySource,
    LoyaltyType,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    ProgrammePurchase,
    PurchaseStatus,
    Subscription,
    SubscriptionStatus,
    _utc_now_iso,
)
from .numbering import order_number, programme_purchase_number, subscription_number, unique_value
from .tables import Tables

log = logging.getLogger("gymshop.rewards")

CATEGORIES = ("packages", "products", "programmes")
PACKAGE_DAYS = 30


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


class RewardService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)
        self.loyalty = LoyaltyService(db)

    def _item(self, item_id: str, category: str) -> Tuple[Any, str]:
        if category not in CATEGORIES:
            raise ValidationFailed(f"Unknown reward category: {category}")
        table = {"packages": self.t.plans, "products": self.t.products, "programmes": self.t.programmes}[category]
        item = table.get(item_id)
        if item is None or not item.is_active:
            raise NotFound("Reward item not found")
        if item.loyalty_points_required <= 0:
            raise ValidationFailed("Item is not available as a reward")
        return item, item.name

    def validate_redemption(self, user_id: str, item_id: str, category: str, points_required: Optional[int] = None) -> Dict[str, Any]:
        item, name = self._item(item_id, category)
        if points_required is not None and int(points_required) != item.loyalty_points_required:
            raise ValidationFailed("Points required do not match the item")
        user = self.t.users.require(user_id, "User")
        if user.loyalty_points < item.loyalty_points_required:
            raise ValidationFailed("Insufficient loyalty points")
        return {
            "valid": True,
            "item_id": item.id,
            "item_name": name,
            "category": category,
            "points_required": item.loyalty_points_required,
            "balance": user.loyalty_points,
            "balance_after": user.loyalty_points - item.loyalty_points_required,
        }

    def redeem(
        self,
        user_id: str,
        item_id: str,
        category: str,
        *,
        shipping_details: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        moment = now or datetime.now(timezone.utc)
        with self.db.transaction():
            item, name = self._item(item_id, category)
            points = item.loyalty_points_required

            if category == "products":
                if item.variants:
                    raise ValidationFailed("Products with variants cannot be redeemed")
                if item.stock < 1:
                    raise Conflict("Insufficient stock")
                item.stock -= 1
                self.t.products.put(item)

            reference = f"REWARD-{item.id}-{int(time.time() * 1000)}"
            txn = self.loyalty.deduct(user_id, points, reference)

            payment = Payment(
                amount=float(points),
                currency=COINS,
                method=PaymentMethod.GYMMAWY_COINS,
                status=PaymentStatus.COMPLETED,
                payment_reference=reference,
                user_id=user_id,
                processed_at=_utc_now_iso(),
                metadata={"kind": "reward_redemption", "category": category, "item_id": item.id, "points": points},
            )
            self.t.payments.put(payment)

            order = Order(
                order_number=unique_value(order_number, lambda n: self.t.orders.find_one(lambda o: o.order_number == n) is not None),
                user_id=user_id,
                status=OrderStatus.PAID,
                currency=COINS,
                items=[OrderItem(product_id=item.id, name=name, quantity=1, unit_price=float(points))],
                subtotal=float(points),
                price=float(points),
                shipping_address=shipping_details or {},
                payment_method=PaymentMethod.GYMMAWY_COINS.value,
                payment_reference=reference,
            )
            self.t.orders.put(order)

            granted = None
            if category == "packages":
                granted = Subscription(
                    subscription_number=unique_value(
                        subscription_number,
                        lambda n: self.t.subscriptions.find_one(lambda s: s.subscription_number == n) is not None,
                    ),
                    user_id=user_id,
                    plan_id=item.id,
                    status=SubscriptionStatus.ACTIVE,
                    currency=COINS,
                    original_price=float(points),
                    price=float(points),
                    subscription_period_days=PACKAGE_DAYS,
                    gift_period_days=0,
                    start_date=_iso(moment),
                    end_date=_iso(moment + timedelta(days=PACKAGE_DAYS)),
                    payment_method=PaymentMethod.GYMMAWY_COINS.value,
                )
                self.t.subscriptions.put(granted)
            elif category == "programmes":
                granted = ProgrammePurchase(
                    purchase_number=unique_value(
                        programme_purchase_number,
                        lambda n: self.t.purchases.find_one(lambda p: p.purchase_number == n) is not None,
                    ),
                    user_id=user_id,
                    programme_id=item.id,
                    status=PurchaseStatus.COMPLETE,
                    currency=COINS,
                    price=float(points),
                    payment_method=PaymentMethod.GYMMAWY_COINS.value,
                )
                self.t.purchases.put(granted)

        log.info("reward redeemed user=%s category=%s item=%s points=%d", user_id, category, item.id, points)
        return {
            "order": order.model_dump(mode="json"),
            "payment": payment.model_dump(mode="json"),
            "transaction": txn.model_dump(mode="json"),
            "granted": granted.model_dump(mode="json") if granted else None,
            "points_spent": points,
            "balance": self.t.users.require(user_id, "User").loyalty_points,
        }

    def redemption_history(self, user_id: str) -> List[Dict[str, Any]]:
        redeemed = self.t.loyalty.find(
            lambda x: x.user_id == user_id and x.type == LoyaltyType.REDEEMED and x.source == LoyaltySource.REWARD
        )
        out = []
        for txn in sorted(redeemed, key=lambda x: x.created_at, reverse=True):
            payment = self.t.payments.find_one(lambda p: p.payment_reference == txn.source_id)
            meta = payment.metadata if payment else {}
            out.append(
                {
                    "id": txn.id,
                    "points": -txn.points,
                    "reference": txn.source_id,
                    "category": meta.get("category"),
                    "item_id": meta.get("item_id"),
                    "created_at": txn.created_at,
                }
            )
        return out
