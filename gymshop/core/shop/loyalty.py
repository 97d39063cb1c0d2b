from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from gymshop.core.currency.rates import COINS
from gymshop.core.errors import NotFound, ValidationFailed
from gymshop.core.storage import Database

from .models import (
    LoyaltySource,
    LoyaltyTransaction,
    LoyaltyType,
    Order,
    Payment,
    PaymentMethod,
    PaymentStatus,
    ProgrammePurchase,
    Subscription,
    _utc_now_iso,
)
from .tables import Tables

log = logging.getLogger("gymshop.loyalty")


def paginate(items: List[Any], page: int, page_size: int) -> Dict[str, Any]:
    page = max(1, int(page or 1))
    page_size = max(1, min(100, int(page_size or 20)))
    start = (page - 1) * page_size
    return {
        "items": items[start : start + page_size],
        "total": len(items),
        "page": page,
        "page_size": page_size,
        "pages": (len(items) + page_size - 1) // page_size,
    }


class LoyaltyService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)

    # ------------------------------------------------------------
    # Earning
    # ------------------------------------------------------------
    def points_for_order(self, order: Order) -> int:
        return sum(max(0, i.loyalty_points_awarded) * i.quantity for i in order.items)

    def points_for_subscription(self, sub: Subscription) -> int:
        plan = self.t.plans.get(sub.plan_id)
        if plan is None:
            return 0
        if sub.is_medical and plan.medical_loyalty_points_awarded > 0:
            return plan.medical_loyalty_points_awarded
        return plan.loyalty_points_awarded

    def points_for_programme(self, purchase: ProgrammePurchase) -> int:
        programme = self.t.programmes.get(purchase.programme_id)
        return programme.loyalty_points_awarded if programme else 0

    def award_for_order(self, order: Order) -> int:
        return self._award(order.user_id, self.points_for_order(order), LoyaltySource.ORDER, order.id)

    def award_for_subscription(self, sub: Subscription) -> int:
        return self._award(sub.user_id, self.points_for_subscription(sub), LoyaltySource.SUBSCRIPTION, sub.id)

    def award_for_programme(self, purchase: ProgrammePurchase) -> int:
        return self._award(purchase.user_id, self.points_for_programme(purchase), LoyaltySource.PROGRAMME, purchase.id)

    def _award(self, user_id: str, points: int, source: LoyaltySource, source_id: str) -> int:
        if points <= 0:
            return 0
        with self.db.transaction():
            already = self.t.loyalty.find_one(
                lambda x: x.type == LoyaltyType.EARNED and x.source == source and x.source_id == source_id
            )
            if already is not None:
                return 0

            user = self.t.users.get(user_id)
            if user is None:
                raise NotFound("User not found")
            user.loyalty_points += points
            self.t.users.put(user)

            self.t.loyalty.put(
                LoyaltyTransaction(user_id=user_id, points=points, type=LoyaltyType.EARNED, source=source, source_id=source_id)
            )
            self.t.payments.put(
                Payment(
                    amount=float(points),
                    currency=COINS,
                    method=PaymentMethod.GYMMAWY_COINS,
                    status=PaymentStatus.SUCCESS,
                    payment_reference=f"LOYALTY-{source.value}-{source_id}",
                    user_id=user_id,
                    processed_at=_utc_now_iso(),
                    metadata={"kind": "loyalty_award", "source": source.value, "source_id": source_id, "points": points},
                )
            )
        log.info("awarded %d points user=%s source=%s:%s", points, user_id, source.value, source_id)
        return points

    # ------------------------------------------------------------
    # Spending
    # ------------------------------------------------------------
    def deduct(self, user_id: str, points: int, source_id: str) -> LoyaltyTransaction:
        if points <= 0:
            raise ValidationFailed("points must be positive")
        with self.db.transaction():
            user = self.t.users.require(user_id, "User")
            if user.loyalty_points < points:
                raise ValidationFailed("Insufficient loyalty points")
            user.loyalty_points -= points
            self.t.users.put(user)
            txn = LoyaltyTransaction(
                user_id=user_id, points=-points, type=LoyaltyType.REDEEMED, source=LoyaltySource.REWARD, source_id=source_id
            )
            return self.t.loyalty.put(txn)

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------
    def _for_user(self, user_id: str) -> List[LoyaltyTransaction]:
        items = self.t.loyalty.find(lambda x: x.user_id == user_id)
        return sorted(items, key=lambda x: x.created_at, reverse=True)

    def history(
        self,
        user_id: str,
        *,
        type: Optional[str] = None,
        source: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        items = self._for_user(user_id)
        if type:
            items = [x for x in items if x.type.value == type.upper()]
        if source:
            items = [x for x in items if x.source.value == source.upper()]
        out = paginate(items, page, page_size)
        out["items"] = [x.model_dump(mode="json") for x in out["items"]]
        return out

    def recent(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        return [x.model_dump(mode="json") for x in self._for_user(user_id)[:limit]]

    def stats(self, user_id: str) -> Dict[str, Any]:
        user = self.t.users.require(user_id, "User")
        items = self._for_user(user_id)
        earned = sum(x.points for x in items if x.type == LoyaltyType.EARNED)
        redeemed = -sum(x.points for x in items if x.type == LoyaltyType.REDEEMED)
        by_source: Dict[str, int] = {}
        for x in items:
            if x.type == LoyaltyType.EARNED:
                by_source[x.source.value] = by_source.get(x.source.value, 0) + x.points
        return {
            "balance": user.loyalty_points,
            "total_earned": earned,
            "total_redeemed": redeemed,
            "earned_by_source": by_source,
            "transactions": len(items),
        }

    def filter_options(self, user_id: str) -> Dict[str, List[str]]:
        items = self._for_user(user_id)
        return {
            "types": sorted({x.type.value for x in items}),
            "sources": sorted({x.source.value for x in items}),
        }
