from __future__ import annotations

from typing import Any, Dict, List

from gymshop.core.storage import Database

from .catalog import CatalogService
from .models import (
    PaymentMethod,
    PaymentStatus,
    PurchaseStatus,
    SubscriptionStatus,
    money,
)
from .tables import Tables

LOW_STOCK_THRESHOLD = 5
RECENT_LIMIT = 10

_SETTLED = {PaymentStatus.SUCCESS, PaymentStatus.COMPLETED}


def _latest(items: List[Any], limit: int = RECENT_LIMIT) -> List[Dict[str, Any]]:
    items = sorted(items, key=lambda x: x.created_at, reverse=True)[:limit]
    return [x.model_dump(mode="json") for x in items]


class DashboardService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)

    def stats(self) -> Dict[str, Any]:
        orders_by_status: Dict[str, int] = {}
        for o in self.t.orders.all():
            orders_by_status[o.status.value] = orders_by_status.get(o.status.value, 0) + 1

        revenue: Dict[str, float] = {}
        pending_payments = 0
        for p in self.t.payments.all():
            if p.method == PaymentMethod.GYMMAWY_COINS:
                continue
            if p.status in _SETTLED:
                revenue[p.currency] = money(revenue.get(p.currency, 0.0) + p.amount)
            elif p.status == PaymentStatus.PENDING:
                pending_payments += 1

        pending_subs = self.t.subscriptions.count(lambda s: s.status == SubscriptionStatus.PENDING)
        pending_programmes = self.t.purchases.count(lambda p: p.status == PurchaseStatus.PENDING)

        return {
            "users": self.t.users.count(),
            "orders_by_status": orders_by_status,
            "revenue_by_currency": revenue,
            "active_subscriptions": self.t.subscriptions.count(lambda s: s.status == SubscriptionStatus.ACTIVE),
            "pending_approvals": {
                "payments": pending_payments,
                "subscriptions": pending_subs,
                "programmes": pending_programmes,
                "total": pending_payments + pending_subs + pending_programmes,
            },
            "low_stock": CatalogService(self.db).low_stock(LOW_STOCK_THRESHOLD),
        }

    def recent(self) -> Dict[str, Any]:
        return {
            "orders": _latest(self.t.orders.all()),
            "subscriptions": _latest(self.t.subscriptions.all()),
            "payments": _latest(self.t.payments.all()),
        }
