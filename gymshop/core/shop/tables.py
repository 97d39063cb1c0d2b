from __future__ import annotations

from gymshop.core.storage import Collection, Database

from .models import (
    Cart,
    Coupon,
    CouponRedemption,
    LoyaltyTransaction,
    Order,
    Payment,
    Product,
    Programme,
    ProgrammePurchase,
    Subscription,
    SubscriptionPlan,
    User,
)


class Tables:
    """Named collections over one Database."""

    def __init__(self, db: Database):
        self.db = db
        self.users: Collection[User] = db.collection("users", User)
        self.products: Collection[Product] = db.collection("products", Product)
        self.programmes: Collection[Programme] = db.collection("programmes", Programme)
        self.plans: Collection[SubscriptionPlan] = db.collection("subscription_plans", SubscriptionPlan)
        self.coupons: Collection[Coupon] = db.collection("coupons", Coupon)
        self.redemptions: Collection[CouponRedemption] = db.collection("coupon_redemptions", CouponRedemption)
        self.carts: Collection[Cart] = db.collection("carts", Cart)
        self.orders: Collection[Order] = db.collection("orders", Order)
        self.subscriptions: Collection[Subscription] = db.collection("subscriptions", Subscription)
        self.purchases: Collection[ProgrammePurchase] = db.collection("programme_purchases", ProgrammePurchase)
        self.payments: Collection[Payment] = db.collection("payments", Payment)
        self.loyalty: Collection[LoyaltyTransaction] = db.collection("loyalty_transactions", LoyaltyTransaction)
