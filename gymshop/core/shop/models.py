from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(ts: Optional[str]) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


def new_id() -> str:
    return uuid4().hex


def money(value: float) -> float:
    return round(float(value), 2)


Prices = Dict[str, float]


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class SubscriptionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class PurchaseStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    CARD = "CARD"
    TABBY = "TABBY"
    TAMARA = "TAMARA"
    INSTA_PAY = "INSTA_PAY"
    VODAFONE_CASH = "VODAFONE_CASH"
    PAYMOB = "PAYMOB"
    GYMMAWY_COINS = "GYMMAWY_COINS"


class PaymentableType(str, Enum):
    ORDER = "ORDER"
    SUBSCRIPTION = "SUBSCRIPTION"
    PROGRAMME = "PROGRAMME"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class LoyaltyType(str, Enum):
    EARNED = "EARNED"
    REDEEMED = "REDEEMED"


class LoyaltySource(str, Enum):
    ORDER = "ORDER"
    SUBSCRIPTION = "SUBSCRIPTION"
    PROGRAMME = "PROGRAMME"
    REWARD = "REWARD"


# ------------------------------------------------------------
# Accounts
# ------------------------------------------------------------
class User(BaseModel):
    id: str = Field(default_factory=new_id)
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    mobile_number: str = ""
    role: str = "member"
    loyalty_points: int = 0
    created_at: str = Field(default_factory=_utc_now_iso)

    def public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"password_hash"})


# ------------------------------------------------------------
# Catalog
# ------------------------------------------------------------
class ProductVariant(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    prices: Optional[Prices] = None
    stock: int = 0
    is_active: bool = True


class Product(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    prices: Prices = Field(default_factory=dict)
    stock: int = 0
    loyalty_points_awarded: int = 0
    loyalty_points_required: int = 0
    is_active: bool = True
    variants: List[ProductVariant] = Field(default_factory=list)
    created_at: str = Field(default_factory=_utc_now_iso)

    def variant(self, variant_id: Optional[str]) -> Optional[ProductVariant]:
        if not variant_id:
            return None
        for v in self.variants:
            if v.id == variant_id:
                return v
        return None


class Programme(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    prices: Prices = Field(default_factory=dict)
    loyalty_points_awarded: int = 0
    loyalty_points_required: int = 0
    is_active: bool = True
    created_at: str = Field(default_factory=_utc_now_iso)


class SubscriptionPlan(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    prices: Prices = Field(default_factory=dict)
    medical_prices: Prices = Field(default_factory=dict)
    discount_percentage: float = 0.0
    subscription_period_days: int = 30
    gift_period_days: int = 0
    loyalty_points_awarded: int = 0
    medical_loyalty_points_awarded: int = 0
    loyalty_points_required: int = 0
    is_active: bool = True
    created_at: str = Field(default_factory=_utc_now_iso)


# ------------------------------------------------------------
# Coupons
# ------------------------------------------------------------
class Coupon(BaseModel):
    id: str = Field(default_factory=new_id)
    code: str
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_percentage: float = 0.0
    discount_amount: float = 0.0
    max_redemptions: int = 0
    expiration_date: Optional[str] = None
    is_active: bool = True
    created_at: str = Field(default_factory=_utc_now_iso)


class CouponRedemption(BaseModel):
    id: str = Field(default_factory=new_id)
    coupon_id: str
    user_id: str
    source_type: Optional[str] = None
    source_id: Optional[str] = None
    created_at: str = Field(default_factory=_utc_now_iso)


# ------------------------------------------------------------
# Cart / Orders
# ------------------------------------------------------------
class CartItem(BaseModel):
    id: str = Field(default_factory=new_id)
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = 1


class Cart(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    coupon_id: Optional[str] = None
    updated_at: str = Field(default_factory=_utc_now_iso)


class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    name: str
    quantity: int
    unit_price: float
    loyalty_points_awarded: int = 0


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    order_number: str
    user_id: str
    status: OrderStatus = OrderStatus.PENDING
    currency: str
    items: List[OrderItem] = Field(default_factory=list)
    subtotal: float = 0.0
    coupon_id: Optional[str] = None
    coupon_discount: float = 0.0
    price: float = 0.0
    shipping_address: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: str = Field(default_factory=_utc_now_iso)
    updated_at: str = Field(default_factory=_utc_now_iso)


# ------------------------------------------------------------
# Subscriptions / Programmes
# ------------------------------------------------------------
class Subscription(BaseModel):
    id: str = Field(default_factory=new_id)
    subscription_number: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    is_medical: bool = False
    currency: str
    original_price: float = 0.0
    plan_discount: float = 0.0
    coupon_id: Optional[str] = None
    coupon_discount: float = 0.0
    price: float = 0.0
    subscription_period_days: int = 30
    gift_period_days: int = 0
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    payment_method: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancelled_at: Optional[str] = None
    created_at: str = Field(default_factory=_utc_now_iso)


class ProgrammePurchase(BaseModel):
    id: str = Field(default_factory=new_id)
    purchase_number: str
    user_id: str
    programme_id: str
    status: PurchaseStatus = PurchaseStatus.PENDING
    currency: str
    price: float = 0.0
    coupon_id: Optional[str] = None
    coupon_discount: float = 0.0
    payment_method: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[str] = None
    created_at: str = Field(default_factory=_utc_now_iso)


# ------------------------------------------------------------
# Payments / Loyalty
# ------------------------------------------------------------
class Payment(BaseModel):
    id: str = Field(default_factory=new_id)
    amount: float
    currency: str
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    gateway_id: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_reference: str
    payment_proof_url: Optional[str] = None
    paymentable_type: Optional[PaymentableType] = None
    paymentable_id: Optional[str] = None
    user_id: Optional[str] = None
    customer_info: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    processed_at: Optional[str] = None
    created_at: str = Field(default_factory=_utc_now_iso)
    updated_at: str = Field(default_factory=_utc_now_iso)


class LoyaltyTransaction(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    points: int
    type: LoyaltyType
    source: LoyaltySource
    source_id: Optional[str] = None
    created_at: str = Field(default_factory=_utc_now_iso)
