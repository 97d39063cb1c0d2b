from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from gymshop.core.config import env_str
from gymshop.core.errors import Conflict, NotFound, ValidationFailed
from gymshop.core.storage import Database

from .cart import available_stock, resolve_line, unit_price
from .coupons import CouponService, discount_for
from .loyalty import LoyaltyService, paginate
from .models import Order, OrderItem, OrderStatus, PaymentableType, _utc_now_iso, money, parse_iso
from .numbering import order_number, unique_value
from .state_machine import ensure_transition
from .tables import Tables

log = logging.getLogger("gymshop.orders")

CARRIER = "Gymmawy Logistics"


class OrderService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)
        self.coupons = CouponService(db)
        self.loyalty = LoyaltyService(db)

    def _new_number(self) -> str:
        return unique_value(order_number, lambda n: self.t.orders.find_one(lambda o: o.order_number == n) is not None)

    def _user_order(self, user_id: str, order_id: str) -> Order:
        order = self.t.orders.get(order_id)
        if order is None or order.user_id != user_id:
            raise NotFound("Order not found")
        return order

    def _adjust_stock(self, order: Order, sign: int) -> None:
        for item in order.items:
            product = self.t.products.get(item.product_id)
            if product is None:
                continue
            variant = product.variant(item.variant_id)
            if variant is not None:
                variant.stock += sign * item.quantity
            else:
                product.stock += sign * item.quantity
            self.t.products.put(product)

    def _set_status(self, order: Order, status: OrderStatus) -> Order:
        ensure_transition(order.status, status, what="order")
        order.status = status
        order.updated_at = _utc_now_iso()
        return self.t.orders.put(order)

    # ------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------
    def create_from_cart(
        self,
        user_id: str,
        *,
        currency: str,
        shipping_address: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        coupon_code: Optional[str] = None,
    ) -> Order:
        with self.db.transaction():
            cart = self.t.carts.find_one(lambda c: c.user_id == user_id)
            if cart is None or not cart.items:
                raise ValidationFailed("Cart is empty")

            items: List[OrderItem] = []
            subtotal = 0.0
            for line in cart.items:
                product, variant = resolve_line(self.t, line.product_id, line.variant_id)
                if line.quantity > available_stock(product, variant):
                    raise Conflict(f"Insufficient stock for {product.name}")
                price = unit_price(product, variant, currency)
                subtotal += price * line.quantity
                items.append(
                    OrderItem(
                        product_id=product.id,
                        variant_id=variant.id if variant else None,
                        name=f"{product.name} / {variant.name}" if variant else product.name,
                        quantity=line.quantity,
                        unit_price=price,
                        loyalty_points_awarded=product.loyalty_points_awarded,
                    )
                )
            subtotal = money(subtotal)

            coupon = None
            if coupon_code:
                coupon = self.coupons.validate(coupon_code, user_id)
            elif cart.coupon_id:
                coupon = self.coupons.validate_id(cart.coupon_id, user_id)
            discount = discount_for(coupon, subtotal) if coupon else 0.0

            order = Order(
                order_number=self._new_number(),
                user_id=user_id,
                currency=currency,
                items=items,
                subtotal=subtotal,
                coupon_id=coupon.id if coupon else None,
                coupon_discount=discount,
                price=money(max(0.0, subtotal - discount)),
                shipping_address=shipping_address or {},
                notes=notes,
            )
            self.t.orders.put(order)
            self._adjust_stock(order, -1)
            if coupon:
                self.coupons.redeem(user_id, coupon, PaymentableType.ORDER.value, order.id)

            cart.items = []
            cart.coupon_id = None
            self.t.carts.put(cart)

        log.info(
            "order created id=%s number=%s subtotal=%.2f discount=%.2f price=%.2f currency=%s",
            order.id,
            order.order_number,
            subtotal,
            discount,
            order.price,
            currency,
        )
        return order

    # ------------------------------------------------------------
    # Member operations
    # ------------------------------------------------------------
    def list_for_user(self, user_id: str) -> List[Order]:
        return sorted(self.t.orders.find(lambda o: o.user_id == user_id), key=lambda o: o.created_at, reverse=True)

    def get_for_user(self, user_id: str, order_id: str) -> Order:
        return self._user_order(user_id, order_id)

    def update(self, user_id: str, order_id: str, *, shipping_address: Optional[Dict[str, Any]] = None, notes: Optional[str] = None) -> Order:
        with self.db.transaction():
            order = self._user_order(user_id, order_id)
            if order.status != OrderStatus.PENDING:
                raise ValidationFailed("Only pending orders can be updated")
            if shipping_address:
                order.shipping_address = shipping_address
            if notes:
                order.notes = notes
            order.updated_at = _utc_now_iso()
            return self.t.orders.put(order)

    def cancel(self, user_id: str, order_id: str) -> Order:
        with self.db.transaction():
            order = self._user_order(user_id, order_id)
            if order.status != OrderStatus.PENDING:
                raise ValidationFailed("Only pending orders can be cancelled")
            return self._release(order, OrderStatus.CANCELLED, reason=None)

    def _release(self, order: Order, status: OrderStatus, *, reason: Optional[str]) -> Order:
        self._adjust_stock(order, +1)
        self.coupons.cancel_redemption(order.user_id, order.coupon_id, PaymentableType.ORDER.value, order.id)
        order.rejection_reason = reason
        return self._set_status(order, status)

    def tracking(self, user_id: str, order_id: str) -> Dict[str, Any]:
        order = self._user_order(user_id, order_id)
        created = parse_iso(order.created_at) or datetime.now(timezone.utc)
        history = [{"status": "ORDER_PLACED", "timestamp": order.created_at, "description": "Order placed successfully"}]
        if order.status != OrderStatus.PENDING:
            history.append(
                {
                    "status": order.status.value,
                    "timestamp": order.updated_at,
                    "description": f"Order {order.status.value.lower()}",
                }
            )
        base = env_str("GYMSHOP_TRACKING_BASE_URL", "https://tracking.gymmawy.com")
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status.value,
            "tracking_number": f"TRK{order.id[-8:].upper()}",
            "carrier": CARRIER,
            "estimated_delivery": (created + timedelta(days=3)).isoformat().replace("+00:00", "Z"),
            "tracking_url": f"{base}/{order.id}",
            "history": history,
        }

    # ------------------------------------------------------------
    # Back office
    # ------------------------------------------------------------
    def admin_list(
        self,
        *,
        status: Optional[str] = None,
        search: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        orders = self.t.orders.all()
        if status:
            orders = [o for o in orders if o.status.value == status.upper()]
        if search:
            needle = search.strip().lower()
            emails = {u.id: u.email for u in self.t.users.all()}
            orders = [
                o
                for o in orders
                if needle in o.order_number.lower() or needle in (emails.get(o.user_id) or "").lower()
            ]
        if date_from:
            orders = [o for o in orders if o.created_at >= date_from]
        if date_to:
            orders = [o for o in orders if o.created_at <= date_to]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        out = paginate(orders, page, page_size)
        out["items"] = [o.model_dump(mode="json") for o in out["items"]]
        return out

    def get(self, order_id: str) -> Order:
        return self.t.orders.require(order_id, "Order")

    def admin_update_status(self, order_id: str, status: str) -> Order:
        try:
            target = OrderStatus(status.upper())
        except ValueError:
            raise ValidationFailed(f"Unknown order status: {status}")
        with self.db.transaction():
            order = self.t.orders.require(order_id, "Order")
            if target == OrderStatus.PAID and order.status == OrderStatus.PENDING:
                return self.activate(order_id)
            if target == OrderStatus.CANCELLED and order.status == OrderStatus.PENDING:
                return self._release(order, target, reason=None)
            return self._set_status(order, target)

    def activate(
        self,
        order_id: str,
        *,
        payment_method: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> Order:
        with self.db.transaction():
            order = self.t.orders.require(order_id, "Order")
            if order.status != OrderStatus.PENDING:
                raise ValidationFailed("Only pending orders can be activated")
            if payment_method:
                order.payment_method = payment_method
            if payment_reference:
                order.payment_reference = payment_reference
            order = self._set_status(order, OrderStatus.PAID)
            points = self.loyalty.award_for_order(order)
        log.info("order activated id=%s points=%d", order.id, points)
        return order

    def reject(self, order_id: str, reason: Optional[str] = None) -> Order:
        with self.db.transaction():
            order = self.t.orders.require(order_id, "Order")
            if order.status != OrderStatus.PENDING:
                raise ValidationFailed("Only pending orders can be rejected")
            return self._release(order, OrderStatus.CANCELLED, reason=reason or "Rejected by admin")
