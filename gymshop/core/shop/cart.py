from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from gymshop.core.currency.rates import price_for
from gymshop.core.errors import Conflict, NotFound, ValidationFailed
from gymshop.core.storage import Database

from .coupons import CouponService, discount_for
from .models import Cart, CartItem, Product, ProductVariant, _utc_now_iso, money
from .tables import Tables


def resolve_line(t: Tables, product_id: str, variant_id: Optional[str]) -> Tuple[Product, Optional[ProductVariant]]:
    product = t.products.get(product_id)
    if product is None:
        raise NotFound("Product not found")
    if not product.is_active:
        raise ValidationFailed("Product is not available")
    variant = None
    if variant_id:
        variant = product.variant(variant_id)
        if variant is None:
            raise NotFound("Product variant not found")
        if not variant.is_active:
            raise ValidationFailed("Product variant is not available")
    elif product.variants:
        raise ValidationFailed("variant_id is required for this product")
    return product, variant


def unit_price(product: Product, variant: Optional[ProductVariant], currency: str) -> float:
    prices = variant.prices if variant is not None and variant.prices else product.prices
    return price_for(prices, currency)


def available_stock(product: Product, variant: Optional[ProductVariant]) -> int:
    return variant.stock if variant is not None else product.stock


class CartService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)
        self.coupons = CouponService(db)

    def _get_or_create(self, user_id: str) -> Cart:
        cart = self.t.carts.find_one(lambda c: c.user_id == user_id)
        if cart is None:
            cart = self.t.carts.put(Cart(user_id=user_id))
        return cart

    def _save(self, cart: Cart) -> Cart:
        cart.updated_at = _utc_now_iso()
        return self.t.carts.put(cart)

    def view(self, user_id: str, currency: str) -> Dict[str, Any]:
        cart = self._get_or_create(user_id)
        lines = []
        subtotal = 0.0
        for item in cart.items:
            product = self.t.products.get(item.product_id)
            variant = product.variant(item.variant_id) if product else None
            price = None
            if product is not None:
                try:
                    price = unit_price(product, variant, currency)
                except ValidationFailed:
                    price = None
            line_total = money(price * item.quantity) if price is not None else None
            if line_total is not None:
                subtotal += line_total
            lines.append(
                {
                    **item.model_dump(mode="json"),
                    "name": product.name if product else None,
                    "variant_name": variant.name if variant else None,
                    "unit_price": price,
                    "line_total": line_total,
                    "available": bool(product and product.is_active and (variant is None or variant.is_active)),
                }
            )

        subtotal = money(subtotal)
        coupon = self.t.coupons.get(cart.coupon_id) if cart.coupon_id else None
        discount = discount_for(coupon, subtotal) if coupon else 0.0
        return {
            "id": cart.id,
            "currency": currency,
            "items": lines,
            "coupon": {"id": coupon.id, "code": coupon.code} if coupon else None,
            "subtotal": subtotal,
            "discount": discount,
            "total": money(max(0.0, subtotal - discount)),
        }

    def add_item(self, user_id: str, *, product_id: str, variant_id: Optional[str], quantity: int) -> Cart:
        if quantity < 1:
            raise ValidationFailed("quantity must be at least 1")
        with self.db.transaction():
            product, variant = resolve_line(self.t, product_id, variant_id)
            cart = self._get_or_create(user_id)
            existing = next(
                (i for i in cart.items if i.product_id == product_id and i.variant_id == (variant_id or None)),
                None,
            )
            wanted = quantity + (existing.quantity if existing else 0)
            if wanted > available_stock(product, variant):
                raise Conflict("Insufficient stock")
            if existing:
                existing.quantity = wanted
            else:
                cart.items.append(CartItem(product_id=product_id, variant_id=variant_id or None, quantity=quantity))
            return self._save(cart)

    def update_item(self, user_id: str, item_id: str, quantity: int) -> Cart:
        if quantity < 0:
            raise ValidationFailed("quantity cannot be negative")
        with self.db.transaction():
            cart = self._get_or_create(user_id)
            item = next((i for i in cart.items if i.id == item_id), None)
            if item is None:
                raise NotFound("Cart item not found")
            if quantity == 0:
                cart.items = [i for i in cart.items if i.id != item_id]
            else:
                product, variant = resolve_line(self.t, item.product_id, item.variant_id)
                if quantity > available_stock(product, variant):
                    raise Conflict("Insufficient stock")
                item.quantity = quantity
            return self._save(cart)

    def remove_item(self, user_id: str, item_id: str) -> Cart:
        with self.db.transaction():
            cart = self._get_or_create(user_id)
            before = len(cart.items)
            cart.items = [i for i in cart.items if i.id != item_id]
            if len(cart.items) == before:
                raise NotFound("Cart item not found")
            return self._save(cart)

    def clear(self, user_id: str) -> Cart:
        with self.db.transaction():
            cart = self._get_or_create(user_id)
            cart.items = []
            cart.coupon_id = None
            return self._save(cart)

    def apply_coupon(self, user_id: str, code: str) -> Cart:
        with self.db.transaction():
            cart = self._get_or_create(user_id)
            coupon = self.coupons.validate(code, user_id)
            if cart.coupon_id == coupon.id:
                raise ValidationFailed("Coupon already applied")
            cart.coupon_id = coupon.id
            return self._save(cart)

    def remove_coupon(self, user_id: str) -> Cart:
        with self.db.transaction():
            cart = self._get_or_create(user_id)
            cart.coupon_id = None
            return self._save(cart)
