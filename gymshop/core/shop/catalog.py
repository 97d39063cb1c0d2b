from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from gymshop.core.currency.rates import price_for
from gymshop.core.errors import ShopError, ValidationFailed
from gymshop.core.storage import Collection, Database

from .models import Product, ProductVariant, Programme, SubscriptionPlan
from .tables import Tables

log = logging.getLogger("gymshop.catalog")

M = TypeVar("M", bound=BaseModel)

_IMMUTABLE = {"id", "created_at"}


def _try_price(prices: Mapping[str, float], currency: str) -> Optional[float]:
    try:
        return price_for(prices, currency)
    except ShopError:
        return None


def _build(model: Type[M], data: Dict[str, Any]) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ValidationFailed(f"Invalid {model.__name__}: {e.errors()[0].get('msg')}") from e


def _patch(coll: Collection[M], item_id: str, changes: Dict[str, Any], what: str) -> M:
    with coll.db.transaction():
        current = coll.require(item_id, what)
        data = current.model_dump()
        data.update({k: v for k, v in changes.items() if k not in _IMMUTABLE})
        return coll.put(_build(coll.model, data))


def priced_product(p: Product, currency: str) -> Dict[str, Any]:
    out = p.model_dump(mode="json")
    out["currency"] = currency
    out["price"] = _try_price(p.prices, currency)
    out["variants"] = []
    for v in p.variants:
        vd = v.model_dump(mode="json")
        vd["price"] = _try_price(v.prices or p.prices, currency)
        out["variants"].append(vd)
    return out


def priced_programme(p: Programme, currency: str) -> Dict[str, Any]:
    out = p.model_dump(mode="json")
    out["currency"] = currency
    out["price"] = _try_price(p.prices, currency)
    return out


def priced_plan(p: SubscriptionPlan, currency: str) -> Dict[str, Any]:
    out = p.model_dump(mode="json")
    out["currency"] = currency
    out["price"] = _try_price(p.prices, currency)
    out["medical_price"] = _try_price(p.medical_prices, currency) if p.medical_prices else None
    out["total_days"] = p.subscription_period_days + p.gift_period_days
    return out


class CatalogService:
    def __init__(self, db: Database):
        self.db = db
        self.t = Tables(db)

    # ------------------------------------------------------------
    # Products
    # ------------------------------------------------------------
    def list_products(self, *, q: Optional[str] = None, include_inactive: bool = False) -> List[Product]:
        needle = (q or "").strip().lower()
        items = self.t.products.find(
            lambda p: (include_inactive or p.is_active)
            and (not needle or needle in p.name.lower() or needle in p.description.lower())
        )
        return sorted(items, key=lambda p: p.created_at, reverse=True)

    def get_product(self, product_id: str, *, include_inactive: bool = False) -> Product:
        p = self.t.products.require(product_id, "Product")
        if not p.is_active and not include_inactive:
            raise ValidationFailed("Product is not available")
        return p

    def create_product(self, data: Dict[str, Any]) -> Product:
        p = _build(Product, data)
        self.t.products.put(p)
        log.info("product created id=%s", p.id)
        return p

    def update_product(self, product_id: str, changes: Dict[str, Any]) -> Product:
        return _patch(self.t.products, product_id, changes, "Product")

    def delete_product(self, product_id: str) -> None:
        self.t.products.require(product_id, "Product")
        self.t.products.delete(product_id)

    def set_stock(self, product_id: str, variant_id: Optional[str], stock: int) -> Product:
        if stock < 0:
            raise ValidationFailed("Stock cannot be negative")
        with self.db.transaction():
            p = self.t.products.require(product_id, "Product")
            if variant_id:
                v = p.variant(variant_id)
                if v is None:
                    raise ValidationFailed("Variant not found")
                v.stock = stock
            else:
                p.stock = stock
            return self.t.products.put(p)

    def add_variant(self, product_id: str, data: Dict[str, Any]) -> ProductVariant:
        with self.db.transaction():
            p = self.t.products.require(product_id, "Product")
            v = _build(ProductVariant, data)
            p.variants.append(v)
            self.t.products.put(p)
        return v

    # ------------------------------------------------------------
    # Programmes
    # ------------------------------------------------------------
    def list_programmes(self, *, include_inactive: bool = False) -> List[Programme]:
        items = self.t.programmes.find(lambda p: include_inactive or p.is_active)
        return sorted(items, key=lambda p: p.created_at, reverse=True)

    def get_programme(self, programme_id: str) -> Programme:
        return self.t.programmes.require(programme_id, "Programme")

    def create_programme(self, data: Dict[str, Any]) -> Programme:
        return self.t.programmes.put(_build(Programme, data))

    def update_programme(self, programme_id: str, changes: Dict[str, Any]) -> Programme:
        return _patch(self.t.programmes, programme_id, changes, "Programme")

    def delete_programme(self, programme_id: str) -> None:
        self.t.programmes.require(programme_id, "Programme")
        self.t.programmes.delete(programme_id)

    # ------------------------------------------------------------
    # Subscription plans
    # ------------------------------------------------------------
    def list_plans(self, *, include_inactive: bool = False) -> List[SubscriptionPlan]:
        items = self.t.plans.find(lambda p: include_inactive or p.is_active)
        return sorted(items, key=lambda p: p.created_at)

    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        return self.t.plans.require(plan_id, "Subscription plan")

    def create_plan(self, data: Dict[str, Any]) -> SubscriptionPlan:
        return self.t.plans.put(_build(SubscriptionPlan, data))

    def update_plan(self, plan_id: str, changes: Dict[str, Any]) -> SubscriptionPlan:
        return _patch(self.t.plans, plan_id, changes, "Subscription plan")

    def delete_plan(self, plan_id: str) -> None:
        self.t.plans.require(plan_id, "Subscription plan")
        self.t.plans.delete(plan_id)

    def low_stock(self, threshold: int = 5) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for p in self.t.products.find(lambda p: p.is_active):
            if p.variants:
                for v in p.variants:
                    if v.is_active and v.stock <= threshold:
                        out.append({"product_id": p.id, "variant_id": v.id, "name": f"{p.name} / {v.name}", "stock": v.stock})
            elif p.stock <= threshold:
                out.append({"product_id": p.id, "variant_id": None, "name": p.name, "stock": p.stock})
        return out
