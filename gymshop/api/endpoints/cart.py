from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from gymshop.api.deps import current_user_id, get_db, request_currency
from gymshop.core.shop.cart import CartService
from gymshop.core.storage import Database

router = APIRouter(prefix="/cart", tags=["cart"])


class AddItemRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(default=1, ge=1)


class UpdateItemRequest(BaseModel):
    quantity: int = Field(ge=0)


class CouponRequest(BaseModel):
    code: str


@router.get("")
def get_cart(
    user_id: str = Depends(current_user_id),
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    return CartService(db).view(user_id, currency)


@router.delete("")
def clear_cart(
    user_id: str = Depends(current_user_id),
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    svc = CartService(db)
    svc.clear(user_id)
    return svc.view(user_id, currency)


@router.post("/items", status_code=201)
def add_item(
    req: AddItemRequest,
    user_id: str = Depends(current_user_id),
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    svc = CartService(db)
    svc.add_item(user_id, product_id=req.product_id, variant_id=req.variant_id, quantity=req.quantity)
    return svc.view(user_id, currency)


@router.patch("/items/{item_id}")
def update_item(
    item_id: str,
    req: UpdateItemRequest,
    user_id: str = Depends(current_user_id),
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    svc = CartService(db)
    svc.update_item(user_id, item_id, req.quantity)
    return svc.view(user_id, currency)


@router.delete("/items/{item_id}")
def remove_item(
    item_id: str,
    user_id: str = Depends(current_user_id),
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    svc = CartService(db)
    svc.remove_item(user_id, item_id)
    return svc.view(user_id, currency)


@router.post("/coupon")
def apply_coupon(
    req: CouponRequest,
    user_id: str = Depends(current_user_id),
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    svc = CartService(db)
    svc.apply_coupon(user_id, req.code)
    return svc.view(user_id, currency)


@router.delete("/coupon")
def remove_coupon(
    user_id: str = Depends(current_user_id),
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    svc = CartService(db)
    svc.remove_coupon(user_id)
    return svc.view(user_id, currency)
