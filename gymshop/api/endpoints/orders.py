from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from gymshop.api.deps import admin, checkout_currency, current_user_id, get_db, request_currency
from gymshop.api.schemas import RejectRequest, StatusRequest
from gymshop.core.shop.orders import OrderService
from gymshop.core.storage import Database

router = APIRouter(tags=["orders"])


class CreateOrderRequest(BaseModel):
    shipping_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    coupon_code: Optional[str] = None
    currency: Optional[str] = None


class UpdateOrderRequest(BaseModel):
    shipping_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


@router.post("/orders", status_code=201)
def create_order(
    req: CreateOrderRequest,
    user_id: str = Depends(current_user_id),
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
):
    order = OrderService(db).create_from_cart(
        user_id,
        currency=checkout_currency(req.currency, currency),
        shipping_address=req.shipping_address,
        notes=req.notes,
        coupon_code=req.coupon_code,
    )
    return order.model_dump(mode="json")


@router.get("/orders")
def list_orders(user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": [o.model_dump(mode="json") for o in OrderService(db).list_for_user(user_id)]}


@router.get("/orders/{order_id}")
def get_order(order_id: str, user_id: str = Depends(current_user_id), db: Database = Depends(get_db)):
    return OrderService(db).get_for_user(user_id, order_id).model_dump(mode="json")


@router.patch("/orders/{order_id}")
def update_order(
    order_id: str,
    req: UpdateOrderRequest,
    user_id: str = Depends(current_user_id),
    db: Database = Depends(get_db),
):
    order = OrderService(db).update(user_id, order_id, shipping_address=req.shipping_address, notes=req.notes)
    return order.model_dump(mode="json")


@router.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user_id: str = Depends(current_user_id), db: Database = Depends(get_db)):
    return OrderService(db).cancel(user_id, order_id).model_dump(mode="json")


@router.get("/orders/{order_id}/tracking")
def order_tracking(order_id: str, user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return OrderService(db).tracking(user_id, order_id)


# ------------------------------------------------------------
# Back office
# ------------------------------------------------------------
@router.get("/admin/orders", dependencies=[Depends(admin)])
def admin_list_orders(
    status: Optional[str] = None,
    search: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    return OrderService(db).admin_list(
        status=status,
        search=search,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=page_size,
    )


@router.patch("/admin/orders/{order_id}/status", dependencies=[Depends(admin)])
def admin_update_status(order_id: str, req: StatusRequest, db: Database = Depends(get_db)):
    return OrderService(db).admin_update_status(order_id, req.status).model_dump(mode="json")


@router.post("/admin/orders/{order_id}/activate", dependencies=[Depends(admin)])
def admin_activate(order_id: str, db: Database = Depends(get_db)):
    return OrderService(db).activate(order_id).model_dump(mode="json")


@router.post("/admin/orders/{order_id}/reject", dependencies=[Depends(admin)])
def admin_reject(order_id: str, req: RejectRequest, db: Database = Depends(get_db)):
    return OrderService(db).reject(order_id, req.reason).model_dump(mode="json")
