from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gymshop.api.deps import admin, current_user_id, get_db
from gymshop.core.shop.coupons import CouponService
from gymshop.core.storage import Database

router = APIRouter(tags=["coupons"])


class ValidateCouponRequest(BaseModel):
    code: str
    total: Optional[float] = None


@router.post("/coupons/validate")
def validate_coupon(
    req: ValidateCouponRequest,
    user_id: str = Depends(current_user_id),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    return CouponService(db).preview(req.code, user_id, req.total)


@router.get("/coupons/mine")
def my_coupons(user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": CouponService(db).user_coupons(user_id)}


@router.get("/admin/coupons", dependencies=[Depends(admin)])
def list_coupons(db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": CouponService(db).list()}


@router.post("/admin/coupons", status_code=201, dependencies=[Depends(admin)])
def create_coupon(body: Dict[str, Any], db: Database = Depends(get_db)):
    return CouponService(db).create(body).model_dump(mode="json")


@router.get("/admin/coupons/{coupon_id}", dependencies=[Depends(admin)])
def get_coupon(coupon_id: str, db: Database = Depends(get_db)):
    return CouponService(db).get(coupon_id).model_dump(mode="json")


@router.put("/admin/coupons/{coupon_id}", dependencies=[Depends(admin)])
def update_coupon(coupon_id: str, body: Dict[str, Any], db: Database = Depends(get_db)):
    return CouponService(db).update(coupon_id, body).model_dump(mode="json")


@router.delete("/admin/coupons/{coupon_id}", dependencies=[Depends(admin)])
def delete_coupon(coupon_id: str, db: Database = Depends(get_db)) -> Dict[str, Any]:
    CouponService(db).delete(coupon_id)
    return {"ok": True, "deleted": coupon_id}


@router.get("/admin/coupons/{coupon_id}/usage", dependencies=[Depends(admin)])
def coupon_usage(coupon_id: str, db: Database = Depends(get_db)) -> Dict[str, Any]:
    return CouponService(db).usage_stats(coupon_id)
