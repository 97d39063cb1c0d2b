from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gymshop.api.deps import admin, checkout_currency, current_user_id, get_db, request_currency
from gymshop.api.schemas import RejectRequest
from gymshop.core.shop.programmes import ProgrammeService
from gymshop.core.storage import Database

router = APIRouter(tags=["programmes"])


class PurchaseRequest(BaseModel):
    payment_method: str
    currency: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_proof_url: Optional[str] = None
    coupon_code: Optional[str] = None
    via_gateway: bool = False


@router.get("/programmes/mine")
def my_programmes(user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": ProgrammeService(db).user_programmes(user_id)}


@router.post("/programmes/{programme_id}/purchase", status_code=201)
def purchase_programme(
    programme_id: str,
    req: PurchaseRequest,
    user_id: str = Depends(current_user_id),
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    result = ProgrammeService(db).purchase_with_payment(
        user_id,
        programme_id,
        currency=checkout_currency(req.currency, currency),
        payment_method=req.payment_method,
        transaction_id=req.transaction_id,
        payment_proof_url=req.payment_proof_url,
        coupon_code=req.coupon_code,
        via_gateway=req.via_gateway,
    )
    payment = result.get("payment")
    return {
        "purchase": result["purchase"].model_dump(mode="json"),
        "payment": payment.model_dump(mode="json") if payment else None,
    }


@router.get("/admin/programmes/purchases/pending", dependencies=[Depends(admin)])
def pending_purchases(db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": [p.model_dump(mode="json") for p in ProgrammeService(db).pending()]}


@router.post("/admin/programmes/purchases/{purchase_id}/approve", dependencies=[Depends(admin)])
def approve_purchase(purchase_id: str, db: Database = Depends(get_db)):
    return ProgrammeService(db).approve(purchase_id).model_dump(mode="json")


@router.post("/admin/programmes/purchases/{purchase_id}/reject", dependencies=[Depends(admin)])
def reject_purchase(purchase_id: str, req: RejectRequest, db: Database = Depends(get_db)):
    return ProgrammeService(db).reject(purchase_id, req.reason).model_dump(mode="json")
