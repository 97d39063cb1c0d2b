from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gymshop.api.deps import admin, checkout_currency, current_user_id, get_db, request_currency
from gymshop.api.schemas import RejectRequest, StatusRequest
from gymshop.core.shop.subscriptions import SubscriptionService
from gymshop.core.storage import Database

router = APIRouter(tags=["subscriptions"])


class CreateSubscriptionRequest(BaseModel):
    plan_id: str
    payment_method: str
    is_medical: bool = False
    currency: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_proof_url: Optional[str] = None
    coupon_code: Optional[str] = None
    # Set when a Paymob/Tabby checkout follows and will create the payment.
    via_gateway: bool = False


def _dump_result(result: Dict[str, Any]) -> Dict[str, Any]:
    payment = result.get("payment")
    return {
        "subscription": result["subscription"].model_dump(mode="json"),
        "payment": payment.model_dump(mode="json") if payment else None,
    }


@router.post("/subscriptions", status_code=201)
def create_subscription(
    req: CreateSubscriptionRequest,
    user_id: str = Depends(current_user_id),
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    result = SubscriptionService(db).create_with_payment(
        user_id,
        plan_id=req.plan_id,
        is_medical=req.is_medical,
        currency=checkout_currency(req.currency, currency),
        payment_method=req.payment_method,
        transaction_id=req.transaction_id,
        payment_proof_url=req.payment_proof_url,
        coupon_code=req.coupon_code,
        via_gateway=req.via_gateway,
    )
    return _dump_result(result)


@router.get("/subscriptions")
def list_subscriptions(user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": [s.model_dump(mode="json") for s in SubscriptionService(db).list_for_user(user_id)]}


@router.post("/subscriptions/{sub_id}/cancel")
def cancel_subscription(sub_id: str, user_id: str = Depends(current_user_id), db: Database = Depends(get_db)):
    return SubscriptionService(db).cancel(user_id, sub_id).model_dump(mode="json")


# ------------------------------------------------------------
# Back office
# ------------------------------------------------------------
@router.get("/admin/subscriptions/pending", dependencies=[Depends(admin)])
def pending_subscriptions(db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": [s.model_dump(mode="json") for s in SubscriptionService(db).pending()]}


@router.post("/admin/subscriptions/expire", dependencies=[Depends(admin)])
def expire_subscriptions(db: Database = Depends(get_db)) -> Dict[str, Any]:
    return SubscriptionService(db).expire_due()


@router.post("/admin/subscriptions/{sub_id}/approve", dependencies=[Depends(admin)])
def approve_subscription(sub_id: str, db: Database = Depends(get_db)):
    return SubscriptionService(db).approve(sub_id).model_dump(mode="json")


@router.post("/admin/subscriptions/{sub_id}/reject", dependencies=[Depends(admin)])
def reject_subscription(sub_id: str, req: RejectRequest, db: Database = Depends(get_db)):
    return SubscriptionService(db).reject(sub_id, req.reason).model_dump(mode="json")


@router.patch("/admin/subscriptions/{sub_id}/status", dependencies=[Depends(admin)])
def update_subscription_status(sub_id: str, req: StatusRequest, db: Database = Depends(get_db)):
    return SubscriptionService(db).admin_update_status(sub_id, req.status).model_dump(mode="json")
