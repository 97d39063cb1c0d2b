from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from gymshop.api.deps import admin, current_user_id, get_db, get_paymob_client, is_admin
from gymshop.core.gateways.paymob import PaymobClient
from gymshop.core.reconcile.paymob import PaymobCheckout, PaymobWebhookProcessor
from gymshop.core.storage import Database

router = APIRouter(tags=["paymob"])


class IntentionItem(BaseModel):
    name: str
    amount: float
    quantity: int = 1
    description: str = ""


class IntentionRequest(BaseModel):
    amount: float
    currency: str = "SAR"
    payment_method: str = "card"
    items: List[IntentionItem] = Field(default_factory=list)
    billing_data: Dict[str, Any] = Field(default_factory=dict)
    customer: Dict[str, Any] = Field(default_factory=dict)
    extras: Dict[str, Any] = Field(default_factory=dict)
    order_id: Optional[str] = None
    subscription_id: Optional[str] = None
    programme_purchase_id: Optional[str] = None


class RefundRequest(BaseModel):
    payment_id: str
    amount: Optional[float] = None


@router.post("/payments/paymob/intention", status_code=201)
def create_intention(
    req: IntentionRequest,
    user_id: str = Depends(current_user_id),
    db: Database = Depends(get_db),
    client: PaymobClient = Depends(get_paymob_client),
) -> Dict[str, Any]:
    return PaymobCheckout(db, client).create_intention(user_id, req.model_dump())


@router.post("/payments/paymob/webhook")
async def webhook(request: Request, db: Database = Depends(get_db)) -> Dict[str, Any]:
    raw = await request.body()
    return await run_in_threadpool(PaymobWebhookProcessor(db).process, raw, request.headers)


@router.get("/payments/paymob/intention/{intention_id}/status")
def intention_status(
    intention_id: str,
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Database = Depends(get_db),
    client: PaymobClient = Depends(get_paymob_client),
) -> Dict[str, Any]:
    return PaymobCheckout(db, client).intention_status(intention_id, user_id=user_id, is_admin=is_admin(request))


@router.post("/payments/paymob/refund", dependencies=[Depends(admin)])
def refund(
    req: RefundRequest,
    db: Database = Depends(get_db),
    client: PaymobClient = Depends(get_paymob_client),
):
    return PaymobCheckout(db, client).refund(req.payment_id, req.amount).model_dump(mode="json")


@router.get("/admin/payments/paymob/webhook-status", dependencies=[Depends(admin)])
def webhook_status(db: Database = Depends(get_db), client: PaymobClient = Depends(get_paymob_client)) -> Dict[str, Any]:
    return PaymobCheckout(db, client).webhook_status()
