from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from gymshop.api.deps import admin, current_user_id, get_db, get_tabby_client, is_admin, request_currency
from gymshop.core.config import api_url
from gymshop.core.gateways.tabby import TABBY_CURRENCIES, TabbyClient
from gymshop.core.reconcile.tabby import (
    TabbyCaptureSweep,
    TabbyCheckout,
    TabbyOperations,
    TabbyWebhookProcessor,
    is_available,
)
from gymshop.core.storage import Database

router = APIRouter(tags=["tabby"])


class CheckoutRequest(BaseModel):
    amount: float
    currency: str = "SAR"
    description: Optional[str] = None
    lang: str = "en"
    buyer: Dict[str, Any] = Field(default_factory=dict)
    shipping_address: Optional[Dict[str, Any]] = None
    items: List[Dict[str, Any]] = Field(default_factory=list)
    paymentable_type: Optional[str] = None
    paymentable_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AmountRequest(BaseModel):
    amount: Optional[float] = None
    reason: Optional[str] = None


class WebhookRegistration(BaseModel):
    url: Optional[str] = None
    is_test: bool = False
    currency: str = "SAR"


class SweepRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=100)


@router.post("/payments/tabby/checkout", status_code=201)
def checkout(
    req: CheckoutRequest,
    user_id: str = Depends(current_user_id),
    db: Database = Depends(get_db),
    client: TabbyClient = Depends(get_tabby_client),
) -> Dict[str, Any]:
    return TabbyCheckout(db, client).create(user_id, req.model_dump())


@router.post("/payments/tabby/webhook")
async def webhook(
    request: Request,
    db: Database = Depends(get_db),
    client: TabbyClient = Depends(get_tabby_client),
) -> Dict[str, Any]:
    raw = await request.body()
    return await run_in_threadpool(TabbyWebhookProcessor(db, client).process, raw, request.headers)


@router.get("/payments/tabby/availability")
def availability(currency: Optional[str] = Query(None), detected: str = Depends(request_currency)) -> Dict[str, Any]:
    cur = (currency or detected).upper()
    return {"currency": cur, "available": is_available(cur), "supported_currencies": list(TABBY_CURRENCIES)}


@router.get("/payments/tabby/{payment_id}/status")
def status(
    payment_id: str,
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Database = Depends(get_db),
    client: TabbyClient = Depends(get_tabby_client),
) -> Dict[str, Any]:
    return TabbyOperations(db, client).status(payment_id, user_id=user_id, is_admin=is_admin(request))


# ------------------------------------------------------------
# Back office
# ------------------------------------------------------------
@router.post("/admin/payments/tabby/sweep", dependencies=[Depends(admin)])
def sweep(
    req: SweepRequest,
    db: Database = Depends(get_db),
    client: TabbyClient = Depends(get_tabby_client),
) -> Dict[str, Any]:
    return TabbyCaptureSweep(db, client).run(limit=req.limit)


@router.post("/admin/payments/tabby/webhooks", dependencies=[Depends(admin)])
def register_webhook(req: WebhookRegistration, client: TabbyClient = Depends(get_tabby_client)) -> Dict[str, Any]:
    url = req.url or api_url("/payments/tabby/webhook")
    return {"webhook": client.register_webhook(url, is_test=req.is_test, currency=req.currency)}


@router.get("/admin/payments/tabby/webhooks", dependencies=[Depends(admin)])
def list_webhooks(currency: str = "SAR", client: TabbyClient = Depends(get_tabby_client)) -> Dict[str, Any]:
    return {"items": client.list_webhooks(currency=currency)}


@router.delete("/admin/payments/tabby/webhooks/{webhook_id}", dependencies=[Depends(admin)])
def delete_webhook(webhook_id: str, currency: str = "SAR", client: TabbyClient = Depends(get_tabby_client)) -> Dict[str, Any]:
    client.delete_webhook(webhook_id, currency=currency)
    return {"deleted": webhook_id}


@router.post("/admin/payments/tabby/{payment_id}/capture", dependencies=[Depends(admin)])
def capture(
    payment_id: str,
    req: AmountRequest,
    db: Database = Depends(get_db),
    client: TabbyClient = Depends(get_tabby_client),
):
    return TabbyOperations(db, client).capture(payment_id, req.amount).model_dump(mode="json")


@router.post("/admin/payments/tabby/{payment_id}/refund", dependencies=[Depends(admin)])
def refund(
    payment_id: str,
    req: AmountRequest,
    db: Database = Depends(get_db),
    client: TabbyClient = Depends(get_tabby_client),
):
    return TabbyOperations(db, client).refund(payment_id, req.amount, req.reason).model_dump(mode="json")


@router.post("/admin/payments/tabby/{payment_id}/close", dependencies=[Depends(admin)])
def close(
    payment_id: str,
    db: Database = Depends(get_db),
    client: TabbyClient = Depends(get_tabby_client),
):
    return TabbyOperations(db, client).close(payment_id).model_dump(mode="json")
