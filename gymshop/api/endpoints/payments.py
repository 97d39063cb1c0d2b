"""
Gateway-agnostic payment surface: member history, public verification for
the redirect landing page, the provider-dispatching webhook and the manual
approval queue.
"""
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from gymshop.api.deps import actor_of, admin, current_user_id, get_db, get_tabby_client, request_currency
from gymshop.api.schemas import RejectRequest
from gymshop.core.errors import ValidationFailed
from gymshop.core.gateways.tabby import TabbyClient
from gymshop.core.reconcile.paymob import FALLBACK_SAR_RATES, PAYMOB_CURRENCY, PaymobWebhookProcessor
from gymshop.core.reconcile.tabby import TabbyWebhookProcessor, is_available
from gymshop.core.shop.fulfilment import Fulfilment
from gymshop.core.shop.payments import STALE_AFTER_MINUTES, PaymentService
from gymshop.core.storage import Database

router = APIRouter(tags=["payments"])

PAYMOB_CURRENCIES = (PAYMOB_CURRENCY,) + tuple(FALLBACK_SAR_RATES)


class ProofRequest(BaseModel):
    payment_proof_url: str


class CleanupRequest(BaseModel):
    older_than_minutes: int = Field(default=STALE_AFTER_MINUTES, ge=1)


def _dump_review(result: Dict[str, Any]) -> Dict[str, Any]:
    return {"payment": result["payment"].model_dump(mode="json"), "paymentable": result["paymentable"]}


# ------------------------------------------------------------
# Member
# ------------------------------------------------------------
@router.get("/payments")
def history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(current_user_id),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    return PaymentService(db).history(user_id, page=page, page_size=page_size)


@router.post("/payments/{payment_id}/proof")
def upload_proof(
    payment_id: str,
    req: ProofRequest,
    user_id: str = Depends(current_user_id),
    db: Database = Depends(get_db),
):
    return PaymentService(db).upload_proof(user_id, payment_id, req.payment_proof_url).model_dump(mode="json")


# ------------------------------------------------------------
# Public
# ------------------------------------------------------------
@router.get("/payments/verify/{reference}")
def verify(reference: str, db: Database = Depends(get_db)) -> Dict[str, Any]:
    return PaymentService(db).verify_public(reference)


@router.get("/payments/providers")
def providers(currency: str = Depends(request_currency)) -> Dict[str, Any]:
    items = []
    if currency in PAYMOB_CURRENCIES:
        items.append({"id": "paymob", "name": "Paymob", "methods": ["card", "apple_pay"], "settles_in": PAYMOB_CURRENCY})
    if is_available(currency):
        items.append({"id": "tabby", "name": "Tabby", "methods": ["installments"], "settles_in": currency})
    return {"currency": currency, "providers": items}


@router.post("/payments/webhook/{provider}")
async def unified_webhook(
    provider: str,
    request: Request,
    db: Database = Depends(get_db),
    tabby: TabbyClient = Depends(get_tabby_client),
) -> Dict[str, Any]:
    raw = await request.body()
    name = provider.strip().lower()
    if name == "paymob":
        return await run_in_threadpool(PaymobWebhookProcessor(db).process, raw, request.headers)
    if name == "tabby":
        return await run_in_threadpool(TabbyWebhookProcessor(db, tabby).process, raw, request.headers)
    raise ValidationFailed(f"Unknown payment provider: {provider}")


# ------------------------------------------------------------
# Back office
# ------------------------------------------------------------
@router.get("/admin/payments/pending", dependencies=[Depends(admin)])
def pending(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    return PaymentService(db).pending(page=page, page_size=page_size)


@router.get("/admin/payments/stats", dependencies=[Depends(admin)])
def stats(db: Database = Depends(get_db)) -> Dict[str, Any]:
    return PaymentService(db).stats()


@router.post("/admin/payments/cleanup", dependencies=[Depends(admin)])
def cleanup(req: CleanupRequest, db: Database = Depends(get_db)) -> Dict[str, Any]:
    return PaymentService(db).cleanup_stale(older_than_minutes=req.older_than_minutes)


@router.post("/admin/payments/{payment_id}/approve", dependencies=[Depends(admin)])
def approve(payment_id: str, request: Request, db: Database = Depends(get_db)) -> Dict[str, Any]:
    return _dump_review(Fulfilment(db).approve(payment_id, actor=actor_of(request)))


@router.post("/admin/payments/{payment_id}/reject", dependencies=[Depends(admin)])
def reject(payment_id: str, req: RejectRequest, request: Request, db: Database = Depends(get_db)) -> Dict[str, Any]:
    return _dump_review(Fulfilment(db).reject(payment_id, req.reason, actor=actor_of(request)))
