from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, Request

from gymshop.core.currency.rates import DEFAULT_CURRENCY, SUPPORTED, convert_price, normalize_currency, rates_for
from gymshop.core.errors import ValidationFailed

router = APIRouter(prefix="/currency", tags=["currency"])


@router.get("/detect")
def detect(request: Request) -> Dict[str, Any]:
    return {
        "currency": getattr(request.state, "currency", None) or DEFAULT_CURRENCY,
        "source": getattr(request.state, "currency_source", None) or "default",
        "country": getattr(request.state, "country", None),
        "supported": list(SUPPORTED),
    }


@router.get("/rates")
def rates(base: Optional[str] = None) -> Dict[str, Any]:
    b = (base or DEFAULT_CURRENCY).upper()
    return {"base": b, "rates": rates_for(b)}


@router.get("/convert")
def convert(
    amount: float = Query(..., ge=0),
    src: str = Query(..., alias="from"),
    dst: str = Query(..., alias="to"),
) -> Dict[str, Any]:
    s, d = normalize_currency(src), normalize_currency(dst)
    if s not in SUPPORTED or d not in SUPPORTED:
        raise ValidationFailed(f"Unsupported currency pair: {src} to {dst}")
    return {"amount": amount, "from": s, "to": d, "converted": convert_price(amount, s, d)}
