from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from gymshop.api.deps import current_user_id, get_db
from gymshop.core.shop.loyalty import LoyaltyService
from gymshop.core.storage import Database

router = APIRouter(prefix="/loyalty", tags=["loyalty"])


@router.get("/transactions")
def transactions(
    type: Optional[str] = None,
    source: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    user_id: str = Depends(current_user_id),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    return LoyaltyService(db).history(user_id, type=type, source=source, page=page, page_size=page_size)


@router.get("/recent")
def recent(user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": LoyaltyService(db).recent(user_id)}


@router.get("/stats")
def stats(user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return LoyaltyService(db).stats(user_id)


@router.get("/filter-options")
def filter_options(user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return LoyaltyService(db).filter_options(user_id)
