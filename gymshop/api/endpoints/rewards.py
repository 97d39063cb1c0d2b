from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gymshop.api.deps import current_user_id, get_db
from gymshop.core.shop.rewards import RewardService
from gymshop.core.storage import Database

router = APIRouter(prefix="/rewards", tags=["rewards"])


class ValidateRequest(BaseModel):
    item_id: str
    category: str
    points_required: Optional[int] = None


class RedeemRequest(BaseModel):
    item_id: str
    category: str
    shipping_details: Optional[Dict[str, Any]] = None


@router.post("/validate")
def validate(req: ValidateRequest, user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return RewardService(db).validate_redemption(user_id, req.item_id, req.category, req.points_required)


@router.post("/redeem", status_code=201)
def redeem(req: RedeemRequest, user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return RewardService(db).redeem(user_id, req.item_id, req.category, shipping_details=req.shipping_details)


@router.get("/history")
def history(user_id: str = Depends(current_user_id), db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": RewardService(db).redemption_history(user_id)}
