from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from gymshop.api.deps import admin, get_db
from gymshop.core.shop.dashboard import DashboardService
from gymshop.core.storage import Database

router = APIRouter(prefix="/admin/dashboard", tags=["dashboard"], dependencies=[Depends(admin)])


@router.get("/stats")
def stats(db: Database = Depends(get_db)) -> Dict[str, Any]:
    return DashboardService(db).stats()


@router.get("/recent")
def recent(db: Database = Depends(get_db)) -> Dict[str, Any]:
    return DashboardService(db).recent()
