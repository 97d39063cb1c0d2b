from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from gymshop.api.deps import admin, get_db, request_currency
from gymshop.core.errors import NotFound
from gymshop.core.shop.catalog import CatalogService, priced_plan, priced_product, priced_programme
from gymshop.core.storage import Database

router = APIRouter(tags=["catalog"])


class StockUpdate(BaseModel):
    stock: int


# ------------------------------------------------------------
# Public
# ------------------------------------------------------------
@router.get("/products")
def list_products(
    q: Optional[str] = None,
    currency: str = Depends(request_currency),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    items = CatalogService(db).list_products(q=q)
    return {"items": [priced_product(p, currency) for p in items], "currency": currency}


@router.get("/products/{product_id}")
def get_product(product_id: str, currency: str = Depends(request_currency), db: Database = Depends(get_db)):
    return priced_product(CatalogService(db).get_product(product_id), currency)


@router.get("/programmes")
def list_programmes(currency: str = Depends(request_currency), db: Database = Depends(get_db)) -> Dict[str, Any]:
    items = CatalogService(db).list_programmes()
    return {"items": [priced_programme(p, currency) for p in items], "currency": currency}


@router.get("/programmes/{programme_id}")
def get_programme(programme_id: str, currency: str = Depends(request_currency), db: Database = Depends(get_db)):
    p = CatalogService(db).get_programme(programme_id)
    if not p.is_active:
        raise NotFound("Programme not found")
    return priced_programme(p, currency)


@router.get("/subscription-plans")
def list_plans(currency: str = Depends(request_currency), db: Database = Depends(get_db)) -> Dict[str, Any]:
    items = CatalogService(db).list_plans()
    return {"items": [priced_plan(p, currency) for p in items], "currency": currency}


# ------------------------------------------------------------
# Back office
# ------------------------------------------------------------
@router.get("/admin/products", dependencies=[Depends(admin)])
def admin_list_products(q: Optional[str] = None, db: Database = Depends(get_db)) -> Dict[str, Any]:
    items = CatalogService(db).list_products(q=q, include_inactive=True)
    return {"items": [p.model_dump(mode="json") for p in items]}


@router.post("/admin/products", status_code=201, dependencies=[Depends(admin)])
def create_product(body: Dict[str, Any], db: Database = Depends(get_db)):
    return CatalogService(db).create_product(body).model_dump(mode="json")


@router.put("/admin/products/{product_id}", dependencies=[Depends(admin)])
def update_product(product_id: str, body: Dict[str, Any], db: Database = Depends(get_db)):
    return CatalogService(db).update_product(product_id, body).model_dump(mode="json")


@router.delete("/admin/products/{product_id}", dependencies=[Depends(admin)])
def delete_product(product_id: str, db: Database = Depends(get_db)) -> Dict[str, Any]:
    CatalogService(db).delete_product(product_id)
    return {"ok": True, "deleted": product_id}


@router.post("/admin/products/{product_id}/variants", status_code=201, dependencies=[Depends(admin)])
def add_variant(product_id: str, body: Dict[str, Any], db: Database = Depends(get_db)):
    return CatalogService(db).add_variant(product_id, body).model_dump(mode="json")


@router.patch("/admin/products/{product_id}/stock", dependencies=[Depends(admin)])
def set_product_stock(product_id: str, req: StockUpdate, db: Database = Depends(get_db)):
    return CatalogService(db).set_stock(product_id, None, req.stock).model_dump(mode="json")


@router.patch("/admin/products/{product_id}/variants/{variant_id}/stock", dependencies=[Depends(admin)])
def set_variant_stock(product_id: str, variant_id: str, req: StockUpdate, db: Database = Depends(get_db)):
    return CatalogService(db).set_stock(product_id, variant_id, req.stock).model_dump(mode="json")


@router.get("/admin/programmes", dependencies=[Depends(admin)])
def admin_list_programmes(db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": [p.model_dump(mode="json") for p in CatalogService(db).list_programmes(include_inactive=True)]}


@router.post("/admin/programmes", status_code=201, dependencies=[Depends(admin)])
def create_programme(body: Dict[str, Any], db: Database = Depends(get_db)):
    return CatalogService(db).create_programme(body).model_dump(mode="json")


@router.put("/admin/programmes/{programme_id}", dependencies=[Depends(admin)])
def update_programme(programme_id: str, body: Dict[str, Any], db: Database = Depends(get_db)):
    return CatalogService(db).update_programme(programme_id, body).model_dump(mode="json")


@router.delete("/admin/programmes/{programme_id}", dependencies=[Depends(admin)])
def delete_programme(programme_id: str, db: Database = Depends(get_db)) -> Dict[str, Any]:
    CatalogService(db).delete_programme(programme_id)
    return {"ok": True, "deleted": programme_id}


@router.get("/admin/subscription-plans", dependencies=[Depends(admin)])
def admin_list_plans(db: Database = Depends(get_db)) -> Dict[str, Any]:
    return {"items": [p.model_dump(mode="json") for p in CatalogService(db).list_plans(include_inactive=True)]}


@router.post("/admin/subscription-plans", status_code=201, dependencies=[Depends(admin)])
def create_plan(body: Dict[str, Any], db: Database = Depends(get_db)):
    return CatalogService(db).create_plan(body).model_dump(mode="json")


@router.put("/admin/subscription-plans/{plan_id}", dependencies=[Depends(admin)])
def update_plan(plan_id: str, body: Dict[str, Any], db: Database = Depends(get_db)):
    return CatalogService(db).update_plan(plan_id, body).model_dump(mode="json")


@router.delete("/admin/subscription-plans/{plan_id}", dependencies=[Depends(admin)])
def delete_plan(plan_id: str, db: Database = Depends(get_db)) -> Dict[str, Any]:
    CatalogService(db).delete_plan(plan_id)
    return {"ok": True, "deleted": plan_id}
