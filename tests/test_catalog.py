import pytest

from gymshop.core.errors import ValidationFailed
from gymshop.core.shop.catalog import CatalogService
from gymshop.core.shop.catalog_loader import load_catalog, parse_catalog


def test_sample_catalog_loads(catalog, tables):
    assert catalog == {"products": 2, "programmes": 1, "plans": 1}
    assert tables.products.require("whey-2kg").variant("whey-2kg-van").stock == 3


def test_loader_is_an_upsert(db, catalog, tables):
    load_catalog(db, {"products": [{"id": "shaker", "name": "Shaker v2", "prices": {"USD": 9}}, "junk"]})
    assert tables.products.require("shaker").name == "Shaker v2"
    assert tables.products.count() == 2


def test_parse_catalog_accepts_json_and_rejects_lists():
    assert parse_catalog('{"products": []}') == {"products": []}
    assert parse_catalog("") == {}
    with pytest.raises(ValidationFailed):
        parse_catalog("- a\n- b\n")


def test_admin_product_crud(client, admin_user):
    h = admin_user["headers"]
    r = client.post("/api/v1/admin/products", json={"name": "Lifting Belt", "prices": {"USD": 35}, "stock": 4}, headers=h)
    assert r.status_code == 201
    pid = r.json()["id"]

    r = client.put(f"/api/v1/admin/products/{pid}", json={"description": "Leather", "id": "hijack"}, headers=h)
    assert r.status_code == 200
    assert r.json()["id"] == pid
    assert r.json()["description"] == "Leather"

    r = client.patch(f"/api/v1/admin/products/{pid}/stock", json={"stock": 12}, headers=h)
    assert r.json()["stock"] == 12

    r = client.patch(f"/api/v1/admin/products/{pid}/stock", json={"stock": -1}, headers=h)
    assert r.status_code == 400

    r = client.get(f"/api/v1/products/{pid}", headers={"X-User-Currency": "SAR"})
    assert r.json()["price"] == 131.25

    r = client.delete(f"/api/v1/admin/products/{pid}", headers=h)
    assert r.json() == {"ok": True, "deleted": pid}
    assert client.get(f"/api/v1/products/{pid}").status_code == 404


def test_admin_product_validation(client, admin_user):
    r = client.post("/api/v1/admin/products", json={"prices": {"USD": 1}}, headers=admin_user["headers"])
    assert r.status_code == 400
    assert r.json()["detail"].startswith("Invalid Product")


def test_variants_and_variant_stock(client, admin_user, catalog):
    h = admin_user["headers"]
    r = client.post("/api/v1/admin/products/whey-2kg/variants", json={"name": "Strawberry", "stock": 7}, headers=h)
    assert r.status_code == 201
    vid = r.json()["id"]

    r = client.patch(f"/api/v1/admin/products/whey-2kg/variants/{vid}/stock", json={"stock": 2}, headers=h)
    assert r.status_code == 200
    assert {v["id"]: v["stock"] for v in r.json()["variants"]}[vid] == 2

    r = client.patch("/api/v1/admin/products/whey-2kg/variants/nope/stock", json={"stock": 2}, headers=h)
    assert r.status_code == 400


def test_inactive_items_hidden_from_public(client, admin_user, catalog):
    h = admin_user["headers"]
    client.put("/api/v1/admin/programmes/fat-loss-12w", json={"is_active": False}, headers=h)
    client.put("/api/v1/admin/products/shaker", json={"is_active": False}, headers=h)

    assert client.get("/api/v1/programmes").json()["items"] == []
    assert client.get("/api/v1/programmes/fat-loss-12w").status_code == 404
    assert client.get("/api/v1/products/shaker").status_code == 400
    assert [p["id"] for p in client.get("/api/v1/products").json()["items"]] == ["whey-2kg"]

    admin_ids = {p["id"] for p in client.get("/api/v1/admin/products", headers=h).json()["items"]}
    assert admin_ids == {"whey-2kg", "shaker"}


def test_plan_listing_reports_total_days(client, catalog):
    plan = client.get("/api/v1/subscription-plans", headers={"X-User-Currency": "AED"}).json()["items"][0]
    assert plan["price"] == 185.0
    assert plan["medical_price"] == 295.0
    assert plan["total_days"] == 37


def test_product_search(client, catalog):
    items = client.get("/api/v1/products", params={"q": "chocolate"}).json()["items"]
    assert [p["id"] for p in items] == ["whey-2kg"]


def test_low_stock(db, catalog):
    low = CatalogService(db).low_stock(5)
    assert low == [{"product_id": "whey-2kg", "variant_id": "whey-2kg-van", "name": "Whey Protein 2kg / Vanilla", "stock": 3}]
