from types import SimpleNamespace

import pytest

from gymshop.core.auth.passwords import hash_password, verify_password
from gymshop.core.auth.policy import required_role_for
from gymshop.core.auth.provider import ApiKeyProvider, AuthError
from gymshop.core.auth.rbac import enforce_required_role, primary_role

REGISTER = {
    "email": "New.Member@Example.com",
    "password": "Str0ngPass",
    "mobile_number": "+966511111111",
    "first_name": "Nora",
    "last_name": "Ali",
}


def test_register_login_refresh_me(client):
    r = client.post("/api/v1/auth/register", json=REGISTER)
    assert r.status_code == 201
    body = r.json()
    assert body["user"]["email"] == "new.member@example.com"
    assert "password_hash" not in body["user"]
    assert body["token_type"] == "bearer"

    r = client.post("/api/v1/auth/login", json={"email": "NEW.member@example.com", "password": "Str0ngPass"})
    assert r.status_code == 200
    refresh_token = r.json()["refresh_token"]

    r = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
    assert r.status_code == 200
    access = r.json()["access_token"]

    r = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {access}"})
    assert r.status_code == 200
    assert r.json()["user"]["first_name"] == "Nora"


def test_register_duplicate_email_conflicts(client):
    assert client.post("/api/v1/auth/register", json=REGISTER).status_code == 201
    r = client.post("/api/v1/auth/register", json=REGISTER)
    assert r.status_code == 409


def test_register_weak_password_rejected(client):
    r = client.post("/api/v1/auth/register", json={**REGISTER, "password": "weakpass"})
    assert r.status_code == 400
    assert "Password must be" in r.json()["detail"]


def test_login_bad_credentials(client, member):
    r = client.post("/api/v1/auth/login", json={"email": "member@example.com", "password": "nope"})
    assert r.status_code == 401
    assert r.json()["detail"] == "Invalid email or password"


def test_refresh_rejects_access_token(client, member):
    token = member["headers"]["Authorization"].split(" ", 1)[1]
    r = client.post("/api/v1/auth/refresh", json={"refresh_token": token})
    assert r.status_code == 401


def test_anonymous_denied_on_member_surface(client):
    r = client.get("/api/v1/cart")
    assert r.status_code == 403
    assert r.json()["required_role"] == "member"
    assert r.json()["actual_role"] == "anonymous"


def test_invalid_bearer_is_401(client):
    r = client.get("/api/v1/cart", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401


def test_member_cannot_reach_admin(client, member):
    r = client.get("/api/v1/admin/orders", headers=member["headers"])
    assert r.status_code == 403
    assert r.json()["detail"] == "Insufficient role"


def test_admin_reaches_admin(client, admin_user):
    r = client.get("/api/v1/admin/orders", headers=admin_user["headers"])
    assert r.status_code == 200
    assert r.json()["total"] == 0


def test_public_catalog_is_anonymous(client, catalog):
    assert client.get("/api/v1/products").status_code == 200
    assert client.get("/api/v1/subscription-plans").status_code == 200


@pytest.mark.parametrize(
    "method,path,role",
    [
        ("GET", "/api/v1/programmes/mine", "member"),
        ("GET", "/api/v1/programmes/fat-loss-12w", "anonymous"),
        ("POST", "/api/v1/programmes/fat-loss-12w/purchase", "member"),
        ("POST", "/api/v1/payments/paymob/webhook", "anonymous"),
        ("POST", "/api/v1/payments/webhook/tabby", "anonymous"),
        ("GET", "/api/v1/payments/verify/PAY-1", "anonymous"),
        ("DELETE", "/api/v1/admin/coupons/abc", "admin"),
        ("GET", "/api/v1/cart", "member"),
        ("GET", "/metrics", None),
    ],
)
def test_policy_table(method, path, role):
    assert required_role_for(method, path) == role


def test_role_helpers():
    assert primary_role(["member", "admin"]) == "admin"
    assert primary_role([]) == "anonymous"
    assert enforce_required_role(user_role="admin", required_role="member")
    assert not enforce_required_role(user_role="member", required_role="admin")
    assert not enforce_required_role(user_role=None, required_role="member")


def test_api_key_provider():
    p = ApiKeyProvider({"k1": {"sub": "svc-maintenance", "roles": ["admin"]}})
    principal = p.authenticate(SimpleNamespace(headers={"x-api-key": "k1"}))
    assert principal.subject == "svc-maintenance"
    assert principal.roles == ["admin"]

    assert p.authenticate(SimpleNamespace(headers={})) is None
    with pytest.raises(AuthError):
        p.authenticate(SimpleNamespace(headers={"x-api-key": "other"}))


def test_api_key_provider_from_env(monkeypatch):
    monkeypatch.delenv("GYMSHOP_API_KEYS_JSON", raising=False)
    assert ApiKeyProvider.from_env() is None

    monkeypatch.setenv("GYMSHOP_API_KEYS_JSON", "{not json")
    with pytest.raises(AuthError):
        ApiKeyProvider.from_env()

    monkeypatch.setenv("GYMSHOP_API_KEYS_JSON", '{"k": {"sub": "svc"}}')
    assert ApiKeyProvider.from_env().keys["k"]["sub"] == "svc"


def test_password_hashing_roundtrip():
    encoded = hash_password("Passw0rd!", iterations=1000)
    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert verify_password("Passw0rd!", encoded)
    assert not verify_password("passw0rd!", encoded)
    assert not verify_password("Passw0rd!", "garbage")
