import hashlib
import hmac
import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from gymshop.api.deps import get_paymob_client, get_tabby_client
from gymshop.api.main import app
from gymshop.core.auth.passwords import hash_password
from gymshop.core.auth.tokens import issue_tokens
from gymshop.core.config import data_root
from gymshop.core.errors import GatewayUnavailable
from gymshop.core.observability.metrics import reset_metrics
from gymshop.core.shop.catalog_loader import load_catalog_file
from gymshop.core.shop.models import User
from gymshop.core.shop.tables import Tables
from gymshop.core.storage import open_database

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SAMPLE_CATALOG = PROJECT_ROOT / "tools" / "sample_catalog.yaml"

PAYMOB_SECRET = "paymob-test-hmac-secret"
TABBY_SECRET = "tabby-test-webhook-secret"


class FakeGeo:
    def __init__(self, country=None):
        self.country = country
        self.calls = []

    def country_for(self, ip):
        self.calls.append(ip)
        return self.country


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    # Fresh data root + audit log per test; deterministic secrets
    monkeypatch.setenv("GYMSHOP_ENV", "dev")
    monkeypatch.setenv("GYMSHOP_DATA_ROOT", str(tmp_path / "data"))
    monkeypatch.setenv("GYMSHOP_AUDIT_PATH", str(tmp_path / "audit.log"))
    monkeypatch.setenv("GYMSHOP_JWT_ACCESS_SECRET", "test-access-secret-0123456789abcdef")
    monkeypatch.setenv("GYMSHOP_JWT_REFRESH_SECRET", "test-refresh-secret-0123456789abcdef")
    monkeypatch.setenv("PAYMOB_HMAC_SECRET", PAYMOB_SECRET)
    monkeypatch.setenv("TABBY_WEBHOOK_SECRET", TABBY_SECRET)
    monkeypatch.setenv("FRONTEND_URL", "https://shop.example")
    monkeypatch.setenv("BASE_URL", "https://api.example/api")
    monkeypatch.delenv("GYMSHOP_DEV_CURRENCY", raising=False)
    reset_metrics()
    app.state.geo_client = FakeGeo()
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def db():
    return open_database(data_root())


@pytest.fixture()
def tables(db):
    return Tables(db)


@pytest.fixture()
def catalog(db):
    return load_catalog_file(db, SAMPLE_CATALOG)


@pytest.fixture()
def make_user(tables):
    def _make(email="member@example.com", role="member", points=0):
        user = User(
            email=email,
            password_hash=hash_password("Passw0rd!", iterations=1000),
            first_name="Test",
            last_name="User",
            mobile_number="+966500000000",
            role=role,
            loyalty_points=points,
        )
        tables.users.put(user)
        tokens = issue_tokens(user.id, [role])
        return {"id": user.id, "user": user, "headers": {"Authorization": f"Bearer {tokens['access_token']}"}}

    return _make


@pytest.fixture()
def member(make_user):
    return make_user()


@pytest.fixture()
def admin_user(make_user):
    return make_user(email="admin@example.com", role="admin")


@pytest.fixture()
def client():
    return TestClient(app)


# ------------------------------------------------------------
# Gateway fakes
# ------------------------------------------------------------
class FakePaymobClient:
    configured = True

    def __init__(self):
        self.intentions = []
        self.refunds = []
        self.remote_status = {"id": "remote", "status": "pending"}

    def create_intention(self, req):
        self.intentions.append(req)
        n = len(self.intentions)
        return {
            "id": f"pi_{n}",
            "client_secret": f"secret_{n}",
            "checkout_url": f"https://ksa.paymob.com/unifiedcheckout/?publicKey=pk&clientSecret=secret_{n}",
            "raw": {},
        }

    def get_intention(self, intention_id):
        return dict(self.remote_status, id=intention_id)

    def refund(self, transaction_id, amount):
        self.refunds.append((transaction_id, amount))
        return {"id": f"rf_{len(self.refunds)}", "success": True}


class FakeTabbyClient:
    configured = True

    def __init__(self):
        self.sessions = []
        self.captures = []
        self.refunds = []
        self.closed = []
        self.webhooks = []
        self.session_status = "created"
        self.capture_error = None
        self.remote = {}

    def create_checkout_session(self, payload):
        self.sessions.append(payload)
        n = len(self.sessions)
        return {
            "id": f"cs_{n}",
            "status": self.session_status,
            "payment": {"id": f"tp_{n}"},
            "configuration": {"available_products": {"installments": [{"web_url": f"https://checkout.tabby.ai/{n}"}]}},
        }

    def get_payment(self, payment_id):
        if payment_id not in self.remote:
            raise GatewayUnavailable("Tabby service is unavailable")
        return {"id": payment_id, "status": self.remote[payment_id]}

    def capture_payment(self, payment_id, amount, reference_id=None):
        if self.capture_error is not None:
            raise self.capture_error
        self.captures.append((payment_id, amount, reference_id))
        return {"id": f"cap_{len(self.captures)}"}

    def refund_payment(self, payment_id, amount, reason=None):
        self.refunds.append((payment_id, amount, reason))
        return {"id": f"ref_{len(self.refunds)}"}

    def close_payment(self, payment_id):
        self.closed.append(payment_id)
        return {}

    def register_webhook(self, url, *, is_test=False, currency=None):
        hook = {"id": f"wh_{len(self.webhooks) + 1}", "url": url, "is_test": is_test, "currency": currency}
        self.webhooks.append(hook)
        return hook

    def list_webhooks(self, *, currency=None):
        return list(self.webhooks)

    def delete_webhook(self, webhook_id, *, currency=None):
        self.webhooks = [w for w in self.webhooks if w["id"] != webhook_id]


@pytest.fixture()
def paymob_fake():
    fake = FakePaymobClient()
    app.dependency_overrides[get_paymob_client] = lambda: fake
    return fake


@pytest.fixture()
def tabby_fake():
    fake = FakeTabbyClient()
    app.dependency_overrides[get_tabby_client] = lambda: fake
    return fake


# ------------------------------------------------------------
# Signed webhook helpers
# ------------------------------------------------------------
def paymob_signed(body, secret=PAYMOB_SECRET):
    raw = json.dumps(body).encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), raw, hashlib.sha512).hexdigest()
    return raw, {"Content-Type": "application/json", "x-paymob-hmac": sig}


def tabby_signed(body, secret=TABBY_SECRET):
    raw = json.dumps(body).encode("utf-8")
    sig = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return raw, {"Content-Type": "application/json", "x-tabby-signature": sig}


@pytest.fixture()
def paymob_sign():
    return paymob_signed


@pytest.fixture()
def tabby_sign():
    return tabby_signed
