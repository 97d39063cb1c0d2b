import json

import pytest
import requests

from gymshop.core.errors import GatewayError, GatewayUnavailable
from gymshop.core.gateways.tabby import TabbyClient


class _Response:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.content = json.dumps(body).encode("utf-8") if body is not None else b""
        self._body = body

    def json(self):
        return self._body


class RecordingSession:
    """Stands in for requests.Session; replays queued responses and keeps every call."""

    def __init__(self, *responses):
        self.calls = []
        self.responses = list(responses)

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        nxt = self.responses.pop(0) if self.responses else _Response(200, {})
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


def _client(*responses):
    session = RecordingSession(*responses)
    return TabbyClient(secret_key="sk_test", session=session, retry_delay=0), session


def test_get_checkout_session():
    client, session = _client(_Response(200, {"id": "cs_9", "status": "created"}))
    assert client.get_checkout_session("cs_9")["id"] == "cs_9"

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", "https://api.tabby.ai/api/v2/checkout/cs_9")
    assert kwargs["headers"]["Authorization"] == "Bearer sk_test"
    assert kwargs["timeout"] == 60.0


def test_update_payment_sends_body():
    client, session = _client(_Response(200, {"id": "tp_1"}))
    client.update_payment("tp_1", {"order": {"reference_id": "PAY-1"}})

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("PUT", "https://api.tabby.ai/api/v2/payments/tp_1")
    assert kwargs["json"] == {"order": {"reference_id": "PAY-1"}}


def test_list_payments_drops_empty_filters():
    client, session = _client(_Response(200, {"payments": [], "pagination": {"total": 0}}))
    out = client.list_payments(status="closed", created_at__gte="2026-01-01", limit=20, offset=None)
    assert out["pagination"] == {"total": 0}

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", "https://api.tabby.ai/api/v2/payments")
    assert kwargs["params"] == {"status": "closed", "created_at__gte": "2026-01-01", "limit": 20}


def test_delete_webhook_uses_currency_merchant_code():
    client, session = _client(_Response(204))
    assert client.delete_webhook("wh_1", currency="AED") is None

    method, url, kwargs = session.calls[0]
    assert (method, url) == ("DELETE", "https://api.tabby.ai/api/v1/webhooks/wh_1")
    assert kwargs["headers"]["X-Merchant-Code"] == "GUAE"


def test_http_errors_become_gateway_errors():
    client, _ = _client(_Response(404, {"error": "not found"}))
    with pytest.raises(GatewayError) as e:
        client.get_checkout_session("cs_missing")
    assert e.value.message == "Tabby request failed: not found"
    assert e.value.extra == {"gateway_status": 404}


def test_checkout_retries_connection_errors_then_gives_up():
    down = requests.ConnectionError("refused")
    client, session = _client(down, _Response(200, {"id": "cs_1"}))
    assert client.create_checkout_session({"payment": {"currency": "SAR"}})["id"] == "cs_1"
    assert len(session.calls) == 2

    client, session = _client(down, down, down, down)
    with pytest.raises(GatewayUnavailable):
        client.create_checkout_session({"payment": {"currency": "SAR"}})
    assert len(session.calls) == 4
