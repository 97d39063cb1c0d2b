"""
Tabby (buy now, pay later) REST client.

Credentials: TABBY_SECRET_KEY, TABBY_PUBLIC_KEY, TABBY_MERCHANT_CODE and the
per-currency TABBY_MERCHANT_CODE_SAR / TABBY_MERCHANT_CODE_AED overrides.
Webhooks are signed with TABBY_WEBHOOK_SECRET.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Dict, List, Optional

import requests

from gymshop.core.config import env_float, env_str, is_prod
from gymshop.core.errors import GatewayError, GatewayUnavailable
from gymshop.core.shop.models import PaymentStatus

log = logging.getLogger("gymshop.gateways.tabby")

TABBY_BASE_URL = "https://api.tabby.ai"
TABBY_CURRENCIES = ("SAR", "AED")

CHECKOUT_RETRIES = 3
CHECKOUT_RETRY_DELAY_SECONDS = 2.0
DEFAULT_TIMEOUT_SECONDS = 60.0

# "AUTHORIZED" is kept as a raw Tabby state; it has no PaymentStatus member.
_STATUS_MAP = {
    "NEW": PaymentStatus.PENDING.value,
    "AUTHORIZED": "AUTHORIZED",
    "CLOSED": PaymentStatus.COMPLETED.value,
    "REJECTED": PaymentStatus.FAILED.value,
    "EXPIRED": PaymentStatus.FAILED.value,
    "CANCELLED": PaymentStatus.CANCELLED.value,
}


def map_tabby_status(status: Optional[str]) -> str:
    return _STATUS_MAP.get((status or "").upper(), PaymentStatus.PENDING.value)


def merchant_code(currency: Optional[str]) -> Optional[str]:
    cur = (currency or "").upper()
    if cur == "SAR":
        return env_str("TABBY_MERCHANT_CODE_SAR", "CCSAU")
    if cur == "AED":
        return env_str("TABBY_MERCHANT_CODE_AED", "GUAE")
    return env_str("TABBY_MERCHANT_CODE")


def verify_signature(raw: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """HMAC-SHA256 over the raw body, hex encoded."""
    secret = secret if secret is not None else env_str("TABBY_WEBHOOK_SECRET")
    if not secret:
        if is_prod():
            log.error("TABBY_WEBHOOK_SECRET not configured; rejecting webhook")
            return False
        log.warning("TABBY_WEBHOOK_SECRET not configured; accepting unsigned webhook outside prod")
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class TabbyClient:
    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        public_key: Optional[str] = None,
        base_url: str = TABBY_BASE_URL,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        retry_delay: float = CHECKOUT_RETRY_DELAY_SECONDS,
    ):
        self.secret_key = secret_key if secret_key is not None else env_str("TABBY_SECRET_KEY")
        self.public_key = public_key if public_key is not None else env_str("TABBY_PUBLIC_KEY")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else env_float("GYMSHOP_GATEWAY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
        self.session = session or requests.Session()
        self.retry_delay = retry_delay

        if not self.secret_key:
            log.warning("Tabby credentials missing (TABBY_SECRET_KEY)")

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _headers(self, currency: Optional[str]) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}
        code = merchant_code(currency)
        if code:
            headers["X-Merchant-Code"] = code
        return headers

    def _call(self, method: str, path: str, *, currency: Optional[str] = None, **kwargs) -> Any:
        try:
            resp = self.session.request(
                method, f"{self.base_url}{path}", headers=self._headers(currency), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            log.error("tabby %s %s unreachable: %s", method, path, type(e).__name__)
            raise GatewayUnavailable("Tabby service is unavailable") from e
        if resp.status_code >= 400:
            try:
                body = resp.json() or {}
            except ValueError:
                body = {}
            message = body.get("error") or body.get("message") or f"HTTP {resp.status_code}"
            log.error("tabby %s %s failed status=%s", method, path, resp.status_code)
            raise GatewayError(f"Tabby request failed: {message}", extra={"gateway_status": resp.status_code})
        if not resp.content:
            return {}
        return resp.json()

    # ------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------
    def create_checkout_session(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        currency = (payload.get("payment") or {}).get("currency") or "SAR"
        body = {
            "payment": payload.get("payment"),
            "lang": payload.get("lang") or "en",
            "merchant_code": merchant_code(currency),
            "merchant_urls": payload.get("merchant_urls"),
            "token": payload.get("token"),
        }
        attempt = 0
        while True:
            try:
                return self._call("POST", "/api/v2/checkout", currency=currency, json=body)
            except GatewayUnavailable:
                attempt += 1
                if attempt > CHECKOUT_RETRIES:
                    raise
                log.warning("tabby checkout retry %d/%d", attempt, CHECKOUT_RETRIES)
                time.sleep(self.retry_delay)

    def get_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/api/v2/checkout/{session_id}")

    # ------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------
    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/api/v2/payments/{payment_id}")

    def update_payment(self, payment_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Only the order reference_id can be changed once a payment exists."""
        return self._call("PUT", f"/api/v2/payments/{payment_id}", json=data)

    def capture_payment(self, payment_id: str, amount: float, reference_id: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"amount": f"{float(amount):.2f}"}
        if reference_id:
            body["reference_id"] = reference_id
        return self._call("POST", f"/api/v2/payments/{payment_id}/captures", json=body)

    def refund_payment(self, payment_id: str, amount: float, reason: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"amount": f"{float(amount):.2f}"}
        if reason:
            body["reason"] = reason
        return self._call("POST", f"/api/v2/payments/{payment_id}/refunds", json=body)

    def close_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._call("POST", f"/api/v2/payments/{payment_id}/close")

    def list_payments(self, **filters: Any) -> Dict[str, Any]:
        params = {k: v for k, v in filters.items() if v is not None}
        return self._call("GET", "/api/v2/payments", params=params)

    # ------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------
    def register_webhook(self, url: str, *, is_test: bool = False, currency: Optional[str] = None) -> Dict[str, Any]:
        return self._call("POST", "/api/v1/webhooks", currency=currency, json={"url": url, "is_test": is_test})

    def list_webhooks(self, *, currency: Optional[str] = None) -> List[Dict[str, Any]]:
        data = self._call("GET", "/api/v1/webhooks", currency=currency)
        return data if isinstance(data, list) else list(data.get("webhooks") or [])

    def delete_webhook(self, webhook_id: str, *, currency: Optional[str] = None) -> None:
        self._call("DELETE", f"/api/v1/webhooks/{webhook_id}", currency=currency)
