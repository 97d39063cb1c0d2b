"""
Paymob KSA Unified Intention API client.

Amounts cross this boundary in major units and are converted to cents here.
Credentials come from PAYMOB_SECRET_KEY, PAYMOB_PUBLIC_KEY,
PAYMOB_MIGS_INTEGRATION_ID, PAYMOB_APPLEPAY_INTEGRATION_ID and
PAYMOB_HMAC_SECRET.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

import requests

from gymshop.core.config import env_float, env_str, is_prod
from gymshop.core.errors import GatewayError, GatewayUnavailable, ValidationFailed

log = logging.getLogger("gymshop.gateways.paymob")

PAYMOB_BASE_URL = "https://ksa.paymob.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
PAYMENT_METHODS = ("card", "apple_pay")

_BILLING_DEFAULTS = {
    "apartment": "",
    "street": "",
    "building": "",
    "floor": "",
    "state": "",
    "city": "",
    "postal_code": "",
    "country": "KSA",
}


def _cents(amount: float) -> int:
    return int(round(float(amount) * 100))


def verify_hmac(raw: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """HMAC-SHA512 over the raw body, hex encoded."""
    secret = secret if secret is not None else env_str("PAYMOB_HMAC_SECRET")
    if not secret:
        if is_prod():
            log.error("PAYMOB_HMAC_SECRET not configured; rejecting webhook")
            return False
        log.warning("PAYMOB_HMAC_SECRET not configured; accepting unsigned webhook outside prod")
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def validate_payment_data(data: Dict[str, Any]) -> List[str]:
    errors: List[str] = []
    amount = data.get("amount") or 0
    if not amount or float(amount) <= 0:
        errors.append("Amount is required and must be greater than 0")

    billing = data.get("billing_data") or {}
    for key, label in (("first_name", "first name"), ("last_name", "last name"), ("email", "email"), ("phone_number", "phone number")):
        if not billing.get(key):
            errors.append(f"Billing {label} is required")

    customer = data.get("customer") or {}
    for key, label in (("first_name", "first name"), ("last_name", "last name"), ("email", "email")):
        if not customer.get(key):
            errors.append(f"Customer {label} is required")

    items = data.get("items") or []
    if items and amount:
        total = sum(float(i.get("amount") or 0) * int(i.get("quantity") or 1) for i in items)
        if abs(total - float(amount)) > 0.01:
            errors.append(f"Items total ({total:.2f}) does not match amount ({float(amount):.2f})")
    return errors


class PaymobClient:
    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        public_key: Optional[str] = None,
        card_integration_id: Optional[str] = None,
        apple_pay_integration_id: Optional[str] = None,
        base_url: str = PAYMOB_BASE_URL,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else env_str("PAYMOB_SECRET_KEY")
        self.public_key = public_key if public_key is not None else env_str("PAYMOB_PUBLIC_KEY")
        self.card_integration_id = card_integration_id or env_str("PAYMOB_MIGS_INTEGRATION_ID")
        self.apple_pay_integration_id = apple_pay_integration_id or env_str("PAYMOB_APPLEPAY_INTEGRATION_ID")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else env_float("GYMSHOP_GATEWAY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
        self.session = session or requests.Session()

        if not self.secret_key or not self.public_key:
            log.warning("Paymob credentials missing (PAYMOB_SECRET_KEY / PAYMOB_PUBLIC_KEY)")

    @property
    def configured(self) -> bool:
        return bool(self.secret_key and self.public_key)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Token {self.secret_key}", "Content-Type": "application/json"}

    def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            log.error("paymob %s %s unreachable: %s", method, path, type(e).__name__)
            raise GatewayUnavailable("Payment gateway is unavailable") from e
        if resp.status_code >= 400:
            try:
                detail = (resp.json() or {}).get("detail")
            except ValueError:
                detail = None
            log.error("paymob %s %s failed status=%s", method, path, resp.status_code)
            raise GatewayError(f"Paymob request failed: {detail or resp.status_code}", extra={"gateway_status": resp.status_code})
        return resp.json() if resp.content else {}

    def integration_id(self, payment_method: str) -> int:
        raw = self.apple_pay_integration_id if payment_method == "apple_pay" else self.card_integration_id
        if not raw:
            raise ValidationFailed(f"Integration ID not configured for payment method: {payment_method}")
        return int(raw)

    def checkout_url(self, client_secret: str) -> str:
        return f"{self.base_url}/unifiedcheckout/?publicKey={self.public_key}&clientSecret={client_secret}"

    def create_intention(self, req: Dict[str, Any]) -> Dict[str, Any]:
        billing = {**_BILLING_DEFAULTS, **{k: v for k, v in (req.get("billing_data") or {}).items() if v is not None}}
        customer = req.get("customer") or {}
        payload: Dict[str, Any] = {
            "amount": _cents(req["amount"]),
            "currency": req.get("currency") or "SAR",
            "payment_methods": [self.integration_id(req.get("payment_method") or "card")],
            "items": [
                {
                    "name": i.get("name"),
                    "amount": _cents(i.get("amount") or 0),
                    "description": i.get("description") or "",
                    "quantity": int(i.get("quantity") or 1),
                }
                for i in (req.get("items") or [])
            ],
            "billing_data": billing,
            "customer": {
                "first_name": customer.get("first_name"),
                "last_name": customer.get("last_name"),
                "email": customer.get("email"),
                "extras": customer.get("extras") or {},
            },
            "extras": req.get("extras") or {},
        }
        for key in ("special_reference", "notification_url", "redirection_url"):
            if req.get(key):
                payload[key] = req[key]

        data = self._call("POST", "/v1/intention/", json=payload)
        log.info("paymob intention created id=%s", data.get("id"))
        return {
            "id": data.get("id"),
            "client_secret": data.get("client_secret"),
            "checkout_url": self.checkout_url(data.get("client_secret") or ""),
            "raw": data,
        }

    def get_intention(self, intention_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/v1/intention/{intention_id}")

    def refund(self, transaction_id: str, amount: float) -> Dict[str, Any]:
        return self._call("POST", "/v1/refund", json={"transaction_id": transaction_id, "amount": _cents(amount)})
