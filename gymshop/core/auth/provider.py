from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import Request

from gymshop.core.auth.models import Principal
from gymshop.core.auth.tokens import TokenError, decode_token
from gymshop.core.config import env_str

log = logging.getLogger("gymshop.auth")


class AuthError(Exception):
    pass


def _extract_bearer(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or request.headers.get("x-forwarded-authorization")
    if not auth_header:
        return None
    if not auth_header.startswith("Bearer "):
        raise AuthError("Invalid authorization header")
    return auth_header.replace("Bearer ", "").strip()


class ApiKeyProvider:
    """
    Service accounts (maintenance jobs, back-office scripts).

    Keys are loaded from env GYMSHOP_API_KEYS_JSON in this format:
      {
        "key_abc": {"sub": "svc-maintenance", "roles": ["admin"]},
        "key_xyz": {"sub": "svc-reports", "roles": ["member"]}
      }

    Client supplies:
      X-API-Key: <key>
    """

    def __init__(self, keys: Dict[str, Dict[str, Any]]):
        self.keys = keys

    @classmethod
    def from_env(cls) -> Optional["ApiKeyProvider"]:
        raw = env_str("GYMSHOP_API_KEYS_JSON")
        if not raw:
            return None
        try:
            keys = json.loads(raw)
        except ValueError as e:
            raise AuthError(f"Invalid GYMSHOP_API_KEYS_JSON: {e}") from e
        if not isinstance(keys, dict) or not keys:
            raise AuthError("GYMSHOP_API_KEYS_JSON must be a non-empty object")
        return cls(keys)

    def authenticate(self, request: Request) -> Optional[Principal]:
        k = request.headers.get("x-api-key")
        if not k:
            return None
        meta = self.keys.get(k)
        if not meta:
            raise AuthError("Invalid api key")
        return Principal(subject=meta.get("sub") or "service", roles=list(meta.get("roles") or ["member"]))


class JwtProvider:
    """Bearer access tokens issued by /api/v1/auth/login."""

    def authenticate(self, request: Request) -> Optional[Principal]:
        token = _extract_bearer(request)
        if token is None:
            return None
        try:
            claims = decode_token(token, kind="access")
        except TokenError:
            raise AuthError("Invalid bearer token")

        roles = claims.get("roles") or ["member"]
        if isinstance(roles, str):
            roles = [roles]
        return Principal(subject=str(claims.get("sub")), roles=list(roles))


class ChainProvider:
    """Tries each provider in turn; the first that recognises a credential wins."""

    def __init__(self, providers: List[Any]):
        self.providers = providers

    def authenticate(self, request: Request) -> Optional[Principal]:
        for p in self.providers:
            principal = p.authenticate(request)
            if principal is not None:
                return principal
        return None


def get_auth_provider() -> ChainProvider:
    mode = (env_str("GYMSHOP_AUTH_MODE", "jwt") or "jwt").lower()
    providers: List[Any] = []

    api_keys = ApiKeyProvider.from_env()
    if api_keys is not None:
        providers.append(api_keys)

    if mode == "jwt":
        providers.append(JwtProvider())
    elif mode != "api_key":
        raise AuthError(f"Unsupported auth mode: {mode}")

    return ChainProvider(providers)
