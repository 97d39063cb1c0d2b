"""
JWT access/refresh tokens (HS256).

  GYMSHOP_JWT_ACCESS_SECRET   signs 1h access tokens
  GYMSHOP_JWT_REFRESH_SECRET  signs 30d refresh tokens
  GYMSHOP_JWT_ISSUER          defaults to "gymshop"
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import jwt

from gymshop.core.config import env_int, env_str, is_prod

ACCESS_TTL_SECONDS = 60 * 60
REFRESH_TTL_SECONDS = 30 * 24 * 60 * 60

_DEV_ACCESS_SECRET = "dev-access-secret-change-me"
_DEV_REFRESH_SECRET = "dev-refresh-secret-change-me"


class TokenError(Exception):
    pass


@dataclass(frozen=True)
class TokenConfig:
    access_secret: str
    refresh_secret: str
    issuer: str = "gymshop"
    leeway_seconds: int = 30


def token_config() -> TokenConfig:
    access = env_str("GYMSHOP_JWT_ACCESS_SECRET")
    refresh = env_str("GYMSHOP_JWT_REFRESH_SECRET")
    if not access or not refresh:
        if is_prod():
            raise TokenError("GYMSHOP_JWT_ACCESS_SECRET and GYMSHOP_JWT_REFRESH_SECRET are required in prod")
        access = access or _DEV_ACCESS_SECRET
        refresh = refresh or _DEV_REFRESH_SECRET
    return TokenConfig(
        access_secret=access,
        refresh_secret=refresh,
        issuer=env_str("GYMSHOP_JWT_ISSUER", "gymshop") or "gymshop",
        leeway_seconds=env_int("GYMSHOP_JWT_LEEWAY_SECONDS", 30),
    )


def _encode(sub: str, roles: List[str], kind: str, ttl: int, secret: str, issuer: str) -> str:
    now = int(time.time())
    claims = {"sub": sub, "roles": roles, "type": kind, "iss": issuer, "iat": now, "exp": now + ttl}
    return jwt.encode(claims, secret, algorithm="HS256")


def issue_tokens(sub: str, roles: List[str], cfg: Optional[TokenConfig] = None) -> Dict[str, Any]:
    c = cfg or token_config()
    return {
        "access_token": _encode(sub, roles, "access", ACCESS_TTL_SECONDS, c.access_secret, c.issuer),
        "refresh_token": _encode(sub, roles, "refresh", REFRESH_TTL_SECONDS, c.refresh_secret, c.issuer),
        "token_type": "bearer",
        "expires_in": ACCESS_TTL_SECONDS,
    }


def issue_access_token(sub: str, roles: List[str], cfg: Optional[TokenConfig] = None) -> str:
    c = cfg or token_config()
    return _encode(sub, roles, "access", ACCESS_TTL_SECONDS, c.access_secret, c.issuer)


def decode_token(token: str, *, kind: str, cfg: Optional[TokenConfig] = None) -> Dict[str, Any]:
    c = cfg or token_config()
    secret = c.access_secret if kind == "access" else c.refresh_secret
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            issuer=c.issuer,
            options={"verify_signature": True, "verify_exp": True, "verify_iss": True},
            leeway=c.leeway_seconds,
        )
    except jwt.PyJWTError as e:
        raise TokenError("Invalid token") from e
    if claims.get("type") != kind:
        raise TokenError("Invalid token type")
    return claims
