"""
Shared FastAPI dependencies.

Gateway clients are plain dependencies so tests can swap them through
``app.dependency_overrides``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Depends, Request

from gymshop.core.auth.rbac import require_role
from gymshop.core.config import data_root
from gymshop.core.currency.rates import DEFAULT_CURRENCY, SUPPORTED
from gymshop.core.errors import ValidationFailed
from gymshop.core.gateways.paymob import PaymobClient
from gymshop.core.gateways.tabby import TabbyClient
from gymshop.core.storage import Database, open_database

member = require_role("member")
admin = require_role("admin")


def get_db() -> Database:
    return open_database(data_root())


def get_paymob_client() -> PaymobClient:
    return PaymobClient()


def get_tabby_client() -> TabbyClient:
    return TabbyClient()


def current_user_id(user: Dict[str, Any] = Depends(member)) -> str:
    return str(user["sub"])


def is_admin(request: Request) -> bool:
    user = getattr(request.state, "user", None) or {}
    return user.get("role") == "admin"


def request_currency(request: Request) -> str:
    return getattr(request.state, "currency", None) or DEFAULT_CURRENCY


def actor_of(request: Request) -> str:
    return getattr(request.state, "actor", None) or "system"


def checkout_currency(requested: Optional[str], detected: str) -> str:
    """An explicit body currency overrides the detected one."""
    if not requested:
        return detected
    cur = requested.strip().upper()
    if cur not in SUPPORTED:
        raise ValidationFailed(f"Unsupported currency: {requested}")
    return cur
