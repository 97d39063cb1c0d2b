from __future__ import annotations

from typing import Callable, Iterable, Optional

from fastapi import Request

from gymshop.core.errors import Forbidden, Unauthorized

# Role hierarchy (simple, extensible)
ROLE_ORDER = {
    "anonymous": 0,
    "member": 1,
    "admin": 2,
}


def primary_role(roles: Iterable[str]) -> str:
    known = [r for r in (roles or []) if r in ROLE_ORDER]
    if not known:
        return "anonymous"
    return max(known, key=lambda r: ROLE_ORDER[r])


def _enforce_role(request: Request, required_role: str):
    user = getattr(request.state, "user", None)
    if not user or user.get("role") in (None, "anonymous"):
        if required_role != "anonymous":
            raise Unauthorized("Authentication required")
        return user

    user_role = user.get("role")
    if user_role not in ROLE_ORDER:
        raise Forbidden("Invalid role")
    if ROLE_ORDER[user_role] < ROLE_ORDER[required_role]:
        raise Forbidden("Insufficient role")
    return user


def require_role(required_role: str) -> Callable:
    """
    FastAPI dependency-style role enforcement.
    """
    if required_role not in ROLE_ORDER:
        raise ValueError(f"Unknown role: {required_role}")

    def dependency(request: Request):
        return _enforce_role(request, required_role)

    return dependency


def enforce_required_role(*, user_role: Optional[str], required_role: str) -> bool:
    """
    Used by middleware policy enforcement.
    Returns True if allowed else False.
    """
    if required_role not in ROLE_ORDER:
        raise ValueError(f"Unknown role: {required_role}")
    if not user_role or user_role not in ROLE_ORDER:
        return False
    return ROLE_ORDER[user_role] >= ROLE_ORDER[required_role]
