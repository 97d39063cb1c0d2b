from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

# Keep consistent with gymshop.core.auth.rbac.ROLE_ORDER
DEFAULT_REQUIRED_ROLE = "member"


@dataclass(frozen=True)
class PolicyRule:
    method: str  # "GET", "POST", "*" etc.
    pattern: re.Pattern
    required_role: str


def _rule(method: str, pattern: str, role: str) -> PolicyRule:
    return PolicyRule(method=method, pattern=re.compile(pattern), required_role=role)


# Ordered: first match wins
RULES: list[PolicyRule] = [
    # -----------------------------
    # Probes
    # -----------------------------
    _rule("GET", r"^/api/v1/health/(live|ready)$", "anonymous"),

    # -----------------------------
    # Account entry points
    # -----------------------------
    _rule("POST", r"^/api/v1/auth/(register|login|refresh)$", "anonymous"),

    # -----------------------------
    # Gateway callbacks (verified by signature, not by bearer token)
    # -----------------------------
    _rule("POST", r"^/api/v1/payments/paymob/webhook$", "anonymous"),
    _rule("POST", r"^/api/v1/payments/tabby/webhook$", "anonymous"),
    _rule("POST", r"^/api/v1/payments/webhook/[^/]+$", "anonymous"),
    _rule("GET", r"^/api/v1/payments/verify/[^/]+$", "anonymous"),
    _rule("GET", r"^/api/v1/payments/tabby/availability$", "anonymous"),
    _rule("GET", r"^/api/v1/payments/providers$", "anonymous"),

    # -----------------------------
    # Public catalog + currency
    # -----------------------------
    _rule("GET", r"^/api/v1/currency/", "anonymous"),
    _rule("GET", r"^/api/v1/programmes/mine$", "member"),
    _rule("GET", r"^/api/v1/(products|programmes|subscription-plans)(/[^/]+)?$", "anonymous"),

    # -----------------------------
    # Back office
    # -----------------------------
    _rule("*", r"^/api/v1/admin/", "admin"),

    # -----------------------------
    # Default for the versioned surface
    # -----------------------------
    _rule("*", r"^/api/v1/", DEFAULT_REQUIRED_ROLE),
]


def required_role_for(method: str, path: str) -> Optional[str]:
    """
    Returns required role for this request, or None if policy does not apply.
    """
    m = (method or "GET").upper()
    for rule in RULES:
        if rule.method != "*" and rule.method != m:
            continue
        if rule.pattern.match(path):
            return rule.required_role
    return None
