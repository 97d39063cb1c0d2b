"""Human-facing identifiers: order/subscription/programme numbers and payment references."""
from __future__ import annotations

import re
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from gymshop.core.errors import ShopError

_ALNUM = string.ascii_uppercase + string.digits
_PAYMENT_REF_RE = re.compile(r"^PAY-(\d{13})-[A-Z0-9]{9}$")

MAX_NUMBER_ATTEMPTS = 10
MAX_REFERENCE_ATTEMPTS = 5


def _random_code(n: int) -> str:
    return "".join(secrets.choice(_ALNUM) for _ in range(n))


def _dated(prefix: str, now: Optional[datetime] = None) -> str:
    d = now or datetime.now(timezone.utc)
    return f"{prefix}-{d.strftime('%Y%m%d')}-{_random_code(6)}"


def order_number(now: Optional[datetime] = None) -> str:
    return _dated("ORD", now)


def subscription_number(now: Optional[datetime] = None) -> str:
    return _dated("SUB", now)


def programme_purchase_number(now: Optional[datetime] = None) -> str:
    return _dated("PROG", now)


def payment_reference() -> str:
    return f"PAY-{int(time.time() * 1000):013d}-{_random_code(9)}"


def unique_value(
    generate: Callable[[], str],
    exists: Callable[[str], bool],
    *,
    attempts: int = MAX_NUMBER_ATTEMPTS,
) -> str:
    for _ in range(attempts):
        candidate = generate()
        if not exists(candidate):
            return candidate
    raise ShopError("Could not allocate a unique identifier", status_code=500)


def is_payment_reference(value: Optional[str]) -> bool:
    return bool(value) and _PAYMENT_REF_RE.match(value) is not None


def reference_timestamp(value: str) -> Optional[datetime]:
    m = _PAYMENT_REF_RE.match(value or "")
    if not m:
        return None
    return datetime.fromtimestamp(int(m.group(1)) / 1000.0, tz=timezone.utc)
