from __future__ import annotations

from collections import Counter
from typing import Dict

from prometheus_client import Counter as PromCounter

# Named counters (health pings, maintenance runs)
_NAMED = Counter()

PAYMENT_WEBHOOKS_TOTAL = PromCounter(
    "gymshop_payment_webhooks_total",
    "Payment gateway webhook deliveries by outcome",
    ["provider", "outcome"],
)

PAYMENTS_TOTAL = PromCounter(
    "gymshop_payments_total",
    "Payment status changes",
    ["method", "status"],
)


def reset_metrics() -> None:
    """
    Test helper: clears named counters to avoid cross-test leakage.
    """
    _NAMED.clear()


def inc_named(name: str, value: int = 1) -> None:
    if not name:
        return
    _NAMED[name] += int(value)


def snapshot_named() -> Dict[str, int]:
    return dict(_NAMED)


def record_webhook(provider: str, outcome: str) -> None:
    PAYMENT_WEBHOOKS_TOTAL.labels(provider=provider, outcome=outcome).inc()
    inc_named(f"webhook_{provider}_{outcome}")


def record_payment_status(method: str, status: str) -> None:
    PAYMENTS_TOTAL.labels(method=method, status=status).inc()
