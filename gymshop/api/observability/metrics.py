from __future__ import annotations

import re
from prometheus_client import Counter, Histogram


def normalize_path(path: str) -> str:
    """Reduce high-cardinality paths for metrics labels."""
    p = path or "/"

    # UUID-ish
    p = re.sub(r"/[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}", "/:uuid", p)
    # uuid4().hex record ids
    p = re.sub(r"/[0-9a-fA-F]{16,}", "/:hex", p)
    # ints
    p = re.sub(r"/\d+", "/:id", p)

    # Payment references and gateway ids in lookup routes
    p = re.sub(r"^(/api/v1/payments/verify)/[^/]+$", r"\1/:ref", p)
    p = re.sub(r"^(/api/v1/payments/tabby)/(?!checkout$|webhook$|availability$)[^/]+/status$", r"\1/:id/status", p)

    return p


HTTP_REQUESTS_TOTAL = Counter(
    "gymshop_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "gymshop_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

AUTHZ_DECISIONS_TOTAL = Counter(
    "gymshop_authz_decisions_total",
    "Authorization decisions",
    ["decision", "required_role", "actual_role", "method", "path"],
)
