from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Callable, Dict, Tuple

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from gymshop.api.observability.metrics import (
    HTTP_REQUESTS_TOTAL,
    HTTP_REQUEST_DURATION_SECONDS,
    normalize_path,
)
from gymshop.core.currency.detect import client_ip

log = logging.getLogger("gymshop.request")

# Responses on these prefixes carry tokens or payment data.
_NO_STORE_PREFIXES = ("/api/v1/auth/", "/api/v1/payments")


def _json_log(event: str, **fields):
    # Structured log in a single line; tokens are never logged.
    msg = {"event": event, **fields}
    log.info("%s", msg)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Request id + one structured log line per API request.

    Adds:
      request.state.request_id
      response header: X-Request-Id
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        rid = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = rid

        start = time.perf_counter()
        resp = await call_next(request)
        elapsed = time.perf_counter() - start

        resp.headers["X-Request-Id"] = rid

        p = normalize_path(request.url.path)
        m = request.method.upper()
        HTTP_REQUESTS_TOTAL.labels(method=m, path=p, status=str(resp.status_code)).inc()
        HTTP_REQUEST_DURATION_SECONDS.labels(method=m, path=p).observe(elapsed)

        if request.url.path.startswith("/api/"):
            user = getattr(request.state, "user", None) or {}
            _json_log(
                "request",
                request_id=rid,
                method=request.method,
                path=request.url.path,
                status_code=resp.status_code,
                duration_ms=int(elapsed * 1000),
                sub=user.get("sub"),
                role=user.get("role"),
            )
        return resp


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers; enabled in prod by default."""

    def __init__(self, app, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        resp = await call_next(request)
        if not self.enabled:
            return resp

        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
        resp.headers.setdefault("Cross-Origin-Resource-Policy", "same-origin")
        if request.url.path.startswith(_NO_STORE_PREFIXES):
            resp.headers.setdefault("Cache-Control", "no-store")
        return resp


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Fixed one-minute window per client IP, in memory.
    Controlled by:
      GYMSHOP_RATE_LIMIT_ENABLED=true/false
      GYMSHOP_RATE_LIMIT_RPM=120  (requests per minute)
    Gateway webhooks are exempt.
    """

    EXEMPT_SUFFIXES = ("/webhook", "/webhook/paymob", "/webhook/tabby")

    def __init__(self, app, enabled: bool = False, rpm: int = 120):
        super().__init__(app)
        self.enabled = enabled
        self.rpm = max(10, int(rpm))
        self._bucket: Dict[str, Tuple[int, int]] = {}  # key -> (window_start_epoch_minute, count)
        self._lock = threading.Lock()

    def _key(self, request: Request) -> str:
        fallback = request.client.host if request.client else None
        return client_ip(request.headers, fallback) or "unknown"

    def _hit(self, key: str, minute: int) -> int:
        with self._lock:
            win, cnt = self._bucket.get(key, (minute, 0))
            if win != minute:
                win, cnt = minute, 0
                # drop stale windows
                self._bucket = {k: v for k, v in self._bucket.items() if v[0] == minute}
            cnt += 1
            self._bucket[key] = (win, cnt)
            return cnt

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        path = request.url.path
        if not path.startswith("/api/") or path.endswith(self.EXEMPT_SUFFIXES):
            return await call_next(request)

        now = time.time()
        minute = int(now // 60)
        if self._hit(self._key(request), minute) > self.rpm:
            retry_after = str(int(60 - (now % 60)) or 1)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded"},
                headers={"Retry-After": retry_after},
            )

        return await call_next(request)
