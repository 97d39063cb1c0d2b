from __future__ import annotations

from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from gymshop.core.observability.audit import audit_event

# Not audited: probes and scrapes.
_SKIP_PREFIXES = ("/api/v1/health/", "/metrics")


def _extract_actor(request: Request) -> Optional[str]:
    actor = getattr(request.state, "actor", None)
    if actor:
        return str(actor)
    # Credential presence only; the token itself is never written.
    if request.headers.get("Authorization"):
        return "bearer"
    if request.headers.get("X-API-Key"):
        return "api_key"
    return None


class AuditMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(_SKIP_PREFIXES):
            return await call_next(request)

        response: Optional[Response] = None
        status: Optional[int] = None
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            extra = None
            currency = getattr(request.state, "currency", None)
            if currency:
                extra = {"currency": currency}
            audit_event(
                event_type="http_request",
                request_id=getattr(request.state, "request_id", None),
                actor=_extract_actor(request),
                method=request.method,
                path=request.url.path,
                status_code=status,
                extra=extra,
            )
