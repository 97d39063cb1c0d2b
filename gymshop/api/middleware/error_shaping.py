from __future__ import annotations

import logging
import traceback
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from gymshop.core.errors import ShopError

log = logging.getLogger("gymshop.errors")


def _request_id(request: Request):
    return getattr(request.state, "request_id", None) or request.headers.get("x-request-id")


def shop_error_response(request: Request, exc: ShopError) -> JSONResponse:
    """Renders a domain error; its message is client-safe by construction."""
    if exc.status_code >= 500:
        log.warning(
            "%s rid=%s path=%s detail=%s",
            type(exc).__name__,
            _request_id(request),
            request.url.path,
            exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


class SafeErrorMiddleware(BaseHTTPMiddleware):
    """
    Outermost wrapper.

    ShopError escaping another middleware is rendered like a handler error;
    anything else becomes an opaque 500 carrying the request id, with the
    traceback kept in the server log.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except ShopError as e:
            return shop_error_response(request, e)
        except Exception as e:
            rid = _request_id(request)
            log.error(
                "Unhandled error: %s rid=%s method=%s path=%s\n%s",
                type(e).__name__,
                rid,
                request.method,
                request.url.path,
                traceback.format_exc(),
            )
            payload = {"detail": "Internal Server Error"}
            if rid:
                payload["request_id"] = rid
            return JSONResponse(status_code=500, content=payload)
