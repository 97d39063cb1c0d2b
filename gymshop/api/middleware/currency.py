from __future__ import annotations

import logging
from typing import Callable

from fastapi import Request
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from gymshop.core.currency import GeoIpClient, client_ip, detect_currency

log = logging.getLogger("gymshop.currency")


def geo_client_for(app) -> GeoIpClient:
    """One GeoIpClient per app; tests swap app.state.geo_client for a fake."""
    geo = getattr(app.state, "geo_client", None)
    if geo is None:
        geo = GeoIpClient()
        app.state.geo_client = geo
    return geo


class CurrencyMiddleware(BaseHTTPMiddleware):
    """
    Resolves the display currency for every API request.

    Sets request.state.currency / request.state.currency_source and echoes them
    as X-Currency / X-Currency-Source.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not request.url.path.startswith("/api/"):
            return await call_next(request)

        fallback = request.client.host if request.client else None
        decision = await run_in_threadpool(
            detect_currency,
            preferred=request.headers.get("x-user-currency"),
            ip=client_ip(request.headers, fallback),
            geo=geo_client_for(request.app),
        )
        request.state.currency = decision.currency
        request.state.currency_source = decision.source
        request.state.country = decision.country

        resp = await call_next(request)
        resp.headers["X-Currency"] = decision.currency
        resp.headers["X-Currency-Source"] = decision.source
        return resp
