from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from gymshop.api.endpoints import auth as auth_ep
from gymshop.api.endpoints import cart, catalog, coupons, currency, dashboard, health
from gymshop.api.endpoints import loyalty, metrics_export, orders, payments, paymob
from gymshop.api.endpoints import programmes, rewards, subscriptions, tabby
from gymshop.api.middleware.audit import AuditMiddleware
from gymshop.api.middleware.auth import AuthMiddleware, should_enable_auth_middleware
from gymshop.api.middleware.currency import CurrencyMiddleware
from gymshop.api.middleware.error_shaping import SafeErrorMiddleware, shop_error_response
from gymshop.api.middleware.request_context import (
    RateLimitMiddleware,
    RequestContextMiddleware,
    SecurityHeadersMiddleware,
)
from gymshop.core.config import env_bool, env_int, env_str, is_prod, runtime_env
from gymshop.core.errors import ShopError

app = FastAPI(
    title="Gymshop API",
    version="0.1.0",
)

# ------------------------------------------------------------
# Middleware stack (ORDER MATTERS)
# Starlette reverses add_middleware order: the LAST call is the OUTERMOST wrapper.
# Runtime order (outermost -> innermost):
#   SafeErrorMiddleware -> CORSMiddleware -> SecurityHeaders -> RateLimit
#   -> RequestContext -> Audit -> Currency -> Auth -> handler
# ------------------------------------------------------------

# Auth boundary (innermost, added first)
app.add_middleware(AuthMiddleware, enabled=should_enable_auth_middleware())

# Currency detection (needs no principal, but audit wants the result)
app.add_middleware(CurrencyMiddleware)

# Audit (sees actor + currency once the inner layers ran)
app.add_middleware(AuditMiddleware)

# Request context (request_id + metrics increment)
app.add_middleware(RequestContextMiddleware)

# Rate limiting (off by default)
app.add_middleware(
    RateLimitMiddleware,
    enabled=env_bool("GYMSHOP_RATE_LIMIT_ENABLED", False),
    rpm=env_int("GYMSHOP_RATE_LIMIT_RPM", 120),
)

# Security headers (on in prod by default)
app.add_middleware(SecurityHeadersMiddleware, enabled=env_bool("GYMSHOP_SECURITY_HEADERS_ENABLED", is_prod()))

# CORS second-to-last so OPTIONS preflight never reaches Auth
_cors_origins_raw = env_str("GYMSHOP_CORS_ORIGINS", "") or ""
_cors_origins = [o.strip() for o in _cors_origins_raw.split(",") if o.strip()] or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id", "X-Currency", "X-Currency-Source"],
)

# SafeErrorMiddleware LAST = outermost
app.add_middleware(SafeErrorMiddleware)


@app.exception_handler(ShopError)
async def _shop_error(request: Request, exc: ShopError):
    return shop_error_response(request, exc)


# ------------------------------------------------------------
# Routers
# ------------------------------------------------------------
app.include_router(health.router)
app.include_router(metrics_export.router)

for module in (
    auth_ep,
    currency,
    # /programmes/mine must register ahead of /programmes/{programme_id}
    programmes,
    catalog,
    coupons,
    cart,
    orders,
    subscriptions,
    loyalty,
    rewards,
    # gateway routers ahead of the generic /payments/{payment_id} routes
    paymob,
    tabby,
    payments,
    dashboard,
):
    app.include_router(module.router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "healthy", "env": runtime_env()}
