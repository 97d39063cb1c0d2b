from __future__ import annotations

import logging
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from gymshop.api.observability.metrics import AUTHZ_DECISIONS_TOTAL, normalize_path
from gymshop.core.auth.models import Principal, anonymous
from gymshop.core.auth.policy import required_role_for
from gymshop.core.auth.provider import AuthError, get_auth_provider
from gymshop.core.auth.rbac import enforce_required_role, primary_role
from gymshop.core.config import env_bool

log = logging.getLogger("gymshop.auth")


def _principal_to_user(principal: Principal) -> dict:
    roles = set(principal.roles or [])
    return {"sub": principal.subject, "role": primary_role(roles), "roles": sorted(roles)}


def _bind(request: Request, principal: Principal) -> None:
    request.state.principal = principal
    request.state.user = _principal_to_user(principal)
    request.state.actor = None if principal.is_anonymous else principal.subject


class AuthMiddleware(BaseHTTPMiddleware):
    """
    Authentication + central RBAC policy for /api/v1.

    No credentials -> anonymous principal; the policy decides whether that is
    enough. Bad credentials on the versioned surface -> 401. With the
    middleware disabled, credentials are still resolved but no policy is
    applied (local development only).
    """

    def __init__(self, app, *, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled
        self.provider = None

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        method = request.method.upper()

        # Public health probes: always unauthenticated
        if path.startswith("/api/v1/health/") or not path.startswith("/api/"):
            _bind(request, anonymous())
            return await call_next(request)

        if self.provider is None:
            self.provider = get_auth_provider()

        try:
            principal = self.provider.authenticate(request) or anonymous()
        except AuthError as e:
            log.info("authn deny method=%s path=%s reason=%s", method, path, str(e))
            return JSONResponse(status_code=401, content={"detail": str(e)})
        _bind(request, principal)

        if not self.enabled:
            return await call_next(request)

        required = required_role_for(method, path)
        if required is not None:
            user_role = request.state.user.get("role")
            allowed = enforce_required_role(user_role=user_role, required_role=required)
            decision = "allow" if allowed else "deny"
            AUTHZ_DECISIONS_TOTAL.labels(
                decision=decision,
                required_role=str(required),
                actual_role=str(user_role),
                method=method,
                path=normalize_path(path),
            ).inc()

            if not allowed:
                log.info(
                    "authz deny subject=%s role=%s required=%s method=%s path=%s",
                    request.state.user.get("sub"),
                    user_role,
                    required,
                    method,
                    path,
                )
                return JSONResponse(
                    status_code=403,
                    content={"detail": "Insufficient role", "required_role": required, "actual_role": user_role},
                )

        return await call_next(request)


def should_enable_auth_middleware() -> bool:
    return env_bool("GYMSHOP_AUTH_ENABLED", True)
