from __future__ import annotations

from typing import Any, Dict, Optional


class ShopError(Exception):
    """Base for errors whose message is safe to show to API clients."""

    status_code = 400

    def __init__(self, message: str, *, status_code: Optional[int] = None, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message}
        payload.update(self.extra)
        return payload


class ValidationFailed(ShopError):
    status_code = 400


class Unauthorized(ShopError):
    status_code = 401


class Forbidden(ShopError):
    status_code = 403


class NotFound(ShopError):
    status_code = 404


class Conflict(ShopError):
    status_code = 409


class GatewayError(ShopError):
    """Upstream payment or geolocation API failure."""

    status_code = 502


class GatewayUnavailable(GatewayError):
    status_code = 503
