"""
Environment-driven configuration.

Values are read at call time so that tests (and long-running processes that
get their env rotated) see the current environment. Every application knob
uses the GYMSHOP_ prefix; gateway credentials keep their vendor names
(PAYMOB_*, TABBY_*, FINDIP_API_KEY).
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

_log = logging.getLogger("gymshop.config")

_TRUTHY = ("1", "true", "yes", "on")


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return default
    v = v.strip()
    return v if v else default


def env_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return v.strip().lower() in _TRUTHY


def env_int(name: str, default: int) -> int:
    raw = env_str(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


def env_float(name: str, default: float) -> float:
    raw = env_str(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        _log.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def runtime_env() -> str:
    return (env_str("GYMSHOP_ENV", "dev") or "dev").lower()


def is_prod() -> bool:
    return runtime_env() == "prod"


def data_root() -> Path:
    return Path(env_str("GYMSHOP_DATA_ROOT", ".gymshop/data") or ".gymshop/data")


def frontend_url() -> str:
    return (env_str("FRONTEND_URL", "http://localhost:5173") or "").rstrip("/")


def backend_base_url() -> str:
    return (env_str("BASE_URL", "http://localhost:8001") or "").rstrip("/")


def api_url(path: str) -> str:
    """Absolute URL of a versioned route; BASE_URL may or may not already end in /api."""
    base = backend_base_url()
    if not base.endswith("/api/v1"):
        base = f"{base}/v1" if base.endswith("/api") else f"{base}/api/v1"
    return f"{base}/{path.lstrip('/')}"
