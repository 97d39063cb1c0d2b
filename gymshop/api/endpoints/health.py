from __future__ import annotations

import os
import uuid

from fastapi import APIRouter
from starlette.responses import JSONResponse

from gymshop.core.config import data_root, env_str, is_prod
from gymshop.core.observability.metrics import inc_named

router = APIRouter()


@router.get("/api/v1/health/live")
def liveness():
    inc_named("health_live")
    return {"status": "alive"}


@router.get("/api/v1/health/ready")
def readiness():
    """
    Readiness reflects ability to serve traffic.
    Secrets are only enforced in prod.
    """
    inc_named("health_ready")
    problems: list[str] = []

    if is_prod():
        for env_key in ("GYMSHOP_JWT_ACCESS_SECRET", "GYMSHOP_JWT_REFRESH_SECRET"):
            if not env_str(env_key):
                problems.append(f"missing_env:{env_key}")

    root = data_root()
    try:
        root.mkdir(parents=True, exist_ok=True)
        probe = root / f".ready-{uuid.uuid4().hex}.tmp"
        probe.write_text("ok", encoding="utf-8")
        os.remove(probe)
    except OSError as e:
        problems.append(f"data_root_not_writable:{root} err={type(e).__name__}")

    if problems:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "problems": problems},
        )

    return {"status": "ready"}
