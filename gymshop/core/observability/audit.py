import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_AUDIT_PATH = Path(".gymshop") / "audit.log"

# 10MB max per file, 5 backups
_MAX_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 5

_handler_cache: Dict[str, logging.Handler] = {}


def _now_ms() -> int:
    return int(time.time() * 1000)


def audit_path() -> Path:
    raw = (os.getenv("GYMSHOP_AUDIT_PATH") or "").strip()
    return Path(raw) if raw else DEFAULT_AUDIT_PATH


def _get_rotating_handler(path: Path) -> logging.Handler:
    key = str(path.resolve())
    if key not in _handler_cache:
        path.parent.mkdir(parents=True, exist_ok=True)
        h = logging.handlers.RotatingFileHandler(
            str(path),
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
        h.setFormatter(logging.Formatter("%(message)s"))
        _handler_cache[key] = h
    return _handler_cache[key]


def _emit(record: Dict[str, Any], path: Optional[Path]) -> None:
    line = json.dumps(record, separators=(",", ":"), ensure_ascii=False, default=str)
    handler = _get_rotating_handler(path or audit_path())
    handler.emit(
        logging.LogRecord(
            name="gymshop.audit",
            level=logging.INFO,
            pathname="",
            lineno=0,
            msg=line,
            args=(),
            exc_info=None,
        )
    )


def audit_event(
    event_type: str,
    request_id: Optional[str],
    actor: Optional[str],
    method: Optional[str],
    path: Optional[str],
    status_code: Optional[int],
    extra: Optional[Dict[str, Any]] = None,
    audit_file: Optional[Path] = None,
) -> None:
    record: Dict[str, Any] = {
        "ts_ms": _now_ms(),
        "type": event_type,
        "request_id": request_id,
        "actor": actor,
        "http": {
            "method": method,
            "path": path,
            "status": status_code,
        },
    }
    if extra:
        record["extra"] = extra
    _emit(record, audit_file)


def audit_payment(
    payment_id: str,
    *,
    provider: str,
    old_status: Optional[str],
    new_status: str,
    reference: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    audit_file: Optional[Path] = None,
) -> None:
    record: Dict[str, Any] = {
        "ts_ms": _now_ms(),
        "type": "payment_status",
        "payment_id": payment_id,
        "provider": provider,
        "reference": reference,
        "from": old_status,
        "to": new_status,
    }
    if extra:
        record["extra"] = extra
    _emit(record, audit_file)
