# =============================================
# File: bazaar/utils/slog.py
# Purpose: One JSON line per request on the "bazaar" logger, plus the
#          query-shape hash used in cache keys
# =============================================
from __future__ import annotations
import hashlib
import json
import logging
import os
import uuid
from typing import Any, Dict

_LOGGER_NAME = "bazaar"

_logger = logging.getLogger(_LOGGER_NAME)
if not _logger.handlers:
    _logger.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
    _handler = logging.StreamHandler()
    # records are already JSON
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _logger.addHandler(_handler)
    _logger.propagate = True  # pytest caplog


def qhash(params: Dict[str, Any] | str | None) -> str:
    """Short stable hash of a query shape (order-insensitive for dicts, empty values ignored)."""
    if isinstance(params, dict):
        clean = {k: v for k, v in params.items() if v not in (None, "", [], ())}
        text = json.dumps(clean, sort_keys=True, default=str)
    else:
        text = " ".join((params or "").strip().lower().split())
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:10]


def new_request_id() -> str:
    return uuid.uuid4().hex


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status == 429:
        return logging.WARNING
    return logging.INFO


def _emit(level: int, payload: Dict[str, Any]) -> None:
    _logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))


def log_event(event: str, **fields: Any) -> None:
    """Free-form event; `*.error` events go out at ERROR."""
    level = logging.ERROR if event.endswith(".error") else logging.INFO
    _emit(level, {"event": event, **fields})


def finalize_request_log(
    request_id: str,
    method: str,
    path: str,
    status: int,
    latency_ms: int,
    client_ip: str | None,
    ctx: Dict[str, Any] | None = None,
) -> None:
    """request.completed with whatever the handlers annotated (strategy, cache, user...)."""
    payload: Dict[str, Any] = {
        "event": "request.completed",
        "request_id": request_id,
        "method": method,
        "path": path,
        "status": status,
        "latency_ms": latency_ms,
        "client_ip": client_ip or "",
    }
    for key, value in (ctx or {}).items():
        payload.setdefault(key, value)
    _emit(_level_for(status), payload)
