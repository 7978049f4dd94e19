# =============================================
# File: bazaar/routers/metrics.py
# Purpose: Expose internal metrics as JSON
# =============================================
from __future__ import annotations
from fastapi import APIRouter

from ..services.bus import BUS
from ..utils.metrics import snapshot
from ..utils.rcache import CACHE

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def get_metrics():
    """Return in-process metrics (JSON)."""
    body = snapshot()
    body["gauges"] = {"cache_entries": len(CACHE), "push_topics": BUS.topics()}
    return body
