# =============================================
# File: bazaar/routers/search.py
# Purpose: Full-text-ish product search ranked by the default strategy
# =============================================
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request

from ..services.context import RequestContext
from ..services.feed import ASSEMBLER, MAX_LIMIT
from . import deps

router = APIRouter(tags=["search"])


@router.get("/search")
async def search(
    request: Request,
    q: str = Query(..., min_length=1, max_length=200),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=MAX_LIMIT),
    ctx: RequestContext = Depends(deps.request_context),
    _: None = Depends(deps.throttle("search")),
) -> Dict[str, Any]:
    result = await deps.run_cancellable(request, ctx, ASSEMBLER.search(q, page, limit, ctx))
    deps.annotate(request, strategy="search", cache=result.cache, q_len=len(q))
    body = result.payload()
    body.update({"query": q.strip(), "page": page})
    return body
