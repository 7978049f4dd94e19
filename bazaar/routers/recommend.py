# =============================================
# File: bazaar/routers/recommend.py
# Purpose: Recommendation feeds per strategy, plus a multi-section page
#          endpoint whose sections share one dedup cycle
# =============================================
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from ..services.context import RequestContext
from ..services.dedup import DEDUP
from ..services.feed import ASSEMBLER, MAX_LIMIT, MAX_WINDOW, TIME_RANGES, FeedRequest
from ..utils.errors import ValidationError
from . import deps

router = APIRouter(prefix="/recommendations", tags=["recommendations"])

# strategies addressable as /recommendations/{strategy}
FEED_STRATEGIES = ("personalized", "feed", "interests", "collaborative", "new", "trending", "default")

# per-section aliases accepted by the page endpoint
_ALIASES = {
    "for_you": "personalized",
    "foryou": "personalized",
    "popular": "trending",
    "latest": "new",
    "recent": "new",
    "tags": "tag",
    "related": "similar",
}


# ---------- Schemas ----------

class Section(BaseModel):
    strategy: str
    limit: int = Field(10, ge=1, le=MAX_LIMIT)
    offset: int = Field(0, ge=0, le=MAX_WINDOW)
    productId: Optional[str] = None
    categoryId: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    timeRange: Optional[str] = None


class PageRequest(BaseModel):
    cycleId: Optional[str] = None
    sections: List[Section] = Field(..., min_length=1, max_length=8)


# ---------- Helpers ----------

def _coerce_section(raw: Dict[str, Any]) -> Section:
    """
    Accept the client variants seen in the wild and normalize them.

    Supported forms:
      1) {"strategy": "trending", "limit": 6}
      2) {"type": "popular", "count": 6}                     (aliases)
      3) {"strategy": "similar", "source": "<productId>"}
    """
    lower = {str(k).lower(): v for k, v in dict(raw or {}).items()}
    strategy = str(lower.get("strategy") or lower.get("type") or "").strip().lower()
    strategy = _ALIASES.get(strategy, strategy)
    if not strategy:
        raise ValidationError("Each section needs a strategy")
    tags = lower.get("tags") or []
    if isinstance(tags, str):
        tags = [t for t in tags.split(",") if t.strip()]
    return Section(
        strategy=strategy,
        limit=lower.get("limit") or lower.get("count") or 10,
        offset=lower.get("offset") or 0,
        productId=lower.get("productid") or lower.get("source") or lower.get("source_id"),
        categoryId=lower.get("categoryid") or lower.get("category"),
        tags=tags,
        timeRange=lower.get("timerange"),
    )


def _feed_request(section: Section) -> FeedRequest:
    return FeedRequest(
        strategy=section.strategy,
        limit=section.limit,
        offset=section.offset,
        source_id=section.productId,
        category_id=section.categoryId,
        tags=tuple(t.strip().lower() for t in section.tags if t.strip()),
        time_range=section.timeRange,
    )


async def _serve(request: Request, ctx: RequestContext, req: FeedRequest) -> Dict[str, Any]:
    result = await deps.run_cancellable(request, ctx, ASSEMBLER.assemble(req, ctx))
    deps.annotate(request, strategy=req.strategy, cache=result.cache, fallback=result.fallback)
    body = result.payload()
    if ctx.cycle_id:
        body["cycleId"] = ctx.cycle_id
    return body


# ---------- Endpoints ----------

@router.get("/similar/{product_id}")
async def similar(
    product_id: str,
    request: Request,
    limit: int = Query(10, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0, le=MAX_WINDOW),
    ctx: RequestContext = Depends(deps.request_context),
    _: None = Depends(deps.throttle("recommendation")),
) -> Dict[str, Any]:
    req = FeedRequest(strategy="similar", limit=limit, offset=offset, source_id=product_id)
    return await _serve(request, ctx, req)


@router.get("/category/{category_id}")
async def by_category(
    category_id: str,
    request: Request,
    limit: int = Query(10, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0, le=MAX_WINDOW),
    ctx: RequestContext = Depends(deps.request_context),
    _: None = Depends(deps.throttle("recommendation")),
) -> Dict[str, Any]:
    req = FeedRequest(strategy="category", limit=limit, offset=offset, category_id=category_id)
    return await _serve(request, ctx, req)


@router.get("/tags")
async def by_tags(
    request: Request,
    tags: str = Query(..., min_length=1),
    limit: int = Query(10, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0, le=MAX_WINDOW),
    ctx: RequestContext = Depends(deps.request_context),
    _: None = Depends(deps.throttle("recommendation")),
) -> Dict[str, Any]:
    tag_list = tuple(sorted({t.strip().lower() for t in tags.split(",") if t.strip()}))
    req = FeedRequest(strategy="tag", limit=limit, offset=offset, tags=tag_list)
    return await _serve(request, ctx, req)


@router.post("/page")
async def page(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    ctx: RequestContext = Depends(deps.request_context),
    _: None = Depends(deps.throttle("recommendation")),
) -> Dict[str, Any]:
    """
    Assemble several sections of one page render.

    Sections are filled in the order given; a product surfaced by an earlier
    section is not repeated by a later one.
    """
    raw_sections = payload.get("sections")
    if not isinstance(raw_sections, list) or not raw_sections:
        raise ValidationError("sections must be a non-empty list")
    try:
        body = PageRequest(
            cycleId=payload.get("cycleId") or ctx.cycle_id,
            sections=[_coerce_section(s) for s in raw_sections if isinstance(s, dict)],
        )
    except SchemaError as e:
        raise ValidationError(f"Invalid section: {e.errors()[0].get('msg', 'invalid value')}") from e
    # a cycle allocated here ends with this request
    owned = not body.cycleId
    ctx.cycle_id = body.cycleId or uuid.uuid4().hex

    out: List[Dict[str, Any]] = []
    try:
        for section in body.sections:
            result = await deps.run_cancellable(request, ctx, ASSEMBLER.assemble(_feed_request(section), ctx))
            out.append(result.payload())
    finally:
        if owned:
            DEDUP.release(ctx.cycle_id)
    deps.annotate(request, strategy="page", sections=[s.strategy for s in body.sections])
    return {"cycleId": ctx.cycle_id, "sections": out}


@router.get("/{strategy}")
async def by_strategy(
    strategy: str,
    request: Request,
    limit: int = Query(10, ge=1, le=MAX_LIMIT),
    offset: int = Query(0, ge=0, le=MAX_WINDOW),
    timeRange: Optional[str] = None,
    ctx: RequestContext = Depends(deps.request_context),
    _: None = Depends(deps.throttle("recommendation")),
) -> Dict[str, Any]:
    if strategy not in FEED_STRATEGIES:
        raise ValidationError(f"Unknown strategy '{strategy}'")
    if timeRange is not None and (strategy != "trending" or timeRange not in TIME_RANGES):
        raise ValidationError("timeRange must be one of 1d, 7d, 30d and only applies to trending")
    req = FeedRequest(strategy=strategy, limit=limit, offset=offset, time_range=timeRange)
    return await _serve(request, ctx, req)
