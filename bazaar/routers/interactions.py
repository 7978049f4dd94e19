# =============================================
# File: bazaar/routers/interactions.py
# Purpose: View and impression tracking behind the abuse gate
# =============================================
from __future__ import annotations

import asyncio
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field

from ..services import gate
from ..services.bus import BUS
from ..services.catalog import CATALOG
from ..services.context import RequestContext
from ..services.gate import GATE
from ..services.interactions import STORE
from . import deps

router = APIRouter(tags=["interactions"])


# --------- Schemas ---------

class ViewMetadata(BaseModel):
    duration: Optional[float] = Field(None, ge=0)
    scrolls: int = Field(0, ge=0)
    mouseMoves: int = Field(0, ge=0)
    keyEvents: int = Field(0, ge=0)
    sessionId: Optional[str] = Field(None, max_length=128)


class InteractionIn(BaseModel):
    """
    Incoming tracking payload.
    - productId: product id or slug.
    - type: "view" is stored; "impression" is only logged.
    - source: where the product was shown (feed section, search, detail...).
    - position: rank within that surface, when known.
    - metadata: engagement signals used to tell humans from bots.
    """
    productId: str = Field(..., min_length=1, max_length=140)
    type: Literal["view", "impression"] = "view"
    source: Optional[str] = Field(None, max_length=64)
    position: Optional[int] = Field(None, ge=0)
    metadata: ViewMetadata = Field(default_factory=ViewMetadata)


@router.post("/interactions")
async def record_interaction(
    payload: InteractionIn,
    request: Request,
    ctx: RequestContext = Depends(deps.request_context),
    _: None = Depends(deps.throttle("view")),
) -> Dict[str, Any]:
    product = await asyncio.to_thread(CATALOG.get, payload.productId)
    GATE.check(gate.VIEW, ctx, product, "view")
    meta = payload.metadata
    deps.annotate(request, product_id=product.id, action=payload.type, source=payload.source)

    if payload.type == "impression":
        logger.debug(f"[interactions] impression product={product.id} source={payload.source} pos={payload.position}")
        return {"success": True, "recorded": False, "type": "impression"}

    if ctx.user_id and product.maker_id == ctx.user_id:
        # makers browsing their own page are not counted
        return {"success": True, "recorded": False, "isBot": ctx.is_bot, "viewCount": product.view_count}

    is_bot = GATE.view_is_bot(ctx, meta.duration, meta.scrolls, meta.mouseMoves, meta.keyEvents)
    result = await asyncio.to_thread(
        STORE.record_view,
        product.id,
        None if ctx.is_bot else ctx.user_id,
        meta.sessionId,
        client_ip=ctx.ip,
        source=payload.source,
        position=payload.position,
        duration=meta.duration or 0.0,
        scrolls=meta.scrolls,
        mouse_moves=meta.mouseMoves,
        key_events=meta.keyEvents,
        is_bot=is_bot,
    )
    if not is_bot:
        BUS.on_view(product.id, product.slug, ctx.user_id)
    deps.annotate(request, view_is_bot=is_bot)
    return {
        "success": True,
        "recorded": result.recorded,
        "isBot": result.is_bot,
        "viewCount": result.view_count,
        "uniqueViewerCount": result.unique_viewer_count,
    }
