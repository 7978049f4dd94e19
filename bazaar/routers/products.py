# =============================================
# File: bazaar/routers/products.py
# Purpose: Product catalog endpoints: list, trending, detail, owner writes,
#          upvote/bookmark toggles and comments
# =============================================
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from pydantic import BaseModel, Field, field_validator

from ..services import gate
from ..services.bus import BUS
from ..services.catalog import CATALOG, ProductIn, ProductPatch
from ..services.context import RequestContext
from ..services.feed import ASSEMBLER
from ..services.gate import GATE
from ..services.interactions import STORE
from ..utils import cache_keys, slog
from ..utils.config import cache_ttl
from ..utils.rcache import CACHE
from . import deps

router = APIRouter(prefix="/products", tags=["products"])


# --------- Schemas ---------

class CommentIn(BaseModel):
    text: str = Field(..., min_length=1, max_length=2000)

    @field_validator("text")
    @classmethod
    def _trim_text(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("comment must not be empty")
        return v


def _split_tags(raw: Optional[str]) -> List[str]:
    return [t.strip().lower() for t in (raw or "").split(",") if t.strip()]


# --------- Reads ---------

@router.get("")
async def list_products(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort: Literal["newest", "oldest", "popular", "upvotes", "views", "comments"] = "newest",
    category: Optional[str] = None,
    tags: Optional[str] = None,
    search: Optional[str] = None,
    ctx: RequestContext = Depends(deps.request_context),
    _: None = Depends(deps.throttle("generic")),
) -> Dict[str, Any]:
    tag_list = _split_tags(tags)
    qh = slog.qhash({"sort": sort, "category": category, "tags": tag_list, "q": search, "admin": ctx.is_admin})
    key = cache_keys.products_list(ctx.cache_user, page, limit, qh)
    fresh, stale = cache_ttl(cache_keys.ttl_family(key))

    async def _load():
        return await asyncio.to_thread(
            CATALOG.list_products, ctx, page=page, limit=limit, sort=sort, category=category, tags=tag_list, search=search
        )

    body, hit = await CACHE.get_or_load(key, _load, fresh, stale, tags=("products",))
    deps.annotate(request, cache=hit)
    return body


@router.get("/trending")
async def trending_products(
    request: Request,
    timeRange: str = Query("7d"),
    limit: int = Query(10, ge=1, le=50),
    ctx: RequestContext = Depends(deps.request_context),
    _: None = Depends(deps.throttle("recommendation")),
) -> Dict[str, Any]:
    result = await deps.run_cancellable(request, ctx, ASSEMBLER.trending_products(timeRange, limit, ctx))
    deps.annotate(request, strategy="trending", cache=result.cache)
    body = result.payload()
    body["timeRange"] = timeRange
    return body


@router.get("/{slug}")
async def product_detail(
    slug: str,
    request: Request,
    ctx: RequestContext = Depends(deps.request_context),
    _: None = Depends(deps.throttle("generic")),
) -> Dict[str, Any]:
    key = cache_keys.product_detail(slug, ctx.cache_user)
    fresh, stale = cache_ttl(cache_keys.ttl_family(key))

    async def _load():
        return await asyncio.to_thread(CATALOG.product_detail, ctx, slug)

    body, hit = await CACHE.get_or_load(key, _load, fresh, stale, tags=("products", f"product:{slug}"))
    deps.annotate(request, cache=hit)
    return {"success": True, "data": body}


# --------- Owner writes ---------

@router.post("", status_code=201)
async def create_product(
    data: ProductIn,
    ctx: RequestContext = Depends(deps.authenticated_context),
    _: None = Depends(deps.throttle("generic")),
) -> Dict[str, Any]:
    body = await asyncio.to_thread(CATALOG.create_product, ctx, data)
    return {"success": True, "data": body}


@router.patch("/{slug}")
async def update_product(
    slug: str,
    patch: ProductPatch,
    ctx: RequestContext = Depends(deps.authenticated_context),
    _: None = Depends(deps.throttle("generic")),
) -> Dict[str, Any]:
    body = await asyncio.to_thread(CATALOG.update_product, ctx, slug, patch)
    return {"success": True, "data": body}


@router.delete("/{slug}")
async def delete_product(
    slug: str,
    ctx: RequestContext = Depends(deps.authenticated_context),
    _: None = Depends(deps.throttle("generic")),
) -> Dict[str, Any]:
    return await asyncio.to_thread(CATALOG.delete_product, ctx, slug)


# --------- Toggles ---------

async def _toggle(kind: str, slug: str, request: Request, ctx: RequestContext):
    product = await asyncio.to_thread(CATALOG.get, slug)
    GATE.check(gate.TOGGLE, ctx, product, kind)
    toggle = STORE.toggle_upvote if kind == "upvote" else STORE.toggle_bookmark
    result = await asyncio.to_thread(toggle, ctx.user_id, product.id, BUS.on_toggle)
    deps.annotate(request, product_id=product.id, action=kind, active=result.now_active)
    return result


@router.post("/{slug}/upvote")
async def upvote(
    slug: str,
    request: Request,
    ctx: RequestContext = Depends(deps.authenticated_context),
    _: None = Depends(deps.throttle("interaction")),
) -> Dict[str, Any]:
    result = await _toggle("upvote", slug, request, ctx)
    return {"success": True, "upvoted": result.now_active, "upvoteCount": result.new_count}


@router.post("/{slug}/bookmark")
async def bookmark(
    slug: str,
    request: Request,
    ctx: RequestContext = Depends(deps.authenticated_context),
    _: None = Depends(deps.throttle("interaction")),
) -> Dict[str, Any]:
    result = await _toggle("bookmark", slug, request, ctx)
    return {"success": True, "bookmarked": result.now_active, "bookmarkCount": result.new_count}


# --------- Comments ---------

@router.post("/{slug}/comments", status_code=201)
async def add_comment(
    slug: str,
    payload: CommentIn = Body(...),
    ctx: RequestContext = Depends(deps.authenticated_context),
    _: None = Depends(deps.throttle("interaction")),
) -> Dict[str, Any]:
    product = await asyncio.to_thread(CATALOG.get, slug)
    GATE.check(gate.COMMENT, ctx, product, "comment on")
    body = await asyncio.to_thread(STORE.add_comment, ctx.user_id, product.id, payload.text)
    BUS.on_comment(product.id, product.slug, ctx.user_id)
    return {"success": True, **body}


@router.delete("/{slug}/comments/{comment_id}")
async def remove_comment(
    slug: str,
    comment_id: int,
    ctx: RequestContext = Depends(deps.authenticated_context),
    _: None = Depends(deps.throttle("interaction")),
) -> Dict[str, Any]:
    product = await asyncio.to_thread(CATALOG.require, slug)
    body = await asyncio.to_thread(STORE.remove_comment, ctx.user_id, comment_id, ctx.is_admin, product.id)
    BUS.on_comment(product.id, product.slug, ctx.user_id)
    return {"success": True, **body}
