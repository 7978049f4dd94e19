# =============================================
# File: bazaar/services/candidates.py
# Purpose: Candidate fetcher. Turns a query shape into a bounded list of
#          Candidate records enriched with counters, recent-window subcounts,
#          maker/category summaries and age.
# =============================================

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Dict, List, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import String, cast, or_
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from ..db import repo
from ..db.models import Category, Product, User
from ..utils.errors import Timeout, Upstream
from ..utils.records import Candidate
from ..utils.timing import CancellationToken, Deadline, fetch_deadline_seconds, utcnow
from .interactions import STORE, InteractionStore

MAX_CANDIDATES = 300
OVERFETCH = 3

SortKey = Literal["newest", "oldest", "popular", "upvotes", "views", "comments"]


def _like_literal(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CandidateQuery(BaseModel):
    status: Optional[str] = None
    category_ids: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    search: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    exclude_ids: List[str] = Field(default_factory=list)
    include_ids: Optional[List[str]] = None
    maker_id: Optional[str] = None
    sort: SortKey = "newest"

    @field_validator("tags")
    @classmethod
    def _lower_tags(cls, v: List[str]) -> List[str]:
        return sorted({t.strip().lower() for t in v if t and t.strip()})

    @field_validator("search")
    @classmethod
    def _trim_search(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip()
        return v or None


_SORT_COLUMNS = {
    "newest": Product.created_at.desc(),
    "oldest": Product.created_at.asc(),
    "popular": Product.upvote_count.desc(),
    "upvotes": Product.upvote_count.desc(),
    "views": Product.view_count.desc(),
    "comments": Product.comment_count.desc(),
}


class CandidateFetcher:
    def __init__(self, store: InteractionStore = STORE) -> None:
        self._store = store

    def fetch_sync(
        self,
        query: CandidateQuery,
        limit: int,
        *,
        is_admin: bool = False,
        overfetch: int = OVERFETCH,
        window_days: int = 7,
        now: Optional[datetime] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[Candidate]:
        """Blocking fetch. Returns at most min(limit * overfetch, MAX_CANDIDATES) records."""
        cap = max(0, min(limit * max(1, min(overfetch, OVERFETCH)), MAX_CANDIDATES))
        if cap == 0:
            return []
        now = now or utcnow()
        if token is not None:
            token.raise_if_cancelled()

        stmt = select(Product)
        status = query.status or (None if is_admin else "Published")
        if status:
            stmt = stmt.where(Product.status == status)
        if not is_admin:
            stmt = stmt.where(Product.visibility == "public")
        if query.category_ids:
            stmt = stmt.where(Product.category_id.in_(query.category_ids))
        if query.tags:
            as_text = cast(Product.tags, String)
            # match the stored JSON text of each tag, escapes included
            stmt = stmt.where(
                or_(*[as_text.like(f"%{_like_literal(json.dumps(t))}%", escape="\\") for t in query.tags])
            )
        if query.search:
            pattern = f"%{query.search.lower()}%"
            stmt = stmt.where(
                or_(
                    Product.name.ilike(pattern),
                    Product.tagline.ilike(pattern),
                    Product.description.ilike(pattern),
                )
            )
        if query.price_min is not None:
            stmt = stmt.where(Product.price >= query.price_min)
        if query.price_max is not None:
            stmt = stmt.where(Product.price <= query.price_max)
        if query.created_after is not None:
            stmt = stmt.where(Product.created_at >= query.created_after)
        if query.created_before is not None:
            stmt = stmt.where(Product.created_at <= query.created_before)
        if query.exclude_ids:
            stmt = stmt.where(Product.id.not_in(query.exclude_ids))
        if query.include_ids is not None:
            if not query.include_ids:
                return []
            stmt = stmt.where(Product.id.in_(query.include_ids))
        if query.maker_id:
            stmt = stmt.where(Product.maker_id == query.maker_id)

        # stable: sort criterion, then createdAt desc, then id asc
        stmt = stmt.order_by(_SORT_COLUMNS[query.sort], Product.created_at.desc(), Product.id.asc()).limit(cap)

        try:
            with repo.session() as s:
                products = list(s.exec(stmt))
                if token is not None:
                    token.raise_if_cancelled()
                cat_ids = {p.category_id for p in products if p.category_id}
                maker_ids = {p.maker_id for p in products}
                categories: Dict[str, Category] = (
                    {c.id: c for c in s.exec(select(Category).where(Category.id.in_(cat_ids)))} if cat_ids else {}
                )
                makers: Dict[str, User] = (
                    {u.id: u for u in s.exec(select(User).where(User.id.in_(maker_ids)))} if maker_ids else {}
                )
        except OperationalError as e:
            logger.warning(f"[candidates] store unavailable: {e!r}")
            raise Upstream("Product store unavailable") from e

        counters = self._store.product_counters([p.id for p in products], window_days=window_days)
        out: List[Candidate] = []
        for p in products:
            cnt = counters.get(p.id)
            cat = categories.get(p.category_id) if p.category_id else None
            maker = makers.get(p.maker_id)
            out.append(
                Candidate(
                    id=p.id,
                    slug=p.slug,
                    name=p.name,
                    maker_id=p.maker_id,
                    created_at=p.created_at,
                    category_id=p.category_id,
                    category_name=cat.name if cat else "",
                    maker_name=(f"{maker.first_name} {maker.last_name}".strip() if maker else ""),
                    tagline=p.tagline,
                    tags=tuple(p.tags or ()),
                    status=p.status,
                    price=p.price,
                    upvotes=cnt.upvotes if cnt else p.upvote_count,
                    bookmarks=cnt.bookmarks if cnt else p.bookmark_count,
                    comments=cnt.comments if cnt else p.comment_count,
                    views=cnt.views if cnt else p.view_count,
                    unique_viewers=cnt.unique_viewers if cnt else p.unique_viewer_count,
                    recent_views=cnt.recent_views if cnt else 0,
                    recent_upvotes=cnt.recent_upvotes if cnt else 0,
                    recent_comments=cnt.recent_comments if cnt else 0,
                    recent_bookmarks=cnt.recent_bookmarks if cnt else 0,
                    window_days=window_days,
                    age_in_days=max(0.0, (now - p.created_at).total_seconds() / 86400.0),
                )
            )
        return out

    async def fetch(
        self,
        query: CandidateQuery,
        limit: int,
        *,
        is_admin: bool = False,
        deadline: Optional[Deadline] = None,
        token: Optional[CancellationToken] = None,
        overfetch: int = OVERFETCH,
        window_days: int = 7,
        now: Optional[datetime] = None,
    ) -> List[Candidate]:
        """Run the blocking fetch off the event loop under the fetch sub-deadline."""
        budget = fetch_deadline_seconds()
        if deadline is not None:
            budget = deadline.sub(budget)
        if budget <= 0:
            raise Timeout("Request deadline exceeded before fetch")
        try:
            found = await asyncio.wait_for(
                asyncio.to_thread(
                    self.fetch_sync,
                    query,
                    limit,
                    is_admin=is_admin,
                    overfetch=overfetch,
                    window_days=window_days,
                    now=now,
                    token=token,
                ),
                timeout=budget,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"[candidates] fetch exceeded {budget:.2f}s")
            raise Timeout("Candidate fetch timed out") from e
        if token is not None:
            token.raise_if_cancelled()
        return found


FETCHER = CandidateFetcher()
