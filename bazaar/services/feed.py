# =============================================
# File: bazaar/services/feed.py
# Purpose: Feed assembler. Strategy -> candidate pool -> scores -> cross-section
#          dedup -> greedy diversified selection -> page, behind the cache.
# =============================================

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from ..utils import cache_keys, metrics, slog
from ..utils.config import STRATEGIES, ScoringWeights, cache_ttl, scoring_weights
from ..utils.errors import NotFound, RequestCancelled, Timeout, Upstream, ValidationError
from ..utils.explain import explain
from ..utils.rcache import CACHE, Cache
from ..utils.records import Candidate, ScoreDetail, Scored, flatten, rank_key
from ..utils.scoring import ScoringContext, base_detail, diversity_score, finalize
from .candidates import FETCHER, CandidateFetcher, CandidateQuery
from .context import RequestContext
from .dedup import DEDUP, Deduplicator
from .profiles import PROFILE_STORE, ProfileStore

CATEGORY_SHARE = 0.6
MAKER_SHARE = 0.4
MAX_LIMIT = 50
MAX_WINDOW = 100

TIME_RANGES = {"1d": 1, "7d": 7, "30d": 30}
NEW_DAYS = 30

# share of the merged pool each source contributes to the blended feed
FEED_BLEND_AUTHENTICATED = {
    "trending": 0.25,
    "personalized": 0.2,
    "new": 0.15,
    "collaborative": 0.15,
    "interests": 0.15,
    "default": 0.1,
}
FEED_BLEND_ANONYMOUS = {
    "trending": 0.4,
    "new": 0.3,
    "default": 0.3,
}

PERSONAL = ("personalized", "interests", "collaborative")


@dataclass
class FeedRequest:
    strategy: str
    limit: int = 10
    offset: int = 0
    source_id: Optional[str] = None
    category_id: Optional[str] = None
    tags: Tuple[str, ...] = ()
    time_range: Optional[str] = None
    search: Optional[str] = None

    def params(self) -> Dict[str, Any]:
        return {
            "source": self.source_id,
            "category": self.category_id,
            "tags": list(self.tags),
            "range": self.time_range,
            "q": self.search,
        }


@dataclass
class PoolItem:
    candidate: Candidate
    detail: ScoreDetail
    origin: str

    def preview(self) -> float:
        """Final score with no diversity pressure; used to rank and merge pools."""
        return finalize(self.candidate, replace(self.detail), self.origin, 1.0).final


@dataclass
class FeedResult:
    strategy: str
    items: List[Scored] = field(default_factory=list)
    cache: str = "miss"
    fallback: bool = False

    def payload(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "count": len(self.items),
            "recommendations": flatten(self.items),
            "cache": self.cache,
        }


# ---------------------------------------------------------------------
# Greedy diversified selection
# ---------------------------------------------------------------------

def _caps(n: int) -> Tuple[int, int]:
    return math.ceil(n * CATEGORY_SHARE), math.ceil(n * MAKER_SHARE)


def _greedy(
    pool: Sequence[PoolItem],
    n: int,
    weights: ScoringWeights,
    category_cap: bool,
    exclude: FrozenSet[str],
    token=None,
) -> List[Scored]:
    cat_cap, maker_cap = _caps(n)
    enforce = n >= 3
    chosen: List[Scored] = []
    chosen_c: List[Candidate] = []
    by_cat: Dict[str, int] = {}
    by_maker: Dict[str, int] = {}
    remaining = [p for p in pool if p.candidate.id not in exclude]

    while len(chosen) < n and remaining:
        if token is not None:
            token.raise_if_cancelled()
        best: Optional[Scored] = None
        best_item: Optional[PoolItem] = None
        for item in remaining:
            c = item.candidate
            if enforce:
                if category_cap and c.category_id and by_cat.get(c.category_id, 0) >= cat_cap:
                    continue
                if by_maker.get(c.maker_id, 0) >= maker_cap:
                    continue
            detail = finalize(c, replace(item.detail), item.origin, diversity_score(c, chosen_c, weights))
            scored = Scored(candidate=c, detail=detail, reason=item.origin)
            if best is None or rank_key(scored) < rank_key(best):
                best, best_item = scored, item
        if best is None or best_item is None:
            break
        chosen.append(best)
        chosen_c.append(best.candidate)
        if best.candidate.category_id:
            by_cat[best.candidate.category_id] = by_cat.get(best.candidate.category_id, 0) + 1
        by_maker[best.candidate.maker_id] = by_maker.get(best.candidate.maker_id, 0) + 1
        remaining.remove(best_item)
    return chosen


def select_diverse(
    pool: Sequence[PoolItem],
    n: int,
    weights: ScoringWeights,
    *,
    category_cap: bool = True,
    exclude: Iterable[str] = (),
    token=None,
) -> List[Scored]:
    """Pick up to n items; no category above ceil(L*0.6), no maker above ceil(L*0.4).

    Caps are relative to the final length L, so a short pick is retried with the
    smaller target until the length is stable.
    """
    excluded = frozenset(exclude)
    target = max(0, n)
    while target > 0:
        picked = _greedy(pool, target, weights, category_cap, excluded, token)
        if len(picked) >= target or len(picked) < 3:
            return picked
        target = len(picked)
    return []


# ---------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------

class FeedAssembler:
    def __init__(
        self,
        fetcher: CandidateFetcher = FETCHER,
        profiles: ProfileStore = PROFILE_STORE,
        cache: Cache = CACHE,
        dedup: Deduplicator = DEDUP,
    ) -> None:
        self._fetcher = fetcher
        self._profiles = profiles
        self._cache = cache
        self._dedup = dedup

    # ---------- public ----------

    async def assemble(
        self,
        req: FeedRequest,
        ctx: RequestContext,
        *,
        cache_key: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> FeedResult:
        if req.strategy not in STRATEGIES:
            raise ValidationError(f"Unknown strategy '{req.strategy}'")
        req.limit = max(1, min(req.limit, MAX_LIMIT))
        req.offset = max(0, min(req.offset, MAX_WINDOW))
        weights = scoring_weights()

        key = cache_key or cache_keys.recommendations(
            req.strategy, ctx.cache_user, req.limit, req.offset, slog.qhash(req.params())
        )
        fresh, stale = cache_ttl(cache_keys.ttl_family(key))

        async def _load():
            return await self._pool(req, ctx, weights)

        async def _refresh():
            # detached from the request: own deadline and token, never cancelled by the caller
            bg = RequestContext(
                user_id=ctx.user_id,
                is_admin=ctx.is_admin,
                is_bot=ctx.is_bot,
                ip=ctx.ip,
                user=ctx.user,
            )
            return await self._pool(req, bg, weights)

        result = FeedResult(strategy=req.strategy)
        try:
            (pool, effective), result.cache = await self._cache.get_or_load(
                key,
                _load,
                fresh,
                stale,
                tags=("recommendations", f"strategy:{req.strategy}"),
                refresh_loader=_refresh,
            )
        except (Upstream, Timeout) as e:
            metrics.incr("feed_fallbacks_total")
            last = self._cache.last_known(key)
            logger.warning(
                f"[feed] {type(e).__name__} for strategy={req.strategy}; "
                f"serving {'last known' if last is not None else 'empty'} result"
            )
            pool, effective = last if last is not None else ([], req.strategy)
            result.cache = "fallback"
            result.fallback = True

        result.strategy = effective
        items = self._select(pool, req, ctx, weights)
        for s in items:
            if reason:
                s.reason = reason
            s.detail.explanation = explain(s.candidate, s.reason, s.detail)
        result.items = items
        logger.debug(
            f"[feed] strategy={req.strategy} effective={effective} user={ctx.cache_user or 'anon'} "
            f"pool={len(pool)} picks={len(items)} cache={result.cache}"
        )
        return result

    async def trending_products(self, time_range: str, limit: int, ctx: RequestContext) -> FeedResult:
        if time_range not in TIME_RANGES:
            raise ValidationError("timeRange must be one of 1d, 7d, 30d")
        req = FeedRequest(strategy="trending", limit=limit, time_range=time_range)
        key = cache_keys.products_trending(time_range, max(1, min(limit, MAX_LIMIT)))
        # the key is shared by every caller, so the pool is built with public visibility
        return await self.assemble(req, replace(ctx, is_admin=False), cache_key=key)

    async def search(self, q: str, page: int, limit: int, ctx: RequestContext) -> FeedResult:
        text = (q or "").strip()
        if not text:
            raise ValidationError("Search query is required")
        page = max(1, page)
        limit = max(1, min(limit, MAX_LIMIT))
        if (page - 1) * limit > MAX_WINDOW:
            raise ValidationError(f"Search results stop at offset {MAX_WINDOW}; page {page} is out of range")
        req = FeedRequest(strategy="default", limit=limit, offset=(page - 1) * limit, search=text)
        key = cache_keys.search(ctx.cache_user, page, slog.qhash({"q": text.lower(), "limit": limit}))
        return await self.assemble(req, ctx, cache_key=key, reason="search")

    # ---------- selection ----------

    def _select(
        self,
        pool: Sequence[PoolItem],
        req: FeedRequest,
        ctx: RequestContext,
        weights: ScoringWeights,
    ) -> List[Scored]:
        exclude = set()
        if req.source_id:
            exclude.add(req.source_id)
        if ctx.cycle_id:
            exclude |= self._dedup.claimed(ctx.cycle_id)
        category_cap = req.strategy != "category"

        if req.offset:
            head = select_diverse(pool, req.offset, weights, category_cap=category_cap, exclude=exclude, token=ctx.token)
            exclude |= {s.candidate.id for s in head}
        items = select_diverse(pool, req.limit, weights, category_cap=category_cap, exclude=exclude, token=ctx.token)

        if ctx.cycle_id and items:
            claimed = set(self._dedup.claim(ctx.cycle_id, [s.candidate.id for s in items], len(items)))
            items = [s for s in items if s.candidate.id in claimed]
        return items

    # ---------- pools ----------

    async def _fetch(
        self,
        query: CandidateQuery,
        n: int,
        ctx: RequestContext,
        window_days: int = 7,
    ) -> List[Candidate]:
        return await self._fetcher.fetch(
            query,
            n,
            is_admin=ctx.is_admin,
            deadline=ctx.deadline,
            token=ctx.token,
            window_days=window_days,
            now=ctx.now,
        )

    def _score(
        self,
        candidates: Iterable[Candidate],
        strategy: str,
        ctx: RequestContext,
        weights: ScoringWeights,
        **extra: Any,
    ) -> List[PoolItem]:
        sctx = ScoringContext(strategy=strategy, weights=weights, time=ctx.time, user=ctx.user, now=ctx.now, **extra)
        out: List[PoolItem] = []
        for c in candidates:
            ctx.token.raise_if_cancelled()
            if ctx.deadline.expired:
                raise Timeout("Request deadline exceeded while scoring")
            out.append(PoolItem(candidate=c, detail=base_detail(c, sctx), origin=strategy))
        out.sort(key=lambda p: (-p.preview(), p.candidate.created_at, p.candidate.id))
        return out

    @staticmethod
    def _merge(*groups: Iterable[Candidate]) -> List[Candidate]:
        seen: Dict[str, Candidate] = {}
        for group in groups:
            for c in group:
                seen.setdefault(c.id, c)
        return list(seen.values())

    def _not_mine(self, cands: Iterable[Candidate], ctx: RequestContext) -> List[Candidate]:
        if not ctx.user_id:
            return list(cands)
        return [c for c in cands if c.maker_id != ctx.user_id]

    async def _pool(self, req: FeedRequest, ctx: RequestContext, weights: ScoringWeights) -> Tuple[List[PoolItem], str]:
        """Scored candidate pool for the strategy and the strategy actually used."""
        n = req.offset + req.limit
        strategy = req.strategy
        user = ctx.user

        if strategy in PERSONAL and not user.is_authenticated:
            strategy = "trending"
        if strategy == "interests" and not user.has_interests:
            strategy = "trending"

        if strategy == "collaborative":
            pool = await self._collaborative(n, ctx, weights)
            if pool:
                return pool, "collaborative"
            strategy = "personalized"
        if strategy == "feed":
            return await self._feed(n, ctx, weights), "feed"

        builder = getattr(self, f"_{strategy}")
        return await builder(req, n, ctx, weights), strategy

    async def _trending(self, req: FeedRequest, n: int, ctx: RequestContext, weights: ScoringWeights) -> List[PoolItem]:
        days = TIME_RANGES.get(req.time_range or "7d", 7)
        query = CandidateQuery(
            status="Published",
            created_after=ctx.now - timedelta(days=weights.max_age_days),
            sort="popular",
        )
        cands = await self._fetch(query, n, ctx, window_days=days)
        return self._score(cands, "trending", ctx, weights)

    async def _new(self, req: FeedRequest, n: int, ctx: RequestContext, weights: ScoringWeights) -> List[PoolItem]:
        cands: List[Candidate] = []
        for days in (NEW_DAYS, NEW_DAYS * 2):
            query = CandidateQuery(status="Published", created_after=ctx.now - timedelta(days=days), sort="newest")
            cands = await self._fetch(query, n, ctx)
            if cands:
                break
            logger.info(f"[feed] no new products in {days} days, widening window")
        return self._score(cands, "new", ctx, weights)

    async def _similar(self, req: FeedRequest, n: int, ctx: RequestContext, weights: ScoringWeights) -> List[PoolItem]:
        if not req.source_id:
            raise ValidationError("A source product is required for similar recommendations")
        found = await self._fetch(CandidateQuery(include_ids=[req.source_id]), 1, ctx)
        if not found:
            raise NotFound("Product not found")
        source = found[0]
        groups = []
        if source.category_id:
            groups.append(await self._fetch(CandidateQuery(category_ids=[source.category_id], sort="popular"), n, ctx))
        if source.tags:
            groups.append(await self._fetch(CandidateQuery(tags=list(source.tags), sort="popular"), n, ctx))
        groups.append(await self._fetch(CandidateQuery(maker_id=source.maker_id, sort="popular"), n, ctx))
        cands = self._merge(*groups)
        if len(cands) <= n:
            cands = self._merge(cands, await self._fetch(CandidateQuery(sort="popular"), n, ctx))
        return self._score(cands, "similar", ctx, weights, source=source)

    async def _category(self, req: FeedRequest, n: int, ctx: RequestContext, weights: ScoringWeights) -> List[PoolItem]:
        if not req.category_id:
            raise ValidationError("A category id is required")
        cands = await self._fetch(CandidateQuery(category_ids=[req.category_id], sort="popular"), n, ctx)
        return self._score(cands, "category", ctx, weights)

    async def _tag(self, req: FeedRequest, n: int, ctx: RequestContext, weights: ScoringWeights) -> List[PoolItem]:
        if not req.tags:
            raise ValidationError("At least one tag is required")
        cands = await self._fetch(CandidateQuery(tags=list(req.tags), sort="popular"), n, ctx)
        return self._score(cands, "tag", ctx, weights, tags=tuple(t.lower() for t in req.tags))

    def _top_categories(self, ctx: RequestContext, k: int = 5) -> List[str]:
        prefs = ctx.user.category_prefs
        return [cid for cid, w in sorted(prefs.items(), key=lambda kv: (-kv[1], kv[0])) if w > 0][:k]

    def _top_tags(self, ctx: RequestContext, k: int = 8) -> List[str]:
        prefs = ctx.user.tag_prefs
        return [t for t, w in sorted(prefs.items(), key=lambda kv: (-kv[1], kv[0])) if w > 0][:k]

    async def _personalized(self, req: FeedRequest, n: int, ctx: RequestContext, weights: ScoringWeights) -> List[PoolItem]:
        groups = []
        top = self._top_categories(ctx)
        if top:
            groups.append(await self._fetch(CandidateQuery(category_ids=top, sort="popular"), n, ctx))
        groups.append(await self._fetch(CandidateQuery(sort="popular"), n, ctx))
        cands = self._not_mine(self._merge(*groups), ctx)
        return self._score(cands, "personalized", ctx, weights)

    async def _interests(self, req: FeedRequest, n: int, ctx: RequestContext, weights: ScoringWeights) -> List[PoolItem]:
        seen = sorted(ctx.user.recent_view_ids | ctx.user.engaged_ids)
        groups = []
        top = self._top_categories(ctx)
        if top:
            groups.append(await self._fetch(CandidateQuery(category_ids=top, exclude_ids=seen, sort="popular"), n, ctx))
        tags = self._top_tags(ctx)
        if tags:
            groups.append(await self._fetch(CandidateQuery(tags=tags, exclude_ids=seen, sort="popular"), n, ctx))
        cands = self._not_mine(self._merge(*groups), ctx)
        if not cands:
            return await self._trending(FeedRequest(strategy="trending"), n, ctx, weights)
        return self._score(cands, "interests", ctx, weights)

    async def _collaborative(self, n: int, ctx: RequestContext, weights: ScoringWeights) -> List[PoolItem]:
        affinity = await asyncio.to_thread(self._profiles.collaborative_affinity, ctx.user_id)
        engaged = ctx.user.engaged_ids
        ranked = [pid for pid, _ in sorted(affinity.items(), key=lambda kv: (-kv[1], kv[0])) if pid not in engaged]
        if not ranked:
            return []
        cands = await self._fetch(CandidateQuery(include_ids=ranked[: n * 3]), n, ctx)
        cands = self._not_mine(cands, ctx)
        return self._score(cands, "collaborative", ctx, weights, affinity=affinity)

    async def _default(self, req: FeedRequest, n: int, ctx: RequestContext, weights: ScoringWeights) -> List[PoolItem]:
        cands = await self._fetch(CandidateQuery(search=req.search, sort="popular"), n, ctx)
        return self._score(cands, "default", ctx, weights)

    async def _feed(self, n: int, ctx: RequestContext, weights: ScoringWeights) -> List[PoolItem]:
        blend = FEED_BLEND_AUTHENTICATED if ctx.user.is_authenticated else FEED_BLEND_ANONYMOUS
        pool_cap = n * 3
        merged: Dict[str, Tuple[float, PoolItem]] = {}
        failures = 0
        for source, share in blend.items():
            ctx.token.raise_if_cancelled()
            want = max(1, math.ceil(share * pool_cap))
            sub = FeedRequest(strategy=source, limit=max(1, math.ceil(want / 3)))
            try:
                items, _ = await self._pool(sub, ctx, weights)
            except (Upstream, Timeout) as e:
                failures += 1
                logger.warning(f"[feed] blended source {source} skipped: {type(e).__name__}")
                continue
            for item in items[:want]:
                score = item.preview()
                current = merged.get(item.candidate.id)
                if current is None or score > current[0]:
                    merged[item.candidate.id] = (score, item)
        if failures == len(blend):
            raise Upstream("Every feed source failed")
        pool = [item for _, item in merged.values()]
        pool.sort(key=lambda p: (-p.preview(), p.candidate.created_at, p.candidate.id))
        return pool


ASSEMBLER = FeedAssembler()


async def assemble(req: FeedRequest, ctx: RequestContext) -> FeedResult:
    try:
        return await ASSEMBLER.assemble(req, ctx)
    except RequestCancelled:
        logger.info(f"[feed] cancelled strategy={req.strategy}")
        raise
