# =============================================
# File: bazaar/services/profiles.py
# Purpose: User context for ranking (preferences, recent views/categories,
#          engagement) and preference-overlap neighbours for collaborative feeds
# =============================================

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from loguru import logger
from sqlmodel import select

from ..db import repo
from ..db.models import Interaction, Product, User
from ..utils import cache_keys
from ..utils.config import cache_ttl
from ..utils.rcache import CACHE
from ..utils.records import ANONYMOUS, UserContext
from ..utils.timing import utcnow
from .interactions import STORE, InteractionStore

RECENT_VIEW_DAYS = 30
RECENT_VIEW_LIMIT = 50
NEIGHBOUR_MIN_OVERLAP = 0.3
NEIGHBOUR_LIMIT = 10
NEIGHBOUR_SCAN = 500


def _pref_vector(preferences: Optional[dict]) -> Dict[str, float]:
    """Flatten {"categories": {...}, "tags": {...}} into one namespaced weight map."""
    prefs = preferences or {}
    out: Dict[str, float] = {}
    for cid, w in (prefs.get("categories") or {}).items():
        if w and w > 0:
            out[f"c:{cid}"] = float(w)
    for tag, w in (prefs.get("tags") or {}).items():
        if w and w > 0:
            out[f"t:{tag}"] = float(w)
    return out


def preference_overlap(a: Dict[str, float], b: Dict[str, float]) -> float:
    """Weighted Jaccard over preference keys, in [0, 1]."""
    keys = set(a) | set(b)
    if not keys:
        return 0.0
    num = sum(min(a.get(k, 0.0), b.get(k, 0.0)) for k in keys)
    den = sum(max(a.get(k, 0.0), b.get(k, 0.0)) for k in keys)
    return num / den if den > 0 else 0.0


class ProfileStore:
    """
    Read model over users and their activity:
    - build_context: what personalization needs for one user
    - neighbours / collaborative_affinity: users with similar preference vectors
      and the products they engaged with
    """

    def __init__(self, store: InteractionStore = STORE) -> None:
        self._store = store

    def build_context(self, user_id: Optional[str]) -> UserContext:
        if not user_id:
            return ANONYMOUS
        with repo.session() as s:
            user = s.get(User, user_id)
            if user is None:
                return ANONYMOUS
            prefs = user.preferences or {}
            engaged = s.exec(
                select(Interaction.product_id).where(
                    Interaction.user_id == user_id,
                    Interaction.active == True,  # noqa: E712
                    Interaction.kind.in_(["upvote", "bookmark"]),
                )
            ).all()

        views = self._store.recent_interactions(
            user_id, window_days=RECENT_VIEW_DAYS, kinds=["view"], limit=RECENT_VIEW_LIMIT
        )
        viewed = {v.product_id for v in views}
        recent_categories: set = set()
        if viewed:
            with repo.session() as s:
                recent_categories = {
                    cid
                    for cid in s.exec(select(Product.category_id).where(Product.id.in_(sorted(viewed))))
                    if cid
                }

        return UserContext(
            user_id=user.id,
            category_prefs={k: float(v) for k, v in (prefs.get("categories") or {}).items()},
            tag_prefs={k: float(v) for k, v in (prefs.get("tags") or {}).items()},
            recent_view_ids=frozenset(viewed),
            recent_category_ids=frozenset(recent_categories),
            engaged_ids=frozenset(engaged),
            last_activity_at=user.last_activity_at,
            is_admin=user.is_admin,
        )

    async def load_context(self, user_id: Optional[str]) -> UserContext:
        """Cached under rec:ctx:{user}; purged on that user's writes."""
        if not user_id:
            return ANONYMOUS
        fresh, stale = cache_ttl("user_context")

        async def _load() -> UserContext:
            return await asyncio.to_thread(self.build_context, user_id)

        ctx, _ = await CACHE.get_or_load(cache_keys.user_context(user_id), _load, fresh, stale)
        return ctx

    def neighbours(self, user_id: str) -> List[Tuple[str, float]]:
        """Up to NEIGHBOUR_LIMIT users whose preference overlap is >= NEIGHBOUR_MIN_OVERLAP."""
        with repo.session() as s:
            me = s.get(User, user_id)
            if me is None:
                return []
            mine = _pref_vector(me.preferences)
            if not mine:
                return []
            since = utcnow() - timedelta(days=180)
            others = s.exec(
                select(User.id, User.preferences)
                .where(User.id != user_id)
                .where((User.last_activity_at == None) | (User.last_activity_at >= since))  # noqa: E711
                .order_by(User.last_activity_at.desc())
                .limit(NEIGHBOUR_SCAN)
            ).all()
        scored = []
        for other_id, prefs in others:
            overlap = preference_overlap(mine, _pref_vector(prefs))
            if overlap >= NEIGHBOUR_MIN_OVERLAP:
                scored.append((other_id, overlap))
        scored.sort(key=lambda t: (-t[1], t[0]))
        return scored[:NEIGHBOUR_LIMIT]

    def collaborative_affinity(self, user_id: str) -> Dict[str, float]:
        """product id -> [0, 1]: overlap-weighted upvotes/bookmarks of neighbours."""
        neighbours = dict(self.neighbours(user_id))
        if not neighbours:
            return {}
        with repo.session() as s:
            rows = s.exec(
                select(Interaction.user_id, Interaction.product_id).where(
                    Interaction.user_id.in_(list(neighbours)),
                    Interaction.active == True,  # noqa: E712
                    Interaction.kind.in_(["upvote", "bookmark"]),
                )
            ).all()
        raw: Dict[str, float] = {}
        for uid, pid in rows:
            raw[pid] = raw.get(pid, 0.0) + neighbours.get(uid, 0.0)
        top = max(raw.values()) if raw else 0.0
        if top <= 0:
            return {}
        logger.debug(f"[profiles] collaborative user={user_id} neighbours={len(neighbours)} products={len(raw)}")
        return {pid: v / top for pid, v in raw.items()}


PROFILE_STORE = ProfileStore()
