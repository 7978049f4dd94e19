# =============================================
# File: bazaar/utils/scoring.py
# Purpose: Scoring kernel. Pure, deterministic functions over Candidate records:
#          engagement, recency, trending velocity, similarity, personalization,
#          psychological context, diversity, quality and normalization.
# =============================================
from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Sequence, Tuple

from .config import ScoringWeights, type_multiplier
from .records import ANONYMOUS, Candidate, ScoreDetail, TimeContext, UserContext

MIN_SCORE = 0.01
MAX_SCORE = 1.0
RECENT_VIEW_PENALTY = 0.2
RECENT_CATEGORY_BOOST = 1.5
INACTIVE_DECAY = 0.8
INACTIVE_AFTER_DAYS = 30
IDENTICAL_PENALTY = 0.01


@dataclass(frozen=True)
class ScoringContext:
    strategy: str
    weights: ScoringWeights
    time: TimeContext
    user: UserContext = ANONYMOUS
    source: Optional[Candidate] = None
    tags: Tuple[str, ...] = ()
    # product_id -> [0, 1] affinity from similar users (collaborative)
    affinity: Dict[str, float] = field(default_factory=dict)
    now: Optional[datetime] = None


# ---------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------

def engagement_score(c: Candidate, w: ScoringWeights) -> float:
    """log-damped engagement; each term is zero when its count is zero."""
    views = max(0, c.views)
    upvotes = max(0, c.upvotes)
    bookmarks = max(0, c.bookmarks)
    comments = max(0, c.comments)
    score = 0.0
    if views > 0:
        score += math.log10(views) * w.views_weight
    if upvotes > 0:
        score += math.log10(1 + upvotes) * w.upvotes_weight
    if bookmarks > 0:
        score += math.log10(1 + bookmarks) * w.bookmark_weight
    if comments > 0:
        score += math.log10(1 + comments) * w.comment_weight
    return score


def recency_score(age_in_days: float, w: ScoringWeights) -> float:
    age = max(0.0, age_in_days)
    if age <= w.recent_days_boost:
        return w.recency_weight * (1 - age / w.recent_days_boost)
    return w.recency_weight * 0.5 * max(0.0, 1 - age / w.max_age_days)


def _trending_age_boost(age_in_days: float) -> float:
    if age_in_days <= 3:
        return 1.5
    if age_in_days <= 7:
        return 1.3
    if age_in_days <= 14:
        return 1.1
    return 1.0


def trending_score(c: Candidate, w: ScoringWeights) -> float:
    """Velocity over the recent window, boosted for young and accelerating products. In [0, 1]."""
    days = max(1, c.window_days)
    velocity = (
        (c.recent_views / days) * w.views_trending_weight
        + (c.recent_upvotes / days) * w.upvotes_trending_weight
        + (c.recent_comments / days) * w.comments_trending_weight
        + (c.recent_bookmarks / days) * w.bookmark_weight
    )
    if velocity <= 0:
        return 0.0

    ratios = [
        (c.recent_views / c.views) * days if c.views > 0 else 0.0,
        (c.recent_upvotes / c.upvotes) * days if c.upvotes > 0 else 0.0,
        (c.recent_comments / c.comments) * days if c.comments > 0 else 0.0,
    ]
    acceleration = min(2.0, 1.0 + sum(ratios) / len(ratios))

    score = velocity * _trending_age_boost(c.age_in_days) * acceleration
    if score < 0.05 and (c.views < 5 or c.upvotes < 2):
        score *= 0.5
    return min(1.0, max(0.0, score / w.trending_normalization_factor))


def tag_overlap(a: Sequence[str], b: Sequence[str]) -> Tuple[int, float]:
    """(common tag count, Jaccard index)."""
    sa, sb = set(a), set(b)
    if not sa or not sb:
        return 0, 0.0
    common = len(sa & sb)
    return common, common / len(sa | sb)


def similarity_score(c: Candidate, source: Candidate, w: ScoringWeights) -> float:
    _, jaccard = tag_overlap(source.tags, c.tags)
    score = jaccard * w.tag_similarity_weight
    if source.category_id and source.category_id == c.category_id:
        score += w.category_similarity_weight
    if source.maker_id == c.maker_id:
        score += w.maker_similarity_weight
    score += engagement_score(c, w) * 0.3 + recency_score(c.age_in_days, w) * 0.2
    if source.id == c.id:
        score *= IDENTICAL_PENALTY
    return min(1.0, max(0.0, score))


def _days_since(then: Optional[datetime], now: Optional[datetime]) -> float:
    if then is None or now is None:
        return 0.0
    return max(0.0, (now - then).total_seconds() / 86400.0)


def _normalized_pref(prefs: Dict[str, float], key: Optional[str]) -> float:
    if not key or key not in prefs:
        return 0.0
    top = max(prefs.values()) if prefs else 0.0
    if top <= 0:
        return 0.0
    return max(0.0, prefs[key]) / top


def recent_view_penalty(c: Candidate, user: UserContext) -> float:
    return RECENT_VIEW_PENALTY if c.id in user.recent_view_ids else 1.0


def personalization_score(
    c: Candidate,
    user: UserContext,
    w: ScoringWeights,
    now: Optional[datetime] = None,
) -> float:
    score = engagement_score(c, w) * 0.3 + recency_score(c.age_in_days, w) * 0.2

    pref = _normalized_pref(user.category_prefs, c.category_id)
    if pref > 0:
        score += pref * w.category_preference_weight

    if c.tags and user.tag_prefs:
        matches = sum(1 for t in c.tags if t in user.tag_prefs)
        score += (matches / max(1, len(c.tags))) * w.tag_preference_weight

    score *= recent_view_penalty(c, user)
    if c.category_id and c.category_id in user.recent_category_ids:
        score *= RECENT_CATEGORY_BOOST
    if _days_since(user.last_activity_at, now) > INACTIVE_AFTER_DAYS:
        score *= INACTIVE_DECAY
    return min(1.0, max(0.0, score))


_TECH = ("tech", "productivity", "software", "developer")
_ENTERTAINMENT = ("entertainment", "game", "media", "music")
_CREATIVE = ("creative", "art", "craft", "hobby", "design")
_BUSINESS = ("business", "professional", "enterprise", "finance")


def psychological_multiplier(c: Candidate, t: TimeContext, w: ScoringWeights) -> float:
    multiplier = 1.0
    if 8 <= t.hour <= 22:
        multiplier *= w.peak_hours_boost
    if t.is_weekend:
        multiplier *= w.weekend_boost

    name = (c.category_name or "").lower()
    if not name:
        return multiplier

    if (t.season == "winter" and any(k in name for k in ("cozy", "indoor"))) or (
        t.season == "summer" and any(k in name for k in ("outdoor", "travel"))
    ):
        multiplier *= w.seasonal_boost
    if 8 <= t.hour <= 12 and any(k in name for k in _TECH):
        multiplier *= 1.2
    if 18 <= t.hour <= 23 and any(k in name for k in _ENTERTAINMENT):
        multiplier *= 1.3
    if t.is_weekend and any(k in name for k in _CREATIVE):
        multiplier *= 1.25
    if not t.is_weekend and 9 <= t.hour <= 17 and any(k in name for k in _BUSINESS):
        multiplier *= 1.3
    return multiplier


def diversity_score(c: Candidate, chosen: Sequence[Candidate], w: ScoringWeights) -> float:
    """How different `c` is from what the response already holds. 1.0 when nothing is chosen."""
    if not chosen:
        return 1.0

    category = 1.0
    if c.category_id:
        same = sum(1 for o in chosen if o.category_id == c.category_id)
        category = max(0.2, 1 - 0.2 * same)

    maker = max(0.1, 1 - 0.3 * sum(1 for o in chosen if o.maker_id == c.maker_id))

    tags = 1.0
    if c.tags:
        mine = set(c.tags)
        total = 0.0
        for o in chosen:
            theirs = set(o.tags)
            total += len(mine & theirs) / max(1, min(len(mine), len(theirs)))
        tags = max(0.3, 1 - total / len(chosen))

    return (
        category * w.category_diversity_factor
        + maker * w.maker_diversity_factor
        + tags * w.tag_diversity_factor
    )


def quality_score(c: Candidate) -> float:
    views, upvotes = c.views, c.upvotes
    score = 5.0
    if views > 0:
        score += (upvotes / views) * 20 + (c.bookmarks / views) * 15 + (c.comments / views) * 10
    if upvotes > 10:
        score += 1
    if upvotes > 50:
        score += 1
    if views > 1000:
        score += 0.5
    if views > 20 and upvotes == 0:
        score -= 2
    return max(0.0, min(10.0, score))


def quality_factor(quality: float) -> float:
    return 0.8 + quality / 50


def _jitter(tie_key: str) -> float:
    if not tie_key:
        return 1.0
    h = int(hashlib.sha256(tie_key.encode("utf-8")).hexdigest()[:8], 16)
    return 0.995 + (h / 0xFFFFFFFF) * 0.01


def normalize(score: float, tie_key: str = "") -> float:
    """Sigmoid-like squash into [0.01, 1] with a <=1% deterministic tie-breaker."""
    if score <= 0 or math.isnan(score):
        return MIN_SCORE
    squashed = 0.1 + 0.9 * (1 - 1 / (1 + math.pow(score / 3, 0.8)))
    return min(MAX_SCORE, max(MIN_SCORE, squashed * _jitter(tie_key)))


# ---------------------------------------------------------------------
# Strategy composition
# ---------------------------------------------------------------------

def base_detail(c: Candidate, ctx: ScoringContext) -> ScoreDetail:
    """Component scores and the strategy's base composition (before the shared tail)."""
    w = ctx.weights
    d = ScoreDetail()
    d.engagement = engagement_score(c, w)
    d.recency = recency_score(c.age_in_days, w)
    d.quality = quality_score(c)
    strategy = ctx.strategy

    if strategy == "trending":
        d.trending = trending_score(c, w)
        d.psychological = psychological_multiplier(c, ctx.time, w)
        d.base = d.trending * d.psychological
    elif strategy == "new":
        d.base = d.recency * 2 + d.engagement * 0.3
    elif strategy == "similar":
        if ctx.source is not None:
            common, _ = tag_overlap(ctx.source.tags, c.tags)
            match = common * w.tag_match
            if ctx.source.category_id and ctx.source.category_id == c.category_id:
                match += w.category_match
            d.similarity = similarity_score(c, ctx.source, w)
            d.base = match + d.engagement * 0.3
            if ctx.source.id == c.id:
                d.penalty = IDENTICAL_PENALTY
                d.base *= IDENTICAL_PENALTY
        else:
            d.base = d.engagement
    elif strategy == "category":
        d.base = d.engagement * 1.2
    elif strategy == "tag":
        wanted = set(ctx.tags)
        matches = sum(1 for t in c.tags if t in wanted)
        d.similarity = matches * w.tag_match
        d.base = d.similarity + d.engagement * 0.5
    elif strategy in ("personalized", "interests"):
        d.personalization = personalization_score(c, ctx.user, w, ctx.now)
        d.penalty = recent_view_penalty(c, ctx.user)
        d.base = d.personalization
    elif strategy == "collaborative":
        affinity = max(0.0, min(1.0, ctx.affinity.get(c.id, 0.0)))
        d.similarity = affinity
        d.penalty = recent_view_penalty(c, ctx.user)
        d.base = (0.6 * affinity + 0.4 * min(1.0, d.engagement / 3)) * d.penalty
    else:
        d.psychological = psychological_multiplier(c, ctx.time, w)
        d.base = (d.engagement + d.recency * 0.8) * d.psychological
    return d


def finalize(c: Candidate, d: ScoreDetail, strategy: str, diversity: float) -> ScoreDetail:
    """Shared tail: typeMultiplier, quality factor, diversity, normalize, post-penalty."""
    d.diversity = diversity
    d.raw = d.base * type_multiplier(strategy) * quality_factor(d.quality) * diversity
    final = normalize(d.raw, tie_key=c.id)
    if d.penalty < 1.0:
        final *= d.penalty
    d.final = min(MAX_SCORE, max(MIN_SCORE, final))
    return d


def score_candidate(
    c: Candidate,
    ctx: ScoringContext,
    chosen: Sequence[Candidate] = (),
) -> ScoreDetail:
    d = base_detail(c, ctx)
    return finalize(c, d, ctx.strategy, diversity_score(c, chosen, ctx.weights))
