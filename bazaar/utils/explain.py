# =============================================
# File: bazaar/utils/explain.py
# Purpose: Short deterministic explanation built from the dominant score component
# =============================================
from __future__ import annotations

import hashlib
from typing import Dict, List

from .records import Candidate, ScoreDetail

_TEMPLATES: Dict[str, List[str]] = {
    "trending": [
        "Trending now with {upvotes} upvotes and {views} views.",
        "Picking up momentum: {upvotes} upvotes so far.",
    ],
    "recency": [
        "Freshly launched {age}.",
        "New in {category}, launched {age}.",
    ],
    "engagement": [
        "Popular with the community: {upvotes} upvotes and {comments} comments.",
        "Well received, with {upvotes} upvotes from makers and users.",
    ],
    "similarity": [
        "Similar to what you were looking at in {category}.",
        "Shares tags like {tags} with products you explored.",
    ],
    "personalization": [
        "Matches your interest in {category}.",
        "Picked for you based on your activity in {category}.",
    ],
    "psychological": [
        "A good fit for this time of day in {category}.",
    ],
    "quality": [
        "Highly rated by people who viewed it.",
    ],
}


def _age_text(days: float) -> str:
    d = int(days)
    if d <= 0:
        return "today"
    if d == 1:
        return "yesterday"
    return f"{d} days ago"


def dominant_component(strategy: str, d: ScoreDetail) -> str:
    if strategy == "trending" and d.trending > 0:
        return "trending"
    if strategy in ("personalized", "interests") and d.personalization > 0 and d.penalty >= 1.0:
        return "personalization"
    candidates = {
        "similarity": d.similarity,
        "engagement": d.engagement,
        "recency": d.recency * (2 if strategy == "new" else 1),
        "psychological": (d.psychological - 1.0) if d.psychological > 1.0 else 0.0,
    }
    name, value = max(candidates.items(), key=lambda kv: (kv[1], kv[0]))
    if value <= 0:
        return "quality" if d.quality > 5 else "recency"
    return name


def explain(c: Candidate, strategy: str, d: ScoreDetail) -> str:
    component = dominant_component(strategy, d)
    options = _TEMPLATES[component]
    key = f"{c.id}-{c.upvotes}-{c.views}-{int(c.age_in_days)}-{strategy}"
    idx = int(hashlib.sha256(key.encode("utf-8")).hexdigest()[:8], 16) % len(options)
    return options[idx].format(
        upvotes=c.upvotes,
        views=c.views,
        comments=c.comments,
        age=_age_text(c.age_in_days),
        category=c.category_name or "this category",
        tags=", ".join(c.tags[:2]) or "these",
    )
