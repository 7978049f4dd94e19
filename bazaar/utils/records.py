# =============================================
# File: bazaar/utils/records.py
# Purpose: Plain value records exchanged between the candidate fetcher,
#          the scoring kernel and the feed assembler.
# =============================================
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .timing import utcnow


@dataclass(frozen=True)
class Candidate:
    """A product enriched for scoring. Knows nothing about the store it came from."""

    id: str
    slug: str
    name: str
    maker_id: str
    created_at: datetime
    category_id: Optional[str] = None
    category_name: str = ""
    maker_name: str = ""
    tagline: str = ""
    tags: Tuple[str, ...] = ()
    status: str = "Published"
    price: Optional[float] = None
    upvotes: int = 0
    bookmarks: int = 0
    comments: int = 0
    views: int = 0
    unique_viewers: int = 0
    recent_views: int = 0
    recent_upvotes: int = 0
    recent_comments: int = 0
    recent_bookmarks: int = 0
    window_days: int = 7
    age_in_days: float = 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "tagline": self.tagline,
            "tags": list(self.tags),
            "status": self.status,
            "price": self.price,
            "createdAt": self.created_at.isoformat(),
            "maker": {"id": self.maker_id, "name": self.maker_name},
            "category": {"id": self.category_id, "name": self.category_name} if self.category_id else None,
            "upvoteCount": self.upvotes,
            "bookmarkCount": self.bookmarks,
            "commentCount": self.comments,
            "viewCount": self.views,
            "uniqueViewerCount": self.unique_viewers,
        }


@dataclass(frozen=True)
class TimeContext:
    hour: int
    is_weekend: bool
    season: str
    weekday: int

    @classmethod
    def at(cls, now: Optional[datetime] = None) -> "TimeContext":
        now = now or utcnow()
        month = now.month
        if month in (3, 4, 5):
            season = "spring"
        elif month in (6, 7, 8):
            season = "summer"
        elif month in (9, 10, 11):
            season = "fall"
        else:
            season = "winter"
        return cls(hour=now.hour, is_weekend=now.weekday() >= 5, season=season, weekday=now.weekday())


@dataclass(frozen=True)
class UserContext:
    user_id: Optional[str] = None
    category_prefs: Dict[str, float] = field(default_factory=dict)
    tag_prefs: Dict[str, float] = field(default_factory=dict)
    recent_view_ids: FrozenSet[str] = frozenset()
    recent_category_ids: FrozenSet[str] = frozenset()
    engaged_ids: FrozenSet[str] = frozenset()
    last_activity_at: Optional[datetime] = None
    is_admin: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @property
    def has_interests(self) -> bool:
        return bool(self.category_prefs or self.tag_prefs)


ANONYMOUS = UserContext()


@dataclass
class ScoreDetail:
    """Per-(product, request) component scores. Never persisted."""

    engagement: float = 0.0
    recency: float = 0.0
    similarity: float = 0.0
    psychological: float = 1.0
    diversity: float = 1.0
    quality: float = 0.0
    penalty: float = 1.0
    trending: float = 0.0
    personalization: float = 0.0
    base: float = 0.0
    raw: float = 0.0
    final: float = 0.01
    explanation: str = ""

    def as_dict(self) -> Dict[str, float]:
        return {
            "engagement": round(self.engagement, 4),
            "recency": round(self.recency, 4),
            "similarity": round(self.similarity, 4),
            "psychological": round(self.psychological, 4),
            "diversity": round(self.diversity, 4),
            "quality": round(self.quality, 4),
            "penalty": round(self.penalty, 4),
        }


@dataclass
class Scored:
    candidate: Candidate
    detail: ScoreDetail
    reason: str

    @property
    def score(self) -> float:
        return self.detail.final


def rank_key(item: Scored) -> Tuple[float, datetime, str]:
    """Descending score, then earlier createdAt, then lexicographic id."""
    return (-item.detail.final, item.candidate.created_at, item.candidate.id)


def flatten(items: List[Scored]) -> List[Dict[str, Any]]:
    return [
        {
            "product": s.candidate.summary(),
            "score": round(s.detail.final, 4),
            "reason": s.reason,
            "explanation": s.detail.explanation,
            "scoreDetail": s.detail.as_dict(),
        }
        for s in items
    ]
