# =============================================
# File: bazaar/utils/config.py
# Purpose: Tunables (scoring weights, strategy multipliers, rate-limit table,
#          cache TTLs, bot toggles). Read at call time so env overrides apply.
# =============================================
from __future__ import annotations

import os
from typing import Dict, Literal, Tuple

from pydantic import BaseModel, Field


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_flag(name: str, default: bool = True) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ---------- Scoring ----------

class ScoringWeights(BaseModel):
    views_weight: float = 0.2
    upvotes_weight: float = 0.4
    bookmark_weight: float = 0.3
    comment_weight: float = 0.3
    tag_match: float = 0.3
    category_match: float = 0.2
    recency_weight: float = 0.5
    category_preference_weight: float = 0.3
    tag_preference_weight: float = 0.2
    tag_similarity_weight: float = 0.5
    category_similarity_weight: float = 0.2
    maker_similarity_weight: float = 0.3
    views_trending_weight: float = 0.3
    upvotes_trending_weight: float = 0.5
    comments_trending_weight: float = 0.2
    trending_normalization_factor: float = Field(10.0, gt=0)
    category_diversity_factor: float = Field(0.4, ge=0, le=1)
    maker_diversity_factor: float = Field(0.3, ge=0, le=1)
    peak_hours_boost: float = 1.1
    weekend_boost: float = 1.1
    seasonal_boost: float = 1.2
    recent_days_boost: float = Field(7.0, gt=0)
    max_age_days: float = Field(90.0, gt=0)

    @property
    def tag_diversity_factor(self) -> float:
        return max(0.0, 1.0 - self.category_diversity_factor - self.maker_diversity_factor)


def scoring_weights() -> ScoringWeights:
    """Defaults overridden by SCORING_<FIELD> env vars (e.g. SCORING_VIEWS_WEIGHT)."""
    overrides = {}
    for name, field in ScoringWeights.model_fields.items():
        raw = os.getenv(f"SCORING_{name.upper()}")
        if raw is not None:
            try:
                overrides[name] = float(raw)
            except ValueError:
                continue
    return ScoringWeights(**overrides)


STRATEGIES = (
    "trending",
    "new",
    "similar",
    "category",
    "tag",
    "personalized",
    "interests",
    "collaborative",
    "feed",
    "default",
)

_TYPE_MULTIPLIERS: Dict[str, float] = {
    "trending": 1.2,
    "new": 1.1,
    "similar": 1.0,
    "category": 1.0,
    "tag": 1.0,
    "personalized": 1.3,
    "interests": 1.2,
    "collaborative": 1.15,
    "feed": 1.0,
    "default": 1.0,
}


def type_multiplier(strategy: str) -> float:
    base = _TYPE_MULTIPLIERS.get(strategy, 1.0)
    return _env_float(f"TYPE_MULTIPLIER_{strategy.upper()}", base)


# ---------- Rate limits ----------

KeyBy = Literal["user_or_ip", "ip", "email", "phone"]


class RateRule(BaseModel):
    window_seconds: int = Field(..., gt=0)
    max_requests: int = Field(..., ge=0)
    key_by: KeyBy = "user_or_ip"


_RATE_TABLE: Dict[str, Tuple[int, int, KeyBy]] = {
    "generic": (900, 100, "user_or_ip"),
    "otp": (900, 5, "phone"),
    "emailVerify": (3600, 10, "ip"),
    "emailResend": (3600, 5, "email"),
    "profileUpdate": (900, 10, "user_or_ip"),
    "tokenRefresh": (900, 30, "ip"),
    "passwordReset": (3600, 5, "email"),
    "login": (900, 10, "email"),
    "emailRegistration": (3600, 5, "email"),
    "phoneRegistration": (3600, 5, "phone"),
    "phoneVerify": (3600, 5, "phone"),
    "view": (900, 100, "user_or_ip"),
    "recommendation": (300, 100, "user_or_ip"),
    "search": (900, 100, "user_or_ip"),
    "interaction": (60, 30, "user_or_ip"),
}


def _env_suffix(endpoint_class: str) -> str:
    # emailVerify -> EMAIL_VERIFY
    out = []
    for ch in endpoint_class:
        if ch.isupper() and out:
            out.append("_")
        out.append(ch.upper())
    return "".join(out)


def rate_rule(endpoint_class: str) -> RateRule:
    window, max_reqs, key_by = _RATE_TABLE.get(endpoint_class, _RATE_TABLE["generic"])
    if endpoint_class == "generic":
        window = _env_int("RL_WINDOW_SECONDS", window)
        max_reqs = _env_int("RL_MAX_REQS", max_reqs)
    suffix = _env_suffix(endpoint_class)
    return RateRule(
        window_seconds=_env_int(f"RL_{suffix}_WINDOW", window),
        max_requests=_env_int(f"RL_{suffix}_MAX", max_reqs),
        key_by=key_by,
    )


def rate_classes() -> Tuple[str, ...]:
    return tuple(_RATE_TABLE)


# ---------- Cache TTLs (fresh seconds, extra stale seconds) ----------

_CACHE_TTLS: Dict[str, Tuple[int, int]] = {
    "products_list": (300, 60),
    "products_detail": (300, 60),
    "products_trending": (3600, 300),
    "search": (300, 60),
    "user_context": (120, 30),
    "rec_trending": (3600, 300),
    "rec_new": (7200, 600),
    "rec_personalized": (1800, 300),
    "rec_interests": (1800, 300),
    "rec_collaborative": (1800, 300),
    "rec_feed": (1800, 300),
    "rec_default": (600, 120),
}


def cache_ttl(family: str) -> Tuple[int, int]:
    fresh, stale = _CACHE_TTLS.get(family, (300, 60))
    return (
        _env_int(f"CACHE_TTL_{family.upper()}", fresh),
        _env_int(f"CACHE_STALE_{family.upper()}", stale),
    )


def cache_disabled() -> bool:
    return _env_flag("DISABLE_CACHE", default=False)


def cache_max_entries() -> int:
    return _env_int("CACHE_MAX_ENTRIES", 2000)


# ---------- Bot signals ----------

class BotToggles(BaseModel):
    user_agent: bool = True
    ip_range: bool = True
    headers: bool = True
    automation: bool = True
    timing: bool = True


def bot_toggles() -> BotToggles:
    return BotToggles(
        user_agent=_env_flag("BOT_CHECK_UA"),
        ip_range=_env_flag("BOT_CHECK_IP"),
        headers=_env_flag("BOT_CHECK_HEADERS"),
        automation=_env_flag("BOT_CHECK_AUTOMATION"),
        timing=_env_flag("BOT_CHECK_TIMING"),
    )


# ---------- Push channel ----------

def bus_queue_size() -> int:
    return max(1, _env_int("BUS_QUEUE_SIZE", 100))


def bus_max_retries() -> int:
    return max(0, _env_int("BUS_MAX_RETRIES", 3))


def bus_backoff_seconds() -> float:
    return max(0.0, _env_float("BUS_BACKOFF_SECONDS", 0.05))
