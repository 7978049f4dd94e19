# =============================================
# File: bazaar/utils/cache_keys.py
# Purpose: Cache key grammar. Lookups and invalidation patterns are built here
#          and nowhere else.
# =============================================
from __future__ import annotations

from typing import List, Optional

SEP = ":"
WILDCARD = "*"
ANON = "anon"

# prefix -> TTL family (see config.cache_ttl)
PREFIXES = {
    "products:list": "products_list",
    "products:detail": "products_detail",
    "products:trending": "products_trending",
    "search": "search",
    "rec:ctx": "user_context",
    "recommendations": "rec_default",
}


def _seg(value: object) -> str:
    text = str(value if value is not None else "")
    return text.replace(SEP, "_") or "_"


def join(*segments: object) -> str:
    return SEP.join(_seg(s) for s in segments)


def user_part(user_id: Optional[str]) -> str:
    return user_id or ANON


def products_list(user: Optional[str], page: int, limit: int, qhash: str) -> str:
    return join("products", "list", user_part(user), page, limit, qhash)


def product_detail(slug: str, user: Optional[str]) -> str:
    return join("products", "detail", slug, user_part(user))


def products_trending(window: str, limit: int) -> str:
    return join("products", "trending", window, limit)


def recommendations(strategy: str, user: Optional[str], limit: int, offset: int, qhash: str) -> str:
    return join("recommendations", strategy, user_part(user), limit, offset, qhash)


def search(user: Optional[str], page: int, qhash: str) -> str:
    return join("search", user_part(user), page, qhash)


def user_context(user_id: str) -> str:
    return join("rec", "ctx", user_id)


def ttl_family(key: str) -> str:
    parts = key.split(SEP)
    if parts[0] == "recommendations" and len(parts) > 1:
        return f"rec_{parts[1]}"
    for prefix, family in PREFIXES.items():
        if key == prefix or key.startswith(prefix + SEP):
            return family
    return "default"


def matches(key: str, pattern: str) -> bool:
    """`*` matches exactly one segment; a trailing `*` matches one or more segments."""
    k = key.split(SEP)
    p = pattern.split(SEP)
    if p and p[-1] == WILDCARD:
        head = p[:-1]
        if len(k) <= len(head):
            return False
        k = k[: len(head)]
        p = head
    if len(k) != len(p):
        return False
    return all(ps == WILDCARD or ps == ks for ks, ps in zip(k, p))


# ---------- invalidation patterns ----------

def patterns_for_interaction(slug: str, user_id: Optional[str] = None) -> List[str]:
    pats = [
        join("products", "detail", slug) + SEP + WILDCARD,
        "products:list:*",
        "products:trending:*",
        "search:*",
        "recommendations:*",
    ]
    if user_id:
        pats.append(user_context(user_id))
    return pats


def patterns_for_product_write(slug: str) -> List[str]:
    return [
        join("products", "detail", slug) + SEP + WILDCARD,
        "products:list:*",
        "products:trending:*",
        "search:*",
        "recommendations:*",
        "rec:*",
    ]


def patterns_for_view(slug: str, user_id: Optional[str] = None) -> List[str]:
    pats = [join("products", "detail", slug) + SEP + WILDCARD]
    if user_id:
        pats.append(user_context(user_id))
    return pats
