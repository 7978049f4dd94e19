# =============================================
# File: bazaar/utils/ratelimit.py
# Purpose: In-memory per-class, per-key sliding-window rate limiter
# =============================================

# Sliding window log: one timestamp deque per (endpoint class, identifier).

from __future__ import annotations
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Dict, Deque, Optional, Tuple

from .config import rate_rule
from .errors import RateLimited
from . import metrics

# In-memory store: (class, key) -> timestamps deque
_store: Dict[Tuple[str, str], Deque[float]] = {}
_lock = threading.Lock()


@dataclass(frozen=True)
class RateDecision:
    endpoint_class: str
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_seconds),
        }


def identifier(
    key_by: str,
    *,
    user_id: Optional[str] = None,
    ip: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> str:
    """Resolve the throttle key for a rule; email/phone fall back to the client IP."""
    ip_key = f"ip:{ip or 'unknown'}"
    if key_by == "user_or_ip":
        return f"user:{user_id}" if user_id else ip_key
    if key_by == "email" and email:
        return f"email:{email.strip().lower()}"
    if key_by == "phone" and phone:
        return f"phone:{phone.strip()}"
    return ip_key


def check_rate_limit(key: str, endpoint_class: str = "generic", now: Optional[float] = None) -> RateDecision:
    """Count one request for `key` under `endpoint_class`.

    Raises RateLimited (with retry_after >= 1) when the window is already full;
    a refused request is not counted.
    """
    rule = rate_rule(endpoint_class)
    now = time.time() if now is None else now
    cutoff = now - rule.window_seconds

    with _lock:
        dq = _store.setdefault((endpoint_class, key), deque())
        # Drop timestamps outside the window
        while dq and dq[0] <= cutoff:
            dq.popleft()

        if len(dq) >= rule.max_requests:
            oldest = dq[0] if dq else now
            retry_after = max(1, math.ceil(oldest + rule.window_seconds - now))
            metrics.record_rate_limit_hit()
            raise RateLimited(retry_after=retry_after, details={
                "endpointClass": endpoint_class,
                "limit": rule.max_requests,
                "reset": retry_after,
            })

        dq.append(now)
        reset = max(1, math.ceil(dq[0] + rule.window_seconds - now))
        return RateDecision(
            endpoint_class=endpoint_class,
            limit=rule.max_requests,
            remaining=max(0, rule.max_requests - len(dq)),
            reset_seconds=reset,
        )


def reset_rate_limit() -> None:
    """For tests: clear in-memory counters."""
    with _lock:
        _store.clear()
