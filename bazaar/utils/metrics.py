# =============================================
# File: bazaar/utils/metrics.py
# Purpose: In-process counters, strategy usage, latency histogram and
#          per-endpoint avg/p95 for GET /metrics
# =============================================
from __future__ import annotations
from bisect import bisect_left
from collections import Counter, deque
from typing import Any, Deque, Dict, List
import threading
import time

_lock = threading.Lock()

# every counter shows up in the snapshot, even at zero
COUNTERS = (
    "requests_total",
    "rate_limit_hits_total",
    "bot_requests_total",
    "cache_fresh_total",
    "cache_stale_total",
    "cache_miss_total",
    "cache_refresh_total",
    "cache_errors_total",
    "bus_published_total",
    "bus_delivered_total",
    "bus_dropped_total",
    "bus_failed_total",
    "feed_fallbacks_total",
)

# upper bounds in ms; one extra slot for overflow
LATENCY_BUCKETS: List[int] = [50, 100, 200, 500, 1000, 2000, 5000, 10000]
ENDPOINT_SAMPLES = 1000

_counters: Counter = Counter()
_strategies: Counter = Counter()
_histogram: List[int] = [0] * (len(LATENCY_BUCKETS) + 1)
_endpoints: Dict[str, Deque[float]] = {}
_endpoint_hits: Counter = Counter()


def _p95(samples: List[float]) -> float:
    if not samples:
        return 0.0
    xs = sorted(samples)
    return xs[int(0.95 * (len(xs) - 1))]


def incr(name: str, amount: int = 1) -> None:
    with _lock:
        _counters[name] += amount


def get(name: str) -> int:
    with _lock:
        return _counters[name]


def record_request(latency_ms: int, strategy: str | None = None, is_bot: bool = False) -> None:
    with _lock:
        _counters["requests_total"] += 1
        if is_bot:
            _counters["bot_requests_total"] += 1
        if strategy:
            _strategies[strategy] += 1
        _histogram[bisect_left(LATENCY_BUCKETS, int(latency_ms))] += 1


def record_rate_limit_hit() -> None:
    incr("rate_limit_hits_total")


def record_endpoint(method: str, path: str, latency_ms: float) -> None:
    """`path` is the route template (/products/{slug}), so slugs do not explode the table."""
    key = f"{method.upper()} {path}"
    with _lock:
        _endpoint_hits[key] += 1
        _endpoints.setdefault(key, deque(maxlen=ENDPOINT_SAMPLES)).append(float(latency_ms))


def cache_hit_ratio() -> float:
    with _lock:
        hits = _counters["cache_fresh_total"] + _counters["cache_stale_total"]
        total = hits + _counters["cache_miss_total"]
    return round(hits / total, 4) if total else 0.0


def snapshot() -> Dict[str, Any]:
    ratio = cache_hit_ratio()
    with _lock:
        endpoints = {
            key: {
                "count": float(_endpoint_hits[key]),
                "avg_latency_ms": sum(buf) / len(buf) if buf else 0.0,
                "p95_latency_ms": _p95(list(buf)),
            }
            for key, buf in _endpoints.items()
        }
        return {
            "counters": {name: _counters[name] for name in sorted(set(COUNTERS) | set(_counters))},
            "strategy_usage": dict(_strategies),
            "cache_hit_ratio": ratio,
            "latency_ms": {
                "buckets": list(LATENCY_BUCKETS) + ["+Inf"],
                "counts": list(_histogram),
            },
            "performance": {
                "endpoints": endpoints,
                "generated_at": time.time(),
            },
        }


def reset() -> None:
    with _lock:
        _counters.clear()
        _strategies.clear()
        _histogram[:] = [0] * len(_histogram)
        _endpoints.clear()
        _endpoint_hits.clear()
