# =============================================
# File: bazaar/utils/rcache.py
# Purpose: In-process TTL cache with stale-while-revalidate, tag and
#          pattern invalidation, and single-flight background refills.
# =============================================
from __future__ import annotations

import asyncio
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, NamedTuple, Optional, Tuple

from loguru import logger

from . import cache_keys, metrics
from .config import cache_disabled, cache_max_entries

FRESH = "fresh"
STALE = "stale"
MISS = "miss"

Loader = Callable[[], Awaitable[Any]]


@dataclass
class CacheEntry:
    value: Any
    fresh_until: float
    stale_until: float
    tags: Tuple[str, ...] = ()


class CacheResult(NamedTuple):
    hit: str
    value: Any = None


class Cache:
    """Keyed TTL store.

    fresh  (now < fresh_until)                : served directly
    stale  (fresh_until <= now < stale_until) : served, one background refill per key
    miss   (now >= stale_until or absent)     : caller loads

    Expired entries are kept (LRU-bounded) so a failing upstream can fall back
    to the last known value; invalidation removes them for good.
    """

    def __init__(self, max_entries: Optional[int] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self._clock = clock
        self._max = max_entries
        self._generation = 0
        # key -> (refill task, generation it started in)
        self._inflight: Dict[str, Tuple["asyncio.Task[Any]", int]] = {}

    # ---------- primitives ----------

    def get(self, key: str) -> CacheResult:
        if cache_disabled():
            return CacheResult(MISS)
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None or now >= entry.stale_until:
                metrics.incr("cache_miss_total")
                return CacheResult(MISS)
            self._store.move_to_end(key, last=True)
            if now < entry.fresh_until:
                metrics.incr("cache_fresh_total")
                return CacheResult(FRESH, entry.value)
            metrics.incr("cache_stale_total")
            return CacheResult(STALE, entry.value)

    def put(
        self,
        key: str,
        value: Any,
        fresh_ttl: float,
        stale_ttl: float = 0.0,
        tags: Iterable[str] = (),
        generation: Optional[int] = None,
    ) -> bool:
        """Store a value. With `generation`, the write is dropped if an invalidation ran since."""
        if cache_disabled():
            return False
        now = self._clock()
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(f"[cache] dropped outdated fill key={key}")
                return False
            self._store[key] = CacheEntry(
                value=value,
                fresh_until=now + max(0.0, fresh_ttl),
                stale_until=now + max(0.0, fresh_ttl) + max(0.0, stale_ttl),
                tags=tuple(tags),
            )
            self._store.move_to_end(key, last=True)
            limit = self._max if self._max is not None else cache_max_entries()
            while len(self._store) > limit:
                self._store.popitem(last=False)
        return True

    def last_known(self, key: str) -> Any:
        """Most recent value for `key` even past its stale window, or None."""
        with self._lock:
            entry = self._store.get(key)
            return entry.value if entry is not None else None

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def invalidate_by_pattern(self, pattern: str) -> int:
        with self._lock:
            self._generation += 1
            dead = [k for k in self._store if cache_keys.matches(k, pattern)]
            for k in dead:
                self._store.pop(k, None)
        if dead:
            logger.debug(f"[cache] invalidated pattern={pattern} keys={len(dead)}")
        return len(dead)

    def invalidate_by_tag(self, tag: str) -> int:
        with self._lock:
            self._generation += 1
            dead = [k for k, e in self._store.items() if tag in e.tags]
            for k in dead:
                self._store.pop(k, None)
        return len(dead)

    def invalidate_patterns(self, patterns: Iterable[str]) -> int:
        return sum(self.invalidate_by_pattern(p) for p in patterns)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._store.clear()
            self._inflight.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    # ---------- read-through ----------

    def _joinable(self, key: str) -> Optional["asyncio.Task[Any]"]:
        """The running refill for `key`, unless an invalidation happened after it started."""
        with self._lock:
            slot = self._inflight.get(key)
            if slot is None:
                return None
            task, gen = slot
            if task.done() or gen != self._generation:
                return None
            return task

    def refresh_in_flight(self, key: str) -> bool:
        return self._joinable(key) is not None

    async def _fill(
        self,
        key: str,
        loader: Loader,
        fresh_ttl: float,
        stale_ttl: float,
        tags: Tuple[str, ...],
        generation: Optional[int] = None,
    ) -> Any:
        gen = self.generation() if generation is None else generation
        value = await loader()
        self.put(key, value, fresh_ttl, stale_ttl, tags, generation=gen)
        return value

    def _spawn(self, key: str, loader: Loader, fresh_ttl: float, stale_ttl: float, tags: Tuple[str, ...]) -> "asyncio.Task[Any]":
        task = self._joinable(key)
        if task is not None:
            return task
        gen = self.generation()
        task = asyncio.get_running_loop().create_task(self._fill(key, loader, fresh_ttl, stale_ttl, tags, gen))
        with self._lock:
            self._inflight[key] = (task, gen)

        def _done(t: "asyncio.Task[Any]") -> None:
            with self._lock:
                slot = self._inflight.get(key)
                if slot is not None and slot[0] is t:
                    self._inflight.pop(key, None)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                metrics.incr("cache_errors_total")
                logger.warning(f"[cache] background refill failed key={key} error={exc!r}")

        task.add_done_callback(_done)
        return task

    async def get_or_load(
        self,
        key: str,
        loader: Loader,
        fresh_ttl: float,
        stale_ttl: float = 0.0,
        tags: Iterable[str] = (),
        refresh_loader: Optional[Loader] = None,
    ) -> Tuple[Any, str]:
        """Return (value, hit). A stale hit schedules `refresh_loader` (default: `loader`)
        in the background; misses load inline or join a refill started since the last invalidation."""
        tags = tuple(tags)
        result = self.get(key)
        if result.hit == FRESH:
            return result.value, FRESH
        if result.hit == STALE:
            metrics.incr("cache_refresh_total")
            self._spawn(key, refresh_loader or loader, fresh_ttl, stale_ttl, tags)
            return result.value, STALE

        pending = self._joinable(key)
        if pending is not None:
            # shield: a cancelled request must not cancel the shared refill
            return await asyncio.shield(pending), MISS
        return await self._fill(key, loader, fresh_ttl, stale_ttl, tags), MISS


CACHE = Cache()


def clear() -> None:
    CACHE.clear()
