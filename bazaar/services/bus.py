# =============================================
# File: bazaar/services/bus.py
# Purpose: Invalidation bus. Turns committed writes into cache purges and push
#          events fanned out to subscribed live connections.
# =============================================

from __future__ import annotations

import asyncio
import itertools
import threading
import weakref
import zlib
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional

from loguru import logger

from ..utils import cache_keys, metrics
from ..utils.config import bus_backoff_seconds, bus_max_retries, bus_queue_size
from ..utils.rcache import CACHE, Cache
from .interactions import ToggleResult

Sink = Callable[[Dict[str, Any]], Awaitable[None]]

_ids = itertools.count(1)


class Connection:
    """One live client. Owns a bounded queue drained by a single pump task."""

    def __init__(self, sink: Sink, user_id: Optional[str] = None, queue_size: Optional[int] = None) -> None:
        self.id = next(_ids)
        self.user_id = user_id
        self.products: set = set()
        self._sink = sink
        self._queue: Deque[Dict[str, Any]] = deque(maxlen=queue_size or bus_queue_size())
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._task: Optional["asyncio.Task[None]"] = None
        self.closed = False

    def __hash__(self) -> int:
        return self.id

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Connection) and other.id == self.id

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._task = self._loop.create_task(self._pump())

    def enqueue(self, event: Dict[str, Any]) -> None:
        """Thread-safe. Drops the oldest queued event when full."""
        if self.closed:
            return
        with self._lock:
            if len(self._queue) == self._queue.maxlen:
                metrics.incr("bus_dropped_total")
                logger.warning(f"[bus] queue full, dropping oldest event conn={self.id}")
            self._queue.append(event)
        if self._loop is not None and self._wakeup is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._wakeup.set)

    def pending(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._queue)

    def _pop(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    async def _deliver(self, event: Dict[str, Any]) -> bool:
        retries = bus_max_retries()
        backoff = bus_backoff_seconds()
        for attempt in range(retries + 1):
            try:
                await self._sink(event)
                metrics.incr("bus_delivered_total")
                return True
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt >= retries:
                    metrics.incr("bus_failed_total")
                    logger.warning(f"[bus] dropping event kind={event.get('kind')} conn={self.id} after {attempt + 1} attempts: {e!r}")
                    return False
                await asyncio.sleep(backoff * (2 ** attempt))
        return False

    async def _pump(self) -> None:
        assert self._wakeup is not None
        while not self.closed:
            event = self._pop()
            if event is None:
                self._wakeup.clear()
                # re-check after clear so a concurrent enqueue is not missed
                event = self._pop()
                if event is None:
                    await self._wakeup.wait()
                    continue
            await self._deliver(event)

    async def flush(self, timeout: float = 1.0) -> None:
        """Wait until the queue is empty (tests and graceful shutdown)."""
        loop = asyncio.get_running_loop()
        end = loop.time() + timeout
        while self.pending() and loop.time() < end:
            await asyncio.sleep(0.005)

    def close(self) -> None:
        self.closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


class _Shard:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.subs: Dict[str, "weakref.WeakSet[Connection]"] = {}


class InvalidationBus:
    """Subscriptions keyed by product id, sharded to keep lock contention low.

    The table holds connections weakly; a product's entry disappears with its
    last subscriber.
    """

    def __init__(self, cache: Cache = CACHE, shards: int = 16) -> None:
        self._cache = cache
        self._shards = [_Shard() for _ in range(max(1, shards))]

    def _shard(self, product_id: str) -> _Shard:
        return self._shards[zlib.crc32(product_id.encode("utf-8")) % len(self._shards)]

    # ---------- subscriptions ----------

    def connect(self, sink: Sink, user_id: Optional[str] = None, start: bool = True) -> Connection:
        conn = Connection(sink, user_id=user_id)
        if start:
            conn.start()
        return conn

    def subscribe(self, conn: Connection, product_id: str) -> None:
        shard = self._shard(product_id)
        with shard.lock:
            shard.subs.setdefault(product_id, weakref.WeakSet()).add(conn)
        conn.products.add(product_id)

    def unsubscribe(self, conn: Connection, product_id: str) -> None:
        shard = self._shard(product_id)
        with shard.lock:
            subs = shard.subs.get(product_id)
            if subs is not None:
                subs.discard(conn)
                if not subs:
                    shard.subs.pop(product_id, None)
        conn.products.discard(product_id)

    def disconnect(self, conn: Connection) -> None:
        for pid in list(conn.products):
            self.unsubscribe(conn, pid)
        conn.close()

    def subscriber_count(self, product_id: str) -> int:
        shard = self._shard(product_id)
        with shard.lock:
            subs = shard.subs.get(product_id)
            return len(subs) if subs is not None else 0

    def topics(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += sum(1 for s in shard.subs.values() if len(s))
        return total

    # ---------- fan-out ----------

    def publish(self, event: Dict[str, Any]) -> int:
        product_id = str(event.get("productId") or "")
        shard = self._shard(product_id)
        with shard.lock:
            subs = shard.subs.get(product_id)
            targets = list(subs) if subs is not None else []
        for conn in targets:
            conn.enqueue(event)
        metrics.incr("bus_published_total")
        return len(targets)

    def purge(self, patterns: Iterable[str]) -> int:
        try:
            return self._cache.invalidate_patterns(patterns)
        except Exception as e:
            metrics.incr("cache_errors_total")
            logger.warning(f"[bus] cache purge failed: {e!r}")
            return 0

    # ---------- write translations ----------

    def on_toggle(self, result: ToggleResult) -> Dict[str, Any]:
        """Called by the interaction store right after commit, under its product lock."""
        self.purge(cache_keys.patterns_for_interaction(result.slug, result.user_id))
        event = {
            "kind": f"product:{result.kind}",
            "productId": result.product_id,
            "slug": result.slug,
            "action": "add" if result.now_active else "remove",
            "count": result.new_count,
            "userId": result.user_id,
        }
        self.publish(event)
        return event

    def on_view(self, product_id: str, slug: str, user_id: Optional[str] = None) -> None:
        self.purge(cache_keys.patterns_for_view(slug, user_id))

    def on_comment(self, product_id: str, slug: str, user_id: Optional[str] = None) -> None:
        self.purge(cache_keys.patterns_for_interaction(slug, user_id))

    def on_product_update(
        self,
        product_id: str,
        slug: str,
        user_id: Optional[str] = None,
        updates: Optional[Dict[str, Any]] = None,
        action: str = "add",
        old_slug: Optional[str] = None,
    ) -> Dict[str, Any]:
        patterns = cache_keys.patterns_for_product_write(slug)
        if old_slug and old_slug != slug:
            patterns += cache_keys.patterns_for_product_write(old_slug)
        self.purge(patterns)
        event = {
            "kind": "product:update",
            "productId": product_id,
            "slug": slug,
            "action": action,
            "userId": user_id,
            "updates": updates or {},
        }
        self.publish(event)
        return event


BUS = InvalidationBus()
