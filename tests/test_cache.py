# =============================================
# File: tests/test_cache.py
# Purpose: Cache layer: fresh/stale/miss, pattern and tag invalidation,
#          single background refill, outdated fills dropped; router caching
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import asyncio

from fastapi.testclient import TestClient

from bazaar.utils import cache_keys, metrics, rcache
from bazaar.utils.rcache import FRESH, MISS, STALE, Cache


class _Clock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_fresh_stale_miss_windows():
    clock = _Clock()
    c = Cache(clock=clock)
    c.put("products:list:anon:1:20:h", "v", fresh_ttl=10, stale_ttl=5)
    assert c.get("products:list:anon:1:20:h") == (FRESH, "v")
    clock.t += 11
    assert c.get("products:list:anon:1:20:h") == (STALE, "v")
    clock.t += 5
    assert c.get("products:list:anon:1:20:h").hit == MISS
    # still available as a last resort
    assert c.last_known("products:list:anon:1:20:h") == "v"


def test_pattern_invalidation_only_hits_matching_keys():
    c = Cache()
    c.put("products:detail:alpha:anon", 1, 60)
    c.put("products:detail:alpha:u1", 2, 60)
    c.put("products:detail:beta:anon", 3, 60)
    c.put("recommendations:trending:anon:10:0:h", 4, 60)
    removed = c.invalidate_patterns(cache_keys.patterns_for_view("alpha"))
    assert removed == 2
    assert c.get("products:detail:alpha:anon").hit == MISS
    assert c.get("products:detail:beta:anon").hit == FRESH
    assert c.get("recommendations:trending:anon:10:0:h").hit == FRESH
    assert c.last_known("products:detail:alpha:u1") is None


def test_tag_invalidation():
    c = Cache()
    c.put("a", 1, 60, tags=("recommendations", "strategy:new"))
    c.put("b", 2, 60, tags=("recommendations",))
    c.put("c", 3, 60)
    assert c.invalidate_by_tag("recommendations") == 2
    assert len(c) == 1


def test_key_grammar_and_matching():
    key = cache_keys.recommendations("trending", None, 10, 0, "abc")
    assert key == "recommendations:trending:anon:10:0:abc"
    assert cache_keys.matches(key, "recommendations:*")
    assert cache_keys.matches(key, "recommendations:*:anon:10:0:abc")
    assert not cache_keys.matches(key, "products:*")
    assert cache_keys.ttl_family(key) == "rec_trending"
    assert cache_keys.ttl_family(cache_keys.product_detail("x", "u1")) == "products_detail"


def test_stale_hit_triggers_one_background_refill():
    clock = _Clock()
    c = Cache(clock=clock)
    calls = {"n": 0}

    async def loader():
        calls["n"] += 1
        await asyncio.sleep(0.01)
        return f"v{calls['n']}"

    async def scenario():
        v, hit = await c.get_or_load("k", loader, 10, 30)
        assert (v, hit) == ("v1", MISS)
        clock.t += 15
        results = await asyncio.gather(*[c.get_or_load("k", loader, 10, 30) for _ in range(5)])
        assert all(r == ("v1", STALE) for r in results)
        assert c.refresh_in_flight("k")
        await asyncio.sleep(0.05)
        return await c.get_or_load("k", loader, 10, 30)

    assert asyncio.run(scenario()) == ("v2", FRESH)
    assert calls["n"] == 2


def test_fill_dropped_when_invalidated_meanwhile():
    c = Cache()

    async def scenario():
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return "old"

        task = asyncio.ensure_future(c.get_or_load("products:detail:x:anon", slow, 60))
        await asyncio.sleep(0)
        c.invalidate_by_pattern("products:detail:x:*")
        gate.set()
        value, _ = await task
        return value

    assert asyncio.run(scenario()) == "old"
    # the outdated value was returned to its caller but never stored
    assert c.get("products:detail:x:anon").hit == MISS


def test_miss_after_invalidation_does_not_join_older_refill():
    clock = _Clock()
    c = Cache(clock=clock)
    key = "products:detail:x:anon"

    async def scenario():
        gate = asyncio.Event()

        async def first():
            return "v1"

        async def before_write():
            await gate.wait()
            return "computed-before-write"

        async def after_write():
            return "v2"

        await c.get_or_load(key, first, 10, 30)
        clock.t += 15
        stale = await c.get_or_load(key, first, 10, 30, refresh_loader=before_write)
        assert stale == ("v1", STALE)
        assert c.refresh_in_flight(key)

        c.invalidate_by_pattern("products:detail:x:*")
        assert not c.refresh_in_flight(key)
        fresh = await c.get_or_load(key, after_write, 10, 30)

        gate.set()
        await asyncio.sleep(0.01)
        return fresh

    assert asyncio.run(scenario()) == ("v2", MISS)
    # the older refill finished last but was not stored over the new value
    assert c.get(key) == (FRESH, "v2")


def test_refill_failure_is_demoted_to_warning():
    clock = _Clock()
    c = Cache(clock=clock)
    metrics.reset()

    async def ok():
        return "v"

    async def boom():
        raise RuntimeError("store down")

    async def scenario():
        await c.get_or_load("k", ok, 10, 30)
        clock.t += 12
        v, hit = await c.get_or_load("k", ok, 10, 30, refresh_loader=boom)
        await asyncio.sleep(0.01)
        return v, hit

    assert asyncio.run(scenario()) == ("v", STALE)
    assert metrics.get("cache_errors_total") == 1


def test_disable_cache_env(monkeypatch):
    monkeypatch.setenv("DISABLE_CACHE", "true")
    c = Cache()
    assert c.put("k", 1, 60) is False
    assert c.get("k").hit == MISS


def test_lru_cap():
    c = Cache(max_entries=2)
    c.put("a", 1, 60)
    c.put("b", 2, 60)
    c.get("a")
    c.put("c", 3, 60)
    assert c.get("b").hit == MISS
    assert c.get("a").hit == FRESH


def _mount_client(monkeypatch):
    rcache.clear()
    from bazaar.main import app
    return TestClient(app)


def test_router_cache_hits(monkeypatch, make_user, make_product):
    maker = make_user()
    make_product(maker)
    client = _mount_client(monkeypatch)

    import bazaar.routers.products as pmod
    calls = {"n": 0}
    real = pmod.CATALOG.list_products

    def _counting(*a, **kw):
        calls["n"] += 1
        return real(*a, **kw)

    monkeypatch.setattr(pmod.CATALOG, "list_products", _counting)

    r1 = client.get("/products?limit=5")
    r2 = client.get("/products?limit=5")
    assert r1.status_code == r2.status_code == 200
    assert r1.json() == r2.json()
    # second response came from cache
    assert calls["n"] == 1
