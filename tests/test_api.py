# =============================================
# File: tests/test_api.py
# Purpose: HTTP and websocket surface: error envelope, toggles, bot views,
#          live push fan-out, owner writes, comments, page sections, search,
#          public-only trending
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from fastapi.testclient import TestClient

from bazaar.utils import cache_keys, rcache
from bazaar.utils.rcache import MISS

GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"


def _mount_client(monkeypatch):
    rcache.clear()
    from bazaar.main import app
    return TestClient(app)


def _as(user):
    return {"X-User-Id": user.id}


def test_error_envelope(monkeypatch, make_user, make_product):
    client = _mount_client(monkeypatch)
    p = make_product(make_user())

    r = client.get("/products/does-not-exist")
    assert r.status_code == 404
    assert r.json() == {"status": "error", "message": r.json()["message"], "code": "not_found"}

    r = client.get("/recommendations/bogus")
    assert r.status_code == 400 and r.json()["code"] == "validation_error"

    r = client.get("/recommendations/new?timeRange=7d")
    assert r.status_code == 400

    r = client.post(f"/products/{p.slug}/upvote")
    assert r.status_code == 401 and r.json()["code"] == "unauthenticated"

    r = client.get("/products?limit=0")
    assert r.status_code == 400 and r.json()["status"] == "error"


def test_upvote_and_bookmark_toggles(monkeypatch, make_user, make_product):
    client = _mount_client(monkeypatch)
    maker, fan = make_user(), make_user()
    p = make_product(maker)

    r = client.post(f"/products/{p.slug}/upvote", headers=_as(fan))
    assert r.status_code == 200
    assert r.json() == {"success": True, "upvoted": True, "upvoteCount": 1}

    r = client.post(f"/products/{p.slug}/bookmark", headers=_as(fan))
    assert r.json() == {"success": True, "bookmarked": True, "bookmarkCount": 1}

    detail = client.get(f"/products/{p.slug}", headers=_as(fan)).json()["data"]
    assert detail["upvoteCount"] == 1 and detail["bookmarkCount"] == 1
    assert detail["userInteractions"]["upvoted"] is True

    r = client.post(f"/products/{p.slug}/upvote", headers=_as(fan))
    assert r.json() == {"success": True, "upvoted": False, "upvoteCount": 0}
    assert client.get(f"/products/{p.slug}").json()["data"]["upvoteCount"] == 0


def test_self_upvote_forbidden(monkeypatch, make_user, make_product):
    client = _mount_client(monkeypatch)
    maker = make_user()
    p = make_product(maker)
    r = client.post(f"/products/{p.slug}/upvote", headers=_as(maker))
    assert r.status_code == 403
    assert r.json()["code"] == "self_interaction"


def test_bot_views_are_stored_but_not_counted(monkeypatch, make_user, make_product):
    client = _mount_client(monkeypatch)
    maker, fan = make_user(), make_user()
    p = make_product(maker)
    bot_headers = {**_as(fan), "User-Agent": GOOGLEBOT}

    r = client.post(
        "/interactions",
        json={"productId": p.id, "type": "view", "metadata": {"duration": 30, "scrolls": 5}},
        headers=bot_headers,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["isBot"] is True
    assert body["viewCount"] == 0 and body["uniqueViewerCount"] == 0

    # bots read through the anonymous cache entries
    client.get(f"/products/{p.slug}", headers=bot_headers)
    assert rcache.CACHE.get(cache_keys.product_detail(p.slug, None)).hit != MISS
    assert rcache.CACHE.get(cache_keys.product_detail(p.slug, fan.id)).hit == MISS


def test_human_view_and_impression(monkeypatch, make_user, make_product):
    client = _mount_client(monkeypatch)
    maker, fan = make_user(), make_user()
    p = make_product(maker)

    r = client.post(
        "/interactions",
        json={"productId": p.slug, "metadata": {"duration": 12, "scrolls": 2, "sessionId": "s1"}},
        headers=_as(fan),
    )
    assert r.json()["recorded"] is True
    assert r.json()["viewCount"] == 1 and r.json()["uniqueViewerCount"] == 1

    r = client.post("/interactions", json={"productId": p.id, "type": "impression", "position": 3}, headers=_as(fan))
    assert r.json()["recorded"] is False

    # makers looking at their own page are not counted
    r = client.post("/interactions", json={"productId": p.id, "metadata": {"duration": 12, "scrolls": 2}}, headers=_as(maker))
    assert r.json()["recorded"] is False
    assert client.get(f"/products/{p.slug}").json()["data"]["viewCount"] == 1


def test_push_fan_out_to_subscribers(monkeypatch, make_user, make_product):
    maker, fan = make_user(), make_user()
    p = make_product(maker)
    rcache.clear()
    from bazaar.main import app

    with TestClient(app) as client:
        client.get(f"/products/{p.slug}")  # warm the detail cache
        with client.websocket_connect("/ws") as ws1, client.websocket_connect("/ws") as ws2:
            for ws in (ws1, ws2):
                ws.send_json({"subscribe": p.id})
                assert ws.receive_json() == {"kind": "subscribed", "productId": p.id}

            r = client.post(f"/products/{p.slug}/upvote", headers=_as(fan))
            assert r.status_code == 200

            for ws in (ws1, ws2):
                event = ws.receive_json()
                assert event["kind"] == "product:upvote"
                assert event["productId"] == p.id
                assert event["action"] == "add" and event["count"] == 1
                # nothing else was queued ahead of the pong
                ws.send_json({"type": "ping"})
                assert ws.receive_json() == {"kind": "pong"}

        # the cached detail was purged by the write
        assert client.get(f"/products/{p.slug}").json()["data"]["upvoteCount"] == 1


def test_push_rejects_garbage(monkeypatch):
    client = _mount_client(monkeypatch)
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["kind"] == "error"
        ws.send_json({"what": "ever"})
        assert ws.receive_json()["kind"] == "error"


def test_owner_writes_and_lock(monkeypatch, make_user, make_product):
    client = _mount_client(monkeypatch)
    maker, stranger = make_user(), make_user()
    admin = make_user(role="admin")
    p = make_product(maker)

    r = client.patch(f"/products/{p.slug}", json={"tagline": "Shiny"}, headers=_as(maker))
    assert r.status_code == 200 and r.json()["data"]["tagline"] == "Shiny"

    assert client.patch(f"/products/{p.slug}", json={"tagline": "Mine"}, headers=_as(stranger)).status_code == 403
    assert client.patch(f"/products/{p.slug}", json={"locked": True}, headers=_as(maker)).status_code == 403
    assert client.patch(f"/products/{p.slug}", json={"locked": True}, headers=_as(admin)).status_code == 200

    r = client.patch(f"/products/{p.slug}", json={"tagline": "Again"}, headers=_as(maker))
    assert r.status_code == 403 and r.json()["code"] == "product_locked"
    assert client.delete(f"/products/{p.slug}", headers=_as(maker)).status_code == 403

    assert client.delete(f"/products/{p.slug}", headers=_as(admin)).status_code == 200
    assert client.get(f"/products/{p.slug}").status_code == 404


def test_create_product(monkeypatch, make_user):
    client = _mount_client(monkeypatch)
    maker = make_user()
    r = client.post("/products", json={"name": "Launch Pad", "status": "Published", "tags": ["AI", "ai"]}, headers=_as(maker))
    assert r.status_code == 201
    data = r.json()["data"]
    assert data["slug"] == "launch-pad" and data["tags"] == ["ai"]

    again = client.post("/products", json={"name": "Launch Pad"}, headers=_as(maker))
    assert again.json()["data"]["slug"] == "launch-pad-2"
    assert client.post("/products", json={"name": "Nope"}).status_code == 401


def test_comments(monkeypatch, make_user, make_product):
    client = _mount_client(monkeypatch)
    maker, fan, other = make_user(), make_user(), make_user()
    p = make_product(maker)

    r = client.post(f"/products/{p.slug}/comments", json={"text": "  great  "}, headers=_as(fan))
    assert r.status_code == 201
    comment_id = r.json()["id"]
    assert r.json()["commentCount"] == 1

    assert client.post(f"/products/{p.slug}/comments", json={"text": "   "}, headers=_as(fan)).status_code == 400
    assert client.delete(f"/products/{p.slug}/comments/{comment_id}", headers=_as(other)).status_code == 403

    r = client.delete(f"/products/{p.slug}/comments/{comment_id}", headers=_as(fan))
    assert r.status_code == 200 and r.json()["commentCount"] == 0


def test_page_sections_share_a_cycle(monkeypatch, make_user, make_product, make_category):
    client = _mount_client(monkeypatch)
    makers = [make_user() for _ in range(4)]
    cats = [make_category() for _ in range(3)]
    for i in range(10):
        make_product(makers[i % 4], cats[i % 3], age_days=1 + i)

    r = client.post(
        "/recommendations/page",
        json={"sections": [{"strategy": "trending", "limit": 4}, {"type": "latest", "count": 4}]},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["cycleId"]
    first, second = body["sections"]
    assert second["strategy"] == "new"
    a = {x["product"]["id"] for x in first["recommendations"]}
    b = {x["product"]["id"] for x in second["recommendations"]}
    assert a and b and not (a & b)

    bad = client.post("/recommendations/page", json={"sections": [{"strategy": "trending", "limit": 999}]})
    assert bad.status_code == 400


def test_search(monkeypatch, make_user, make_product):
    client = _mount_client(monkeypatch)
    maker = make_user()
    make_product(maker, name="Rocket Notes", tagline="Notes at launch speed")
    make_product(maker, name="Calendar Pal")

    r = client.get("/search?q=rocket")
    assert r.status_code == 200
    body = r.json()
    assert body["query"] == "rocket" and body["page"] == 1
    assert [x["product"]["name"] for x in body["recommendations"]] == ["Rocket Notes"]

    assert client.get("/search?q=").status_code == 400


def test_trending_never_shows_private_products(monkeypatch, make_user, make_product):
    client = _mount_client(monkeypatch)
    admin = make_user(role="admin")
    public = make_product(make_user(), name="Open Board")
    hidden = make_product(make_user(), name="Secret Board", visibility="private")

    as_admin = client.get("/products/trending?timeRange=7d&limit=10", headers=_as(admin))
    assert as_admin.status_code == 200
    anon = client.get("/products/trending?timeRange=7d&limit=10")
    assert anon.status_code == 200
    assert anon.json()["cache"] == "fresh"

    for body in (as_admin.json(), anon.json()):
        ids = {x["product"]["id"] for x in body["recommendations"]}
        assert public.id in ids
        assert hidden.id not in ids


def test_search_pages_past_the_window_are_refused(monkeypatch, make_user, make_product):
    client = _mount_client(monkeypatch)
    for i in range(3):
        make_product(make_user(), name=f"Widget {i}")

    first = client.get("/search?q=widget&page=1&limit=50")
    assert first.status_code == 200 and first.json()["count"] == 3

    deep = client.get("/search?q=widget&page=9&limit=50")
    assert deep.status_code == 400
    assert deep.json()["code"] == "validation_error"


def test_page_releases_the_cycle_it_allocated(monkeypatch, make_user, make_product):
    from bazaar.services.dedup import DEDUP

    client = _mount_client(monkeypatch)
    makers = [make_user() for _ in range(3)]
    for i in range(6):
        make_product(makers[i % 3], age_days=1 + i)
    before = len(DEDUP)

    r = client.post("/recommendations/page", json={"sections": [{"strategy": "trending", "limit": 3}]})
    assert r.status_code == 200
    assert len(DEDUP) <= before
    assert DEDUP.claimed(r.json()["cycleId"]) == set()

    kept = client.post(
        "/recommendations/page",
        json={"cycleId": "client-cycle", "sections": [{"strategy": "new", "limit": 3}]},
    )
    assert kept.status_code == 200
    assert DEDUP.claimed("client-cycle")
    DEDUP.release("client-cycle")
