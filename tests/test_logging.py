# =============================================
# File: tests/test_logging.py
# =============================================
import sys, os, json
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from fastapi.testclient import TestClient
from bazaar.utils import rcache


def _mount_client(monkeypatch):
    rcache.clear()
    from bazaar.main import app
    return TestClient(app)


def _find_json_event(caplog, name: str):
    found = None
    for rec in caplog.records:
        try:
            data = json.loads(rec.message)
        except ValueError:
            continue
        if isinstance(data, dict) and data.get("event") == name:
            found = data
    return found


def test_structured_log_on_success(monkeypatch, caplog, make_user, make_product):
    caplog.set_level("INFO", logger="bazaar")
    maker = make_user()
    make_product(maker)
    client = _mount_client(monkeypatch)

    r = client.get("/recommendations/new?limit=2", headers={"X-User-Id": maker.id})
    assert r.status_code == 200
    assert r.headers.get("X-Request-ID")

    evt = _find_json_event(caplog, "request.completed")
    assert evt is not None
    assert evt["path"] == "/recommendations/new"
    assert evt["request_id"] == r.headers["X-Request-ID"]
    assert isinstance(evt["latency_ms"], int)
    # fields set by the router and the middleware
    assert evt["strategy"] == "new"
    assert evt["cache"] == "miss"
    assert evt["user_id"] == maker.id
    assert evt["is_bot"] is False
    assert evt["rate_limited"] is False


def test_structured_log_rate_limited(monkeypatch, caplog):
    caplog.set_level("INFO", logger="bazaar")
    client = _mount_client(monkeypatch)
    monkeypatch.setenv("RL_RECOMMENDATION_MAX", "1")

    _ = client.get("/recommendations/trending")
    r = client.get("/recommendations/trending")
    assert r.status_code == 429

    evt = _find_json_event(caplog, "request.completed")
    assert evt is not None
    assert evt["status"] == 429
    assert evt["rate_limited"] is True


def test_unhandled_error_logs_and_hides_details(monkeypatch, caplog):
    caplog.set_level("INFO", logger="bazaar")
    import bazaar.routers.search as smod

    async def _boom(*a, **kw):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(smod.ASSEMBLER, "search", _boom)
    from bazaar.main import app
    client = TestClient(app, raise_server_exceptions=False)

    r = client.get("/search?q=anything")
    assert r.status_code == 500
    assert r.json() == {"status": "error", "message": "Something went wrong!", "code": "internal_error"}
    evt = _find_json_event(caplog, "request.error")
    assert evt is not None
    assert evt["path"] == "/search"
    assert "secret internals" in evt["error"]
