# =============================================
# File: tests/test_metrics.py
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from fastapi.testclient import TestClient
from bazaar.utils.metrics import reset as metrics_reset


def _mount_client(monkeypatch):
    metrics_reset()
    from bazaar.main import app
    return TestClient(app)


def test_metrics_counts_and_strategies(monkeypatch, make_user, make_product):
    maker = make_user()
    for _ in range(3):
        make_product(maker)
    client = _mount_client(monkeypatch)
    for _ in range(2):
        r = client.get("/recommendations/trending?limit=3")
        assert r.status_code == 200

    m = client.get("/metrics").json()
    assert m["counters"]["requests_total"] >= 2
    assert m["strategy_usage"].get("trending", 0) == 2
    # first request missed, second was served from cache
    assert m["counters"]["cache_miss_total"] >= 1
    assert m["counters"]["cache_fresh_total"] >= 1
    # histogram consistency: sum of buckets equals requests_total
    hist_sum = sum(m["latency_ms"]["counts"])
    assert hist_sum == m["counters"]["requests_total"]
    assert "cache_entries" in m["gauges"]


def test_rate_limit_is_counted(monkeypatch):
    client = _mount_client(monkeypatch)
    # Tight limiter
    monkeypatch.setenv("RL_SEARCH_MAX", "1")
    _ = client.get("/search?q=ping")
    r = client.get("/search?q=ping again")
    assert r.status_code == 429
    m = client.get("/metrics").json()
    assert m["counters"]["rate_limit_hits_total"] >= 1


def test_bot_requests_are_counted(monkeypatch):
    client = _mount_client(monkeypatch)
    client.get("/health", headers={"User-Agent": "Mozilla/5.0 (compatible; Googlebot/2.1)"})
    client.get("/health")
    m = client.get("/metrics").json()
    assert m["counters"]["bot_requests_total"] == 1


def test_endpoint_performance_uses_route_templates(monkeypatch, make_user, make_product):
    maker = make_user()
    p = make_product(maker)
    client = _mount_client(monkeypatch)
    assert client.get(f"/products/{p.slug}").status_code == 200

    eps = client.get("/metrics").json()["performance"]["endpoints"]
    assert "GET /products/{slug}" in eps
    for k, v in eps.items():
        assert "count" in v
        assert "avg_latency_ms" in v
        assert "p95_latency_ms" in v
