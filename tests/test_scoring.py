# =============================================
# File: tests/test_scoring.py
# Purpose: Scoring kernel properties and boundary cases
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from datetime import datetime

import pytest

from bazaar.utils.config import scoring_weights
from bazaar.utils.explain import explain
from bazaar.utils.records import Candidate, TimeContext, UserContext
from bazaar.utils.scoring import (
    MIN_SCORE,
    ScoringContext,
    base_detail,
    diversity_score,
    engagement_score,
    finalize,
    normalize,
    quality_score,
    score_candidate,
    trending_score,
)

NOW = datetime(2024, 5, 15, 3, 0)  # Wednesday, off-peak


def _cand(cid="p1", **kw):
    kw.setdefault("slug", cid)
    kw.setdefault("name", cid.upper())
    kw.setdefault("maker_id", "m1")
    kw.setdefault("created_at", NOW)
    return Candidate(id=cid, **kw)


def _ctx(strategy, **kw):
    return ScoringContext(strategy=strategy, weights=scoring_weights(), time=TimeContext.at(NOW), now=NOW, **kw)


def test_new_product_boundaries():
    c = _cand()
    w = scoring_weights()
    assert engagement_score(c, w) == 0
    assert trending_score(c, w) == 0
    assert quality_score(c) == 5


def test_views_without_upvotes_caps_quality():
    c = _cand(views=1000, upvotes=0)
    assert quality_score(c) <= 3


@pytest.mark.parametrize("strategy", ["trending", "new", "category", "personalized", "collaborative", "default"])
def test_final_score_is_normalized(strategy):
    samples = [
        _cand("a"),
        _cand("b", views=10_000_000, upvotes=900_000, bookmarks=50_000, comments=40_000, recent_views=90_000, recent_upvotes=5000),
        _cand("c", views=3, age_in_days=400),
    ]
    for c in samples:
        d = score_candidate(c, _ctx(strategy))
        assert MIN_SCORE <= d.final <= 1.0


def test_normalize_handles_zero_and_nan():
    assert normalize(0) == MIN_SCORE
    assert normalize(float("nan")) == MIN_SCORE
    assert normalize(-5) == MIN_SCORE


def test_normalize_is_deterministic_per_id():
    assert normalize(2.0, "abc") == normalize(2.0, "abc")


def test_trending_cold_start_beats_old_heavy_product():
    # P2: one day old, all of its engagement inside the window
    p2 = _cand("p2", views=20, upvotes=5, recent_views=20, recent_upvotes=5, age_in_days=1)
    # P3: sixty days old, most engagement happened long before the window
    p3 = _cand("p3", views=2000, upvotes=50, recent_views=20, recent_upvotes=1, age_in_days=60)
    w = scoring_weights()
    assert trending_score(p2, w) >= trending_score(p3, w)


def test_similar_source_scores_below_kept_candidates():
    source = _cand("src", category_id="c1", tags=("ai", "api"), views=500, upvotes=40)
    other = _cand("o1", maker_id="m2", category_id="c1", tags=("ai",), views=5, upvotes=1)
    ctx = _ctx("similar", source=source)
    s_src = score_candidate(source, ctx)
    s_other = score_candidate(other, ctx)
    assert s_src.penalty == pytest.approx(0.01)
    assert s_src.final < s_other.final


def test_recent_view_penalty_applies_to_personalized():
    user = UserContext(user_id="u1", recent_view_ids=frozenset({"seen"}), category_prefs={"c1": 1.0})
    seen = _cand("seen", category_id="c1", views=50, upvotes=10)
    fresh = _cand("fresh", category_id="c1", views=50, upvotes=10)
    anon_like = score_candidate(seen, _ctx("personalized", user=UserContext(user_id="u2", category_prefs={"c1": 1.0})))
    penalized = score_candidate(seen, _ctx("personalized", user=user))
    assert penalized.final <= 0.2 * anon_like.final + 1e-9
    assert score_candidate(fresh, _ctx("personalized", user=user)).final > penalized.final


def test_diversity_prefers_unseen_category_and_maker():
    w = scoring_weights()
    chosen = [_cand("x", category_id="c1", maker_id="m1", tags=("ai",))]
    same = _cand("y", category_id="c1", maker_id="m1", tags=("ai",))
    different = _cand("z", category_id="c2", maker_id="m2", tags=("design",))
    assert diversity_score(different, chosen, w) > diversity_score(same, chosen, w)
    assert diversity_score(same, [], w) == 1.0


def test_type_multiplier_env_override(monkeypatch):
    c = _cand(views=100, upvotes=10)
    d1 = finalize(c, base_detail(c, _ctx("default")), "default", 1.0)
    monkeypatch.setenv("TYPE_MULTIPLIER_DEFAULT", "3.0")
    d2 = finalize(c, base_detail(c, _ctx("default")), "default", 1.0)
    assert d2.raw == pytest.approx(d1.raw * 3.0)


def test_scoring_weight_env_override(monkeypatch):
    monkeypatch.setenv("SCORING_VIEWS_WEIGHT", "0.0")
    c = _cand(views=1000)
    assert engagement_score(c, scoring_weights()) == 0


def test_explanation_is_deterministic_and_non_empty():
    c = _cand(views=300, upvotes=30, recent_views=100, recent_upvotes=10, age_in_days=2, category_name="AI")
    d = score_candidate(c, _ctx("trending"))
    text = explain(c, "trending", d)
    assert text and text == explain(c, "trending", d)
