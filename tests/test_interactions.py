# =============================================
# File: tests/test_interactions.py
# Purpose: Interaction store: toggle idempotence, counter consistency,
#          concurrent toggles, self-interaction, views and preference learning
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import threading

import pytest
from sqlmodel import func, select

from bazaar.db import repo
from bazaar.db.models import Interaction, User
from bazaar.services.interactions import InteractionStore
from bazaar.utils.errors import Forbidden, NotFound, ValidationError


def _active(product_id, kind):
    with repo.session() as s:
        return s.exec(
            select(func.count()).select_from(Interaction).where(
                Interaction.product_id == product_id,
                Interaction.kind == kind,
                Interaction.active == True,  # noqa: E712
            )
        ).one()


def test_toggle_twice_is_identity(make_user, make_product, reload):
    store = InteractionStore()
    maker, fan = make_user(), make_user()
    p = make_product(maker)

    first = store.toggle_upvote(fan.id, p.id)
    assert first.now_active and first.new_count == 1
    second = store.toggle_upvote(fan.id, p.id)
    assert not second.now_active and second.new_count == 0

    assert reload(p.id).upvote_count == 0
    assert _active(p.id, "upvote") == 0


def test_counters_match_active_rows(make_user, make_product, reload):
    store = InteractionStore()
    maker = make_user()
    p = make_product(maker)
    fans = [make_user() for _ in range(4)]
    for u in fans:
        store.toggle_upvote(u.id, p.id)
        store.toggle_bookmark(u.id, p.id)
    store.toggle_bookmark(fans[0].id, p.id)
    store.add_comment(fans[1].id, p.id, "Nice!")

    row = reload(p.id)
    assert row.upvote_count == _active(p.id, "upvote") == 4
    assert row.bookmark_count == _active(p.id, "bookmark") == 3
    assert row.comment_count == _active(p.id, "comment") == 1


def test_concurrent_toggles_from_one_user(make_user, make_product, reload):
    store = InteractionStore()
    maker = make_user()
    p = make_product(maker)
    for _ in range(10):
        store.toggle_upvote(make_user().id, p.id)
    me = make_user()
    assert reload(p.id).upvote_count == 10

    barrier = threading.Barrier(2)
    errors = []

    def _go():
        barrier.wait()
        try:
            store.toggle_upvote(me.id, p.id)
        except Exception as e:  # surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=_go) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    final = reload(p.id).upvote_count
    assert final in (10, 11)
    mine = store.active_kinds(me.id, p.id)["upvoted"]
    assert final == 10 + int(mine)


def test_self_interaction_refused(make_user, make_product, reload):
    store = InteractionStore()
    maker = make_user()
    p = make_product(maker)
    for toggle in (store.toggle_upvote, store.toggle_bookmark):
        with pytest.raises(Forbidden) as exc:
            toggle(maker.id, p.id)
        assert exc.value.code == "self_interaction"
    row = reload(p.id)
    assert row.upvote_count == 0 and row.bookmark_count == 0


def test_missing_product_is_not_found(make_user):
    with pytest.raises(NotFound):
        InteractionStore().toggle_upvote(make_user().id, "nope")


def test_on_commit_sees_committed_result(make_user, make_product):
    store = InteractionStore()
    maker, fan = make_user(), make_user()
    p = make_product(maker)
    seen = []
    store.toggle_bookmark(fan.id, p.id, on_commit=seen.append)
    store.toggle_bookmark(fan.id, p.id, on_commit=seen.append)
    assert [(r.kind, r.now_active, r.new_count) for r in seen] == [("bookmark", True, 1), ("bookmark", False, 0)]
    assert seen[0].slug == p.slug


def test_bot_views_not_counted(make_user, make_product):
    store = InteractionStore()
    maker, viewer = make_user(), make_user()
    p = make_product(maker)
    human = store.record_view(p.id, viewer.id, "s1", duration=12, scrolls=2)
    assert human.view_count == 1 and human.unique_viewer_count == 1
    bot = store.record_view(p.id, None, "s2", duration=0.1, is_bot=True)
    assert bot.is_bot and bot.view_count == 1 and bot.unique_viewer_count == 1
    again = store.record_view(p.id, viewer.id, "s1", duration=8, scrolls=1)
    assert again.view_count == 2 and again.unique_viewer_count == 1


def test_preferences_learned_and_floored(make_user, make_product, make_category):
    store = InteractionStore()
    maker, fan = make_user(), make_user()
    cat = make_category()
    p = make_product(maker, cat, tags=["ai", "api"])

    store.toggle_upvote(fan.id, p.id)
    with repo.session() as s:
        prefs = s.get(User, fan.id).preferences
    assert prefs["categories"][cat.id] == pytest.approx(0.8)
    assert prefs["tags"]["ai"] == pytest.approx(0.8)

    store.toggle_upvote(fan.id, p.id)
    store.toggle_bookmark(fan.id, p.id)
    store.toggle_bookmark(fan.id, p.id)
    with repo.session() as s:
        prefs = s.get(User, fan.id).preferences
    assert prefs["categories"][cat.id] == 0.0


def test_recent_interactions_and_counters(make_user, make_product):
    store = InteractionStore()
    maker, fan = make_user(), make_user()
    a, b = make_product(maker), make_product(maker)
    store.record_view(a.id, fan.id, "s", duration=5, scrolls=1)
    store.toggle_upvote(fan.id, b.id)

    kinds = {(x.kind, x.product_id) for x in store.recent_interactions(fan.id)}
    assert ("view", a.id) in kinds and ("upvote", b.id) in kinds
    assert [x.product_id for x in store.recent_interactions(fan.id, kinds=["view"])] == [a.id]

    counters = store.product_counters([a.id, b.id])
    assert counters[a.id].recent_views == 1
    assert counters[b.id].upvotes == 1 and counters[b.id].recent_upvotes == 1


def test_comments_keep_count(make_user, make_product, reload):
    store = InteractionStore()
    maker, fan, other = make_user(), make_user(), make_user()
    p = make_product(maker)
    with pytest.raises(ValidationError):
        store.add_comment(fan.id, p.id, "   ")
    c = store.add_comment(fan.id, p.id, "first")
    assert c["commentCount"] == 1
    with pytest.raises(Forbidden):
        store.remove_comment(other.id, c["id"])
    assert store.remove_comment(fan.id, c["id"])["commentCount"] == 0
    assert reload(p.id).comment_count == 0
