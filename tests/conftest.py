# =============================================
# File: tests/conftest.py
# Purpose: Temp SQLite database per test, reset of in-process state, and
#          small row factories
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from datetime import timedelta
from itertools import count

import pytest

from bazaar.db import repo
from bazaar.db.models import Category, Product, User
from bazaar.utils import metrics, rcache
from bazaar.utils.botdetect import reset_sessions
from bazaar.utils.ratelimit import reset_rate_limit
from bazaar.utils.timing import utcnow

_seq = count(1)


@pytest.fixture(autouse=True)
def fresh_state(tmp_path, monkeypatch):
    monkeypatch.setenv("RL_MAX_REQS", "1000")
    repo.configure(f"sqlite:///{tmp_path / 'bazaar.db'}")
    repo.init_db()
    rcache.clear()
    reset_rate_limit()
    reset_sessions()
    metrics.reset()
    yield
    rcache.clear()
    repo.engine.dispose()


@pytest.fixture
def make_user():
    def _make(**kw):
        n = next(_seq)
        kw.setdefault("email", f"user{n}@bazaar.test")
        kw.setdefault("first_name", f"User{n}")
        with repo.session() as s:
            u = User(**kw)
            s.add(u)
            s.commit()
            return u

    return _make


@pytest.fixture
def make_category():
    def _make(name=None):
        n = next(_seq)
        name = name or f"Category {n}"
        with repo.session() as s:
            c = Category(name=name, slug=f"cat-{n}")
            s.add(c)
            s.commit()
            return c

    return _make


@pytest.fixture
def make_product():
    def _make(maker, category=None, age_days=1.0, **kw):
        n = next(_seq)
        created = utcnow() - timedelta(days=age_days)
        kw.setdefault("name", f"Product {n}")
        kw.setdefault("slug", f"product-{n}")
        kw.setdefault("status", "Published")
        with repo.session() as s:
            p = Product(
                maker_id=maker.id,
                category_id=category.id if category is not None else None,
                created_at=created,
                updated_at=created,
                **kw,
            )
            s.add(p)
            s.commit()
            return p

    return _make


@pytest.fixture
def reload():
    """Fresh copy of a product row (counters included)."""

    def _get(product_id):
        with repo.session() as s:
            return s.get(Product, product_id)

    return _get
