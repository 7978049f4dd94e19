# =============================================
# File: bazaar/db/repo.py
# Purpose: DB repository bootstrap: configure engine from DB_URL (default SQLite),
#          expose init_db() and a session factory.
# =============================================

import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from . import models  # noqa: F401  (registers tables on SQLModel.metadata)

DB_URL = os.getenv("DB_URL", "sqlite:///./bazaar.db")


def _make_engine(url: str):
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False, "timeout": 30}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=False, **kwargs)
    return create_engine(url, echo=False, pool_pre_ping=True)


engine = _make_engine(DB_URL)


def configure(url: str) -> None:
    """Rebind the module engine (tests point this at a temp file)."""
    global engine
    engine.dispose()
    engine = _make_engine(url)


def init_db() -> None:
    SQLModel.metadata.create_all(engine)


def drop_db() -> None:
    SQLModel.metadata.drop_all(engine)


@contextmanager
def session() -> Iterator[Session]:
    with Session(engine, expire_on_commit=False) as s:
        yield s
