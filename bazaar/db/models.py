# =============================================
# File: bazaar/db/models.py
# Purpose: SQLModel ORM definitions: catalog (categories, products), users,
#          toggleable interactions (upvote/bookmark/comment) and append-only views.
# =============================================

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, Index, text
from sqlmodel import Field, SQLModel

from ..utils.timing import utcnow


def new_id() -> str:
    return uuid4().hex


PRODUCT_STATUSES = ("Draft", "Published", "Archived")
VISIBILITIES = ("public", "private")
TOGGLE_KINDS = ("upvote", "bookmark")
INTERACTION_KINDS = ("view", "upvote", "bookmark", "comment", "remove_upvote", "remove_bookmark")


class Category(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    slug: str = Field(index=True, unique=True)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True)
    email: Optional[str] = Field(default=None, index=True, unique=True)
    phone: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    role: str = "user"
    secondary_roles: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    # {"categories": {category_id: weight}, "tags": {tag: weight}}
    preferences: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    password_hash: Optional[str] = None
    is_email_verified: bool = False
    is_phone_verified: bool = False
    last_password_verified_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin" or "admin" in (self.secondary_roles or [])


class Product(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    slug: str = Field(index=True, unique=True)
    name: str
    tagline: str = ""
    description: str = ""
    maker_id: str = Field(foreign_key="users.id", index=True)
    category_id: Optional[str] = Field(default=None, foreign_key="category.id", index=True)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    status: str = Field(default="Draft", index=True)
    visibility: str = "public"
    price: Optional[float] = None
    locked: bool = False
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)

    # Derived counters, written only by the interaction store
    upvote_count: int = 0
    bookmark_count: int = 0
    comment_count: int = 0
    view_count: int = 0
    unique_viewer_count: int = 0


class Interaction(SQLModel, table=True):
    """Toggleable engagement: at most one active upvote/bookmark per (user, product)."""

    __table_args__ = (
        Index(
            "ux_interaction_active_toggle",
            "user_id",
            "product_id",
            "kind",
            unique=True,
            sqlite_where=text("active = 1 AND kind IN ('upvote', 'bookmark')"),
            postgresql_where=text("active AND kind IN ('upvote', 'bookmark')"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    product_id: str = Field(foreign_key="product.id", index=True)
    kind: str = Field(index=True)
    active: bool = True
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
    revoked_at: Optional[datetime] = None


class View(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    product_id: str = Field(foreign_key="product.id", index=True)
    user_id: Optional[str] = Field(default=None, index=True)
    session_id: Optional[str] = None
    client_ip: Optional[str] = None
    source: Optional[str] = None
    position: Optional[int] = None
    duration: float = 0.0
    scrolls: int = 0
    mouse_moves: int = 0
    key_events: int = 0
    is_bot: bool = False
    created_at: datetime = Field(default_factory=utcnow, index=True)
