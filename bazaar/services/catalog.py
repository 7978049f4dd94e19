# =============================================
# File: bazaar/services/catalog.py
# Purpose: Product catalog: lookups, paginated listing, detail view and the
#          owner/admin write paths (create, update, delete).
# =============================================

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import delete as sa_delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from ..db import repo
from ..db.models import PRODUCT_STATUSES, VISIBILITIES, Category, Interaction, Product, User, View
from ..utils.errors import Conflict, Forbidden, NotFound, Unauthenticated, ValidationError
from ..utils.timing import utcnow
from . import gate
from .bus import BUS, InvalidationBus
from .candidates import FETCHER, CandidateFetcher, CandidateQuery
from .context import RequestContext
from .interactions import STORE, InteractionStore

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    slug = _SLUG_RE.sub("-", (text or "").strip().lower()).strip("-")
    return slug or "product"


def _clean_tags(v: Optional[List[str]]) -> List[str]:
    if v is None:
        return v  # type: ignore[return-value]
    return sorted({t.strip().lower() for t in v if t and t.strip()})


class ProductIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=120)
    slug: Optional[str] = Field(None, max_length=140)
    tagline: str = Field("", max_length=200)
    description: str = Field("", max_length=5000)
    category_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: str = "Draft"
    visibility: str = "public"
    price: Optional[float] = Field(None, ge=0)

    @field_validator("tags")
    @classmethod
    def _tags(cls, v):
        return _clean_tags(v)

    @field_validator("status")
    @classmethod
    def _status(cls, v: str) -> str:
        if v not in PRODUCT_STATUSES:
            raise ValueError(f"status must be one of {', '.join(PRODUCT_STATUSES)}")
        return v

    @field_validator("visibility")
    @classmethod
    def _visibility(cls, v: str) -> str:
        if v not in VISIBILITIES:
            raise ValueError(f"visibility must be one of {', '.join(VISIBILITIES)}")
        return v


class ProductPatch(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=120)
    slug: Optional[str] = Field(None, max_length=140)
    tagline: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    category_id: Optional[str] = None
    tags: Optional[List[str]] = None
    status: Optional[str] = None
    visibility: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    locked: Optional[bool] = None

    @field_validator("tags")
    @classmethod
    def _tags(cls, v):
        return _clean_tags(v)

    @field_validator("status")
    @classmethod
    def _status(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in PRODUCT_STATUSES:
            raise ValueError(f"status must be one of {', '.join(PRODUCT_STATUSES)}")
        return v

    @field_validator("visibility")
    @classmethod
    def _visibility(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in VISIBILITIES:
            raise ValueError(f"visibility must be one of {', '.join(VISIBILITIES)}")
        return v


def product_payload(p: Product, maker: Optional[User] = None, category: Optional[Category] = None) -> Dict[str, Any]:
    return {
        "id": p.id,
        "slug": p.slug,
        "name": p.name,
        "tagline": p.tagline,
        "description": p.description,
        "tags": list(p.tags or []),
        "status": p.status,
        "visibility": p.visibility,
        "price": p.price,
        "locked": p.locked,
        "createdAt": p.created_at.isoformat(),
        "updatedAt": p.updated_at.isoformat(),
        "maker": {
            "id": p.maker_id,
            "name": f"{maker.first_name} {maker.last_name}".strip() if maker else "",
        },
        "category": (
            {"id": category.id, "name": category.name, "slug": category.slug} if category else None
        ),
        "upvoteCount": p.upvote_count,
        "bookmarkCount": p.bookmark_count,
        "commentCount": p.comment_count,
        "viewCount": p.view_count,
        "uniqueViewerCount": p.unique_viewer_count,
    }


class Catalog:
    def __init__(
        self,
        store: InteractionStore = STORE,
        bus: InvalidationBus = BUS,
        fetcher: CandidateFetcher = FETCHER,
    ) -> None:
        self._store = store
        self._bus = bus
        self._fetcher = fetcher

    # ---------- lookups ----------

    def get(self, ref: str) -> Optional[Product]:
        """By slug first, then by id."""
        with repo.session() as s:
            p = s.exec(select(Product).where(Product.slug == ref)).first()
            return p if p is not None else s.get(Product, ref)

    def require(self, ref: str) -> Product:
        p = self.get(ref)
        if p is None:
            raise NotFound("Product not found")
        return p

    # ---------- reads ----------

    def list_products(
        self,
        ctx: RequestContext,
        *,
        page: int = 1,
        limit: int = 20,
        sort: str = "newest",
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        query = CandidateQuery(
            category_ids=[category] if category else [],
            tags=tags or [],
            search=search,
            sort=sort,
        )
        # page * limit bounds the fetch; the fetcher's own cap applies on top
        rows = self._fetcher.fetch_sync(query, page * limit, is_admin=ctx.is_admin, overfetch=1, now=ctx.now)
        start = (page - 1) * limit
        items = [c.summary() for c in rows[start : start + limit]]
        return {
            "products": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "hasMore": len(rows) >= page * limit,
            },
        }

    def product_detail(self, ctx: RequestContext, slug: str) -> Dict[str, Any]:
        product = gate.READ.evaluate(ctx, self.get(slug), "view")
        with repo.session() as s:
            maker = s.get(User, product.maker_id)
            category = s.get(Category, product.category_id) if product.category_id else None
        body = product_payload(product, maker, category)
        if ctx.user_id and not ctx.is_bot:
            body["userInteractions"] = self._store.active_kinds(ctx.user_id, product.id)
        return body

    # ---------- writes ----------

    def _unique_slug(self, s, wanted: str, skip_id: Optional[str] = None) -> str:
        base = slugify(wanted)
        candidate, n = base, 1
        while True:
            clash = s.exec(select(Product).where(Product.slug == candidate)).first()
            if clash is None or clash.id == skip_id:
                return candidate
            n += 1
            candidate = f"{base}-{n}"

    def create_product(self, ctx: RequestContext, data: ProductIn) -> Dict[str, Any]:
        if not ctx.user_id:
            raise Unauthenticated("Authentication required")
        with repo.session() as s:
            if data.category_id and s.get(Category, data.category_id) is None:
                raise ValidationError("Specified category not found")
            product = Product(
                slug=self._unique_slug(s, data.slug or data.name),
                name=data.name.strip(),
                tagline=data.tagline,
                description=data.description,
                maker_id=ctx.user_id,
                category_id=data.category_id,
                tags=data.tags,
                status=data.status,
                visibility=data.visibility,
                price=data.price,
            )
            s.add(product)
            s.commit()
        logger.info(f"[catalog] created product={product.id} slug={product.slug} maker={ctx.user_id}")
        self._bus.on_product_update(product.id, product.slug, ctx.user_id, {"created": True, "status": product.status})
        return product_payload(product)

    def update_product(self, ctx: RequestContext, slug: str, patch: ProductPatch) -> Dict[str, Any]:
        changes = patch.model_dump(exclude_unset=True)
        if not changes:
            raise ValidationError("No fields to update")
        if "locked" in changes and not ctx.is_admin:
            raise Forbidden("Only admins can lock or unlock products")

        current = gate.MODIFY.evaluate(ctx, self.get(slug), "modify")
        old_slug = current.slug
        try:
            with repo.session() as s:
                product = s.get(Product, current.id)
                if product is None:
                    raise NotFound("Product not found")
                if "category_id" in changes and changes["category_id"] and s.get(Category, changes["category_id"]) is None:
                    raise ValidationError("Specified category not found")
                if "slug" in changes:
                    wanted = slugify(changes["slug"] or product.name)
                    clash = s.exec(select(Product).where(Product.slug == wanted)).first()
                    if clash is not None and clash.id != product.id:
                        raise Conflict("Slug already in use")
                    changes["slug"] = wanted
                for name, value in changes.items():
                    setattr(product, name, value)
                product.updated_at = utcnow()
                s.add(product)
                s.commit()
        except IntegrityError as e:
            raise Conflict("Product update conflicts with an existing product") from e

        logger.info(f"[catalog] updated product={product.id} fields={sorted(changes)}")
        self._bus.on_product_update(product.id, product.slug, ctx.user_id, changes, old_slug=old_slug)
        return product_payload(product)

    def delete_product(self, ctx: RequestContext, slug: str) -> Dict[str, Any]:
        current = gate.MODIFY.evaluate(ctx, self.get(slug), "delete")
        with repo.session() as s:
            s.exec(sa_delete(Interaction).where(Interaction.product_id == current.id))
            s.exec(sa_delete(View).where(View.product_id == current.id))
            product = s.get(Product, current.id)
            if product is not None:
                s.delete(product)
            s.commit()
        logger.info(f"[catalog] deleted product={current.id} slug={current.slug}")
        self._bus.on_product_update(current.id, current.slug, ctx.user_id, {"deleted": True}, action="remove")
        return {"success": True, "id": current.id}


CATALOG = Catalog()


