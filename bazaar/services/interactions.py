# =============================================
# File: bazaar/services/interactions.py
# Purpose: Interaction store. Owns toggles (upvote/bookmark), comments, views
#          and the derived counters on Product; also learns user preferences.
# =============================================

from __future__ import annotations

import threading
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from loguru import logger
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from ..db import repo
from ..db.models import Interaction, Product, User, View
from ..utils.errors import Forbidden, NotFound, Upstream, ValidationError
from ..utils.timing import utcnow

# preference learning: weight added to the product's category and tags
PREFERENCE_DELTAS: Dict[str, float] = {
    "view": 0.2,
    "upvote": 0.8,
    "bookmark": 0.7,
    "comment": 0.5,
    "remove_upvote": -0.8,
    "remove_bookmark": -0.7,
}

_COUNTER_FIELD = {"upvote": "upvote_count", "bookmark": "bookmark_count", "comment": "comment_count"}


@dataclass(frozen=True)
class ToggleResult:
    kind: str
    product_id: str
    slug: str
    user_id: str
    now_active: bool
    new_count: int


@dataclass(frozen=True)
class ViewResult:
    recorded: bool
    is_bot: bool
    view_count: int
    unique_viewer_count: int


@dataclass(frozen=True)
class Counters:
    upvotes: int = 0
    bookmarks: int = 0
    comments: int = 0
    views: int = 0
    unique_viewers: int = 0
    recent_views: int = 0
    recent_upvotes: int = 0
    recent_comments: int = 0
    recent_bookmarks: int = 0


@dataclass(frozen=True)
class Activity:
    kind: str
    product_id: str
    created_at: datetime


class InteractionStore:
    """Only writer of Product counters.

    Writes on one product are serialized by a striped lock and every counter is
    recomputed from the active rows inside the same transaction, so a counter
    never disagrees with its interaction set. `on_commit` runs after commit but
    before the lock is released, which keeps per-product event order equal to
    commit order.
    """

    def __init__(self, stripes: int = 64) -> None:
        self._locks = [threading.Lock() for _ in range(max(1, stripes))]

    def _lock_for(self, product_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(product_id.encode("utf-8")) % len(self._locks)]

    # ---------- toggles ----------

    def toggle_upvote(
        self, user_id: str, product_id: str, on_commit: Optional[Callable[[ToggleResult], None]] = None
    ) -> ToggleResult:
        return self._toggle("upvote", user_id, product_id, on_commit)

    def toggle_bookmark(
        self, user_id: str, product_id: str, on_commit: Optional[Callable[[ToggleResult], None]] = None
    ) -> ToggleResult:
        return self._toggle("bookmark", user_id, product_id, on_commit)

    def _toggle(
        self,
        kind: str,
        user_id: str,
        product_id: str,
        on_commit: Optional[Callable[[ToggleResult], None]],
    ) -> ToggleResult:
        with self._lock_for(product_id):
            try:
                result = self._toggle_once(kind, user_id, product_id)
            except IntegrityError:
                # another process inserted the active row first; replaying now revokes it
                logger.info(f"[interactions] toggle raced on unique index, replaying kind={kind} product={product_id}")
                result = self._toggle_once(kind, user_id, product_id)
            if on_commit is not None:
                on_commit(result)
        return result

    def _toggle_once(self, kind: str, user_id: str, product_id: str) -> ToggleResult:
        try:
            with repo.session() as s:
                product = s.get(Product, product_id)
                if product is None:
                    raise NotFound("Product not found")
                if product.maker_id == user_id:
                    raise Forbidden(f"You cannot {kind} your own product", code="self_interaction")

                active = s.exec(
                    select(Interaction).where(
                        Interaction.user_id == user_id,
                        Interaction.product_id == product_id,
                        Interaction.kind == kind,
                        Interaction.active == True,  # noqa: E712
                    )
                ).first()

                now = utcnow()
                if active is not None:
                    active.active = False
                    active.revoked_at = now
                    s.add(active)
                    s.add(Interaction(user_id=user_id, product_id=product_id, kind=f"remove_{kind}", active=False))
                    learned = f"remove_{kind}"
                    now_active = False
                else:
                    s.add(Interaction(user_id=user_id, product_id=product_id, kind=kind, active=True))
                    learned = kind
                    now_active = True
                s.flush()

                count = self._count_active(s, product_id, kind)
                setattr(product, _COUNTER_FIELD[kind], count)
                s.add(product)
                self._learn(s, user_id, product, learned, now)
                s.commit()
        except OperationalError as e:
            raise Upstream("Interaction store unavailable") from e

        logger.debug(f"[interactions] {kind} user={user_id} product={product_id} active={now_active} count={count}")
        return ToggleResult(
            kind=kind,
            product_id=product_id,
            slug=product.slug,
            user_id=user_id,
            now_active=now_active,
            new_count=count,
        )

    # ---------- comments ----------

    def add_comment(self, user_id: str, product_id: str, text: str) -> Dict[str, object]:
        body = (text or "").strip()
        if not body:
            raise ValidationError("Comment text is required")
        with self._lock_for(product_id):
            with repo.session() as s:
                product = s.get(Product, product_id)
                if product is None:
                    raise NotFound("Product not found")
                row = Interaction(user_id=user_id, product_id=product_id, kind="comment", meta={"text": body[:2000]})
                s.add(row)
                s.flush()
                product.comment_count = self._count_active(s, product_id, "comment")
                s.add(product)
                self._learn(s, user_id, product, "comment", utcnow())
                s.commit()
                return {"id": row.id, "commentCount": product.comment_count}

    def remove_comment(
        self, user_id: str, comment_id: int, is_admin: bool = False, on_product: Optional[str] = None
    ) -> Dict[str, object]:
        with repo.session() as s:
            row = s.get(Interaction, comment_id)
            if row is None or row.kind != "comment" or not row.active:
                raise NotFound("Comment not found")
            if on_product is not None and row.product_id != on_product:
                raise NotFound("Comment not found")
            product_id = row.product_id
        with self._lock_for(product_id):
            with repo.session() as s:
                row = s.get(Interaction, comment_id)
                if row is None or not row.active:
                    raise NotFound("Comment not found")
                if row.user_id != user_id and not is_admin:
                    raise Forbidden("Only the author can remove this comment")
                row.active = False
                row.revoked_at = utcnow()
                s.add(row)
                s.flush()
                product = s.get(Product, product_id)
                product.comment_count = self._count_active(s, product_id, "comment")
                s.add(product)
                s.commit()
                return {"id": comment_id, "commentCount": product.comment_count}

    # ---------- views ----------

    def record_view(
        self,
        product_id: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        *,
        client_ip: Optional[str] = None,
        source: Optional[str] = None,
        position: Optional[int] = None,
        duration: float = 0.0,
        scrolls: int = 0,
        mouse_moves: int = 0,
        key_events: int = 0,
        is_bot: bool = False,
    ) -> ViewResult:
        """Append a view. Bot views are stored but never counted."""
        with self._lock_for(product_id):
            try:
                with repo.session() as s:
                    product = s.get(Product, product_id)
                    if product is None:
                        raise NotFound("Product not found")
                    s.add(
                        View(
                            product_id=product_id,
                            user_id=user_id,
                            session_id=session_id,
                            client_ip=client_ip,
                            source=source,
                            position=position,
                            duration=duration or 0.0,
                            scrolls=scrolls or 0,
                            mouse_moves=mouse_moves or 0,
                            key_events=key_events or 0,
                            is_bot=is_bot,
                        )
                    )
                    s.flush()
                    human = (View.product_id == product_id, View.is_bot == False)  # noqa: E712
                    product.view_count = s.exec(select(func.count()).select_from(View).where(*human)).one()
                    product.unique_viewer_count = s.exec(
                        select(func.count(func.distinct(View.user_id))).where(*human, View.user_id.is_not(None))
                    ).one()
                    s.add(product)
                    if user_id and not is_bot:
                        self._learn(s, user_id, product, "view", utcnow())
                    s.commit()
            except OperationalError as e:
                raise Upstream("Interaction store unavailable") from e
        return ViewResult(
            recorded=True,
            is_bot=is_bot,
            view_count=product.view_count,
            unique_viewer_count=product.unique_viewer_count,
        )

    # ---------- reads ----------

    def recent_interactions(
        self,
        user_id: str,
        window_days: int = 30,
        kinds: Optional[Iterable[str]] = None,
        limit: int = 200,
    ) -> List[Activity]:
        """Newest first; views included as kind "view" (bot views excluded)."""
        since = utcnow() - timedelta(days=window_days)
        wanted = set(kinds) if kinds else None
        out: List[Activity] = []
        with repo.session() as s:
            if wanted is None or wanted - {"view"}:
                q = select(Interaction).where(Interaction.user_id == user_id, Interaction.created_at >= since)
                if wanted is not None:
                    q = q.where(Interaction.kind.in_(sorted(wanted - {"view"})))
                for row in s.exec(q.order_by(Interaction.created_at.desc()).limit(limit)):
                    out.append(Activity(kind=row.kind, product_id=row.product_id, created_at=row.created_at))
            if wanted is None or "view" in wanted:
                q = (
                    select(View)
                    .where(View.user_id == user_id, View.created_at >= since, View.is_bot == False)  # noqa: E712
                    .order_by(View.created_at.desc())
                    .limit(limit)
                )
                for row in s.exec(q):
                    out.append(Activity(kind="view", product_id=row.product_id, created_at=row.created_at))
        out.sort(key=lambda a: a.created_at, reverse=True)
        return out[:limit]

    def active_kinds(self, user_id: str, product_id: str) -> Dict[str, bool]:
        with repo.session() as s:
            rows = s.exec(
                select(Interaction.kind).where(
                    Interaction.user_id == user_id,
                    Interaction.product_id == product_id,
                    Interaction.active == True,  # noqa: E712
                    Interaction.kind.in_(["upvote", "bookmark"]),
                )
            ).all()
        kinds = set(rows)
        return {"upvoted": "upvote" in kinds, "bookmarked": "bookmark" in kinds}

    def product_counters(self, product_ids: Iterable[str], window_days: int = 7) -> Dict[str, Counters]:
        """Bulk counters plus recent-window subcounts for candidate enrichment."""
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}
        since = utcnow() - timedelta(days=window_days)
        recent: Dict[str, Dict[str, int]] = {pid: {} for pid in ids}
        try:
            with repo.session() as s:
                products = {p.id: p for p in s.exec(select(Product).where(Product.id.in_(ids)))}
                rows = s.exec(
                    select(Interaction.product_id, Interaction.kind, func.count())
                    .where(
                        Interaction.product_id.in_(ids),
                        Interaction.created_at >= since,
                        Interaction.active == True,  # noqa: E712
                        Interaction.kind.in_(["upvote", "bookmark", "comment"]),
                    )
                    .group_by(Interaction.product_id, Interaction.kind)
                ).all()
                for pid, kind, n in rows:
                    recent[pid][kind] = int(n)
                views = s.exec(
                    select(View.product_id, func.count())
                    .where(View.product_id.in_(ids), View.created_at >= since, View.is_bot == False)  # noqa: E712
                    .group_by(View.product_id)
                ).all()
                for pid, n in views:
                    recent[pid]["view"] = int(n)
        except OperationalError as e:
            raise Upstream("Interaction store unavailable") from e

        out: Dict[str, Counters] = {}
        for pid in ids:
            p = products.get(pid)
            if p is None:
                continue
            r = recent[pid]
            out[pid] = Counters(
                upvotes=p.upvote_count,
                bookmarks=p.bookmark_count,
                comments=p.comment_count,
                views=p.view_count,
                unique_viewers=p.unique_viewer_count,
                recent_views=r.get("view", 0),
                recent_upvotes=r.get("upvote", 0),
                recent_comments=r.get("comment", 0),
                recent_bookmarks=r.get("bookmark", 0),
            )
        return out

    # ---------- helpers ----------

    @staticmethod
    def _count_active(s: Session, product_id: str, kind: str) -> int:
        return s.exec(
            select(func.count())
            .select_from(Interaction)
            .where(
                Interaction.product_id == product_id,
                Interaction.kind == kind,
                Interaction.active == True,  # noqa: E712
            )
        ).one()

    @staticmethod
    def _learn(s: Session, user_id: str, product: Product, kind: str, now: datetime) -> None:
        user = s.get(User, user_id)
        if user is None:
            return
        delta = PREFERENCE_DELTAS.get(kind, 0.0)
        prefs = dict(user.preferences or {})
        categories = dict(prefs.get("categories") or {})
        tags = dict(prefs.get("tags") or {})
        if delta:
            if product.category_id:
                categories[product.category_id] = round(max(0.0, categories.get(product.category_id, 0.0) + delta), 4)
            for tag in product.tags or []:
                tags[tag] = round(max(0.0, tags.get(tag, 0.0) + delta), 4)
        # reassign so the JSON column is flagged dirty
        user.preferences = {"categories": categories, "tags": tags}
        user.last_activity_at = now
        s.add(user)


STORE = InteractionStore()
