# =============================================
# File: bazaar/services/gate.py
# Purpose: Abuse gate. Bot detection, per-identifier throttling and the
#          product policy checks shared by every write path.
# =============================================

from __future__ import annotations

from typing import Callable, Mapping, Optional, Sequence

from loguru import logger

from ..db.models import Product
from ..utils.botdetect import BotVerdict, detect_bot, detect_suspicious_view
from ..utils.config import rate_rule
from ..utils.errors import Forbidden, NotFound, Unauthenticated
from ..utils.ratelimit import RateDecision, check_rate_limit, identifier
from .context import RequestContext

Policy = Callable[[RequestContext, Product, str], None]


# ---------- policies ----------

def authenticated(ctx: RequestContext, product: Product, action: str) -> None:
    if not ctx.user_id:
        raise Unauthenticated("Authentication required")


def _privileged(ctx: RequestContext, product: Product) -> bool:
    return ctx.is_admin or (ctx.user_id is not None and product.maker_id == ctx.user_id)


def visible(ctx: RequestContext, product: Product, action: str) -> None:
    if product.visibility != "private" or _privileged(ctx, product):
        return
    if not ctx.user_id:
        raise Unauthenticated("Authentication required to access this product")
    raise Forbidden("You do not have permission to access this product", code="private_product")


def published(ctx: RequestContext, product: Product, action: str) -> None:
    if product.status != "Published" and not _privileged(ctx, product):
        raise NotFound("This product is not currently available")


def not_self(ctx: RequestContext, product: Product, action: str) -> None:
    if ctx.user_id and product.maker_id == ctx.user_id:
        raise Forbidden(f"You cannot {action} your own product", code="self_interaction")


def owner_or_admin(ctx: RequestContext, product: Product, action: str) -> None:
    if not _privileged(ctx, product):
        raise Forbidden("You do not have permission to modify this product")


def not_locked(ctx: RequestContext, product: Product, action: str) -> None:
    if product.locked and not ctx.is_admin:
        raise Forbidden("This product is locked and cannot be modified", code="product_locked")


class PolicySet:
    """Ordered checks evaluated once per request; the first failure wins."""

    def __init__(self, *policies: Policy) -> None:
        self.policies: Sequence[Policy] = policies

    def evaluate(self, ctx: RequestContext, product: Optional[Product], action: str) -> Product:
        if product is None:
            raise NotFound("Product not found")
        for policy in self.policies:
            policy(ctx, product, action)
        return product


READ = PolicySet(visible, published)
TOGGLE = PolicySet(authenticated, visible, published, not_self)
COMMENT = PolicySet(authenticated, visible, published)
VIEW = PolicySet(visible, published)
MODIFY = PolicySet(authenticated, owner_or_admin, not_locked)


class AbuseGate:
    def inspect(
        self,
        headers: Mapping[str, str],
        ip: Optional[str],
        session_id: Optional[str] = None,
    ) -> BotVerdict:
        verdict = detect_bot(headers, ip=ip, session_id=session_id)
        if verdict.is_bot:
            logger.warning(f"[gate] bot traffic ip={ip} signals={','.join(verdict.signals)}")
        return verdict

    def throttle(
        self,
        endpoint_class: str,
        ctx: RequestContext,
        *,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> RateDecision:
        rule = rate_rule(endpoint_class)
        key = identifier(rule.key_by, user_id=ctx.user_id, ip=ctx.ip, email=email, phone=phone)
        return check_rate_limit(key, endpoint_class)

    def check(self, policies: PolicySet, ctx: RequestContext, product: Optional[Product], action: str) -> Product:
        return policies.evaluate(ctx, product, action)

    def view_is_bot(
        self,
        ctx: RequestContext,
        duration: Optional[float],
        scrolls: int = 0,
        mouse_moves: int = 0,
        key_events: int = 0,
    ) -> bool:
        return ctx.is_bot or detect_suspicious_view(duration, scrolls, mouse_moves, key_events)


GATE = AbuseGate()
