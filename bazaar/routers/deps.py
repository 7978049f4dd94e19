# =============================================
# File: bazaar/routers/deps.py
# Purpose: Shared FastAPI dependencies: caller identity, request context,
#          per-class throttling and cancellation-aware execution
# =============================================
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional

from fastapi import Request

from ..db import repo
from ..db.models import User
from ..services.context import RequestContext
from ..services.gate import GATE
from ..services.profiles import PROFILE_STORE
from ..utils.errors import RequestCancelled, Timeout, Unauthenticated

USER_HEADER = "X-User-Id"
CYCLE_HEADER = "X-Cycle-Id"


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _load_user(user_id: str) -> Optional[User]:
    with repo.session() as s:
        return s.get(User, user_id)


def _log_context(request: Request) -> dict:
    ctx = getattr(request.state, "log_context", None)
    if ctx is None:
        ctx = {}
        request.state.log_context = ctx
    return ctx


async def request_context(request: Request) -> RequestContext:
    """Public routes: an unknown or missing X-User-Id means anonymous."""
    cached = getattr(request.state, "ctx", None)
    if cached is not None:
        return cached

    is_bot = bool(getattr(request.state, "is_bot", False))
    ctx = RequestContext(
        is_bot=is_bot,
        ip=client_ip(request),
        cycle_id=request.headers.get(CYCLE_HEADER) or request.query_params.get("cycleId") or None,
    )
    user_id = (request.headers.get(USER_HEADER) or "").strip()
    if user_id:
        user = await asyncio.to_thread(_load_user, user_id)
        if user is not None:
            ctx.user_id = user.id
            ctx.is_admin = user.is_admin
            if not is_bot:
                ctx.user = await PROFILE_STORE.load_context(user.id)
        else:
            _log_context(request)["unknown_user"] = user_id

    _log_context(request).update({"user_id": ctx.user_id, "is_bot": is_bot})
    request.state.ctx = ctx
    return ctx


async def authenticated_context(request: Request) -> RequestContext:
    """Private routes: the caller must resolve to a known user."""
    ctx = await request_context(request)
    if not ctx.user_id:
        raise Unauthenticated("Authentication required")
    return ctx


def throttle(endpoint_class: str) -> Callable[[Request], Awaitable[None]]:
    """Dependency factory: count the request under `endpoint_class` (user or IP keyed)."""

    async def _dep(request: Request) -> None:
        ctx = await request_context(request)
        decision = GATE.throttle(endpoint_class, ctx)
        request.state.rate_decision = decision

    return _dep


async def run_cancellable(request: Request, ctx: RequestContext, work: Awaitable[Any], poll: float = 0.25) -> Any:
    """Await `work`; cancel the request token if the client goes away or the deadline passes."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=min(poll, max(0.01, ctx.deadline.remaining())))
            if done:
                return task.result()
            if ctx.deadline.expired:
                ctx.token.cancel()
                await asyncio.gather(task, return_exceptions=True)
                raise Timeout("Request deadline exceeded")
            if await request.is_disconnected():
                ctx.token.cancel()
                await asyncio.gather(task, return_exceptions=True)
                raise RequestCancelled("client disconnected")
    finally:
        if not task.done():
            task.cancel()


def annotate(request: Request, **fields: Any) -> None:
    _log_context(request).update(fields)
