# =============================================
# File: bazaar/routers/auth.py
# Purpose: Rate-limited credential check (sessions are issued upstream)
# =============================================
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, field_validator
from sqlmodel import select

from ..db import repo
from ..db.models import User
from ..services.context import RequestContext
from ..services.gate import GATE
from ..utils.errors import Unauthenticated
from ..utils.passwords import verify_password
from ..utils.timing import utcnow
from . import deps

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=256)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if "@" not in v:
            raise ValueError("email must be a valid address")
        return v


def _check_credentials(email: str, password: str) -> Optional[str]:
    with repo.session() as s:
        user = s.exec(select(User).where(User.email == email)).first()
        if user is None or not verify_password(password, user.password_hash):
            return None
        user.last_password_verified_at = utcnow()
        s.add(user)
        s.commit()
        return user.id


@router.post("/login")
async def login(
    payload: LoginRequest,
    request: Request,
    ctx: RequestContext = Depends(deps.request_context),
) -> Dict[str, Any]:
    # keyed by the submitted email, falling back to the client IP
    request.state.rate_decision = GATE.throttle("login", ctx, email=payload.email)
    user_id = await asyncio.to_thread(_check_credentials, payload.email, payload.password)
    deps.annotate(request, login_ok=user_id is not None)
    if user_id is None:
        raise Unauthenticated("Invalid email or password", code="invalid_credentials")
    return {"success": True, "userId": user_id}
