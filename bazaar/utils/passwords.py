# =============================================
# File: bazaar/utils/passwords.py
# Purpose: Password hashing (passlib) for the login credential check
# =============================================
from __future__ import annotations

from typing import Optional

from passlib.context import CryptContext

_ctx = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return _ctx.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed or not password:
        return False
    try:
        return _ctx.verify(password, hashed)
    except ValueError:
        # unrecognised or malformed hash
        return False
