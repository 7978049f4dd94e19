# =============================================
# File: bazaar/utils/errors.py
# Purpose: Application error kinds and their HTTP mapping
# =============================================
from __future__ import annotations

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base error carried up to the HTTP layer.

    Operational errors (validation, forbidden, not found, rate limit...) expose
    their message to the client. Non-operational ones are rendered as a generic
    500 with a stable code.
    """

    status_code = 500
    code = "internal_error"
    is_operational = True

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        retry_after: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.retry_after = retry_after
        self.details = details or {}


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class Unauthenticated(AppError):
    status_code = 401
    code = "unauthenticated"


class Forbidden(AppError):
    status_code = 403
    code = "forbidden"


class NotFound(AppError):
    status_code = 404
    code = "not_found"


class Conflict(AppError):
    status_code = 409
    code = "conflict"


class RateLimited(AppError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str = "Too many requests. Please try again later.", *, retry_after: int = 1, **kw: Any) -> None:
        super().__init__(message, retry_after=max(1, int(retry_after)), **kw)


class Upstream(AppError):
    """Backing store unreachable."""

    status_code = 503
    code = "upstream_unavailable"


class Timeout(AppError):
    status_code = 504
    code = "timeout"

    def __init__(self, message: str = "The operation timed out.", *, retry_after: int = 1, **kw: Any) -> None:
        super().__init__(message, retry_after=retry_after, **kw)


class Internal(AppError):
    status_code = 500
    code = "internal_error"
    is_operational = False


class RequestCancelled(Exception):
    """Raised between units of work once a request's token is cancelled."""


def envelope(err: AppError) -> Dict[str, Any]:
    if err.is_operational:
        body: Dict[str, Any] = {"status": "error", "message": err.message, "code": err.code}
    else:
        body = {"status": "error", "message": "Something went wrong!", "code": "internal_error"}
    if err.retry_after is not None:
        body["retryAfter"] = err.retry_after
    return body
