import os
import threading
import time
from datetime import datetime, timezone

from .errors import RequestCancelled


def utcnow() -> datetime:
    # naive UTC; SQLite drops tzinfo on the way back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def request_deadline_seconds() -> float:
    return float(os.getenv("REQUEST_DEADLINE_SECONDS", "30"))


def fetch_deadline_seconds() -> float:
    return float(os.getenv("FETCH_DEADLINE_SECONDS", "5"))


class CancellationToken:
    """Cooperative cancellation flag shared by everything working on one request."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled("request was cancelled")


class Deadline:
    def __init__(self, seconds: float | None = None) -> None:
        budget = request_deadline_seconds() if seconds is None else seconds
        self._expires_at = time.monotonic() + max(0.0, budget)

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def sub(self, seconds: float) -> float:
        """Budget for a sub-call: the smaller of `seconds` and what is left."""
        return min(seconds, self.remaining())
