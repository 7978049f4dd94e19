# =============================================
# File: tests/test_timing.py
# Purpose: Request deadlines and cooperative cancellation
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import pytest

from bazaar.utils import timing
from bazaar.utils.errors import RequestCancelled
from bazaar.utils.timing import CancellationToken, Deadline


def test_deadline_budget_from_env(monkeypatch):
    monkeypatch.setenv("REQUEST_DEADLINE_SECONDS", "12")
    d = Deadline()
    assert 11.0 < d.remaining() <= 12.0
    assert not d.expired
    # a sub-call never gets more than what is left
    assert d.sub(2.0) == 2.0
    assert d.sub(60.0) <= 12.0


def test_zero_deadline_is_expired():
    d = Deadline(0)
    assert d.expired
    assert d.sub(5.0) == 0.0


def test_cancellation_token():
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    assert token.cancelled
    with pytest.raises(RequestCancelled):
        token.raise_if_cancelled()


def test_utcnow_is_naive():
    assert timing.utcnow().tzinfo is None
    assert not hasattr(timing, "timer")
