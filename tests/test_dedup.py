# =============================================
# File: tests/test_dedup.py
# Purpose: Cross-section deduplication within a page cycle
# =============================================
import sys, os
sys.path.append(os.path.dirname(os.path.dirname(__file__)))

import time

from bazaar.services.dedup import Deduplicator


def test_first_section_wins():
    d = Deduplicator()
    assert d.claim("cycle-1", ["a", "b", "c"], 2) == ["a", "b"]
    assert d.claim("cycle-1", ["b", "c", "d", "e"], 2) == ["c", "d"]
    assert d.claimed("cycle-1") == {"a", "b", "c", "d"}


def test_cycles_are_isolated():
    d = Deduplicator()
    d.claim("one", ["a"], 1)
    assert d.claim("two", ["a"], 1) == ["a"]


def test_duplicates_within_one_call_are_collapsed():
    d = Deduplicator()
    assert d.claim("c", ["a", "a", "b"], 3) == ["a", "b"]


def test_release_and_expiry():
    d = Deduplicator(ttl_seconds=0.01)
    d.claim("old", ["a"], 1)
    d.release("old")
    assert d.claimed("old") == set()
    d.claim("stale", ["a"], 1)
    time.sleep(0.02)
    d.claim("fresh", ["b"], 1)
    assert len(d) == 1


def test_idle_cycles_expire_on_read():
    d = Deduplicator(ttl_seconds=0.01)
    d.claim("idle", ["a"], 1)
    d.claim("other", ["b"], 1)
    time.sleep(0.02)
    assert d.claimed("idle") == set()
    assert len(d) == 0
