# =============================================
# File: bazaar/services/dedup.py
# Purpose: Cross-section deduplication within one page render (cycle id)
# =============================================

from __future__ import annotations

import threading
import time
from typing import Dict, Iterable, List, Set, Tuple

DEFAULT_TTL_SECONDS = 60.0


class Deduplicator:
    """First come, first served per cycle id.

    Each cycle keeps its own set; cycles are released explicitly or expire after
    `ttl_seconds` of inactivity.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._cycles: Dict[str, Tuple[float, Set[str]]] = {}
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        dead = [cid for cid, (touched, _) in self._cycles.items() if now - touched > self._ttl]
        for cid in dead:
            self._cycles.pop(cid, None)

    def claim(self, cycle_id: str, candidate_ids: Iterable[str], want: int) -> List[str]:
        """Claim up to `want` ids (in the given order) not yet taken in this cycle."""
        now = time.monotonic()
        with self._lock:
            self._sweep(now)
            _, taken = self._cycles.get(cycle_id, (now, set()))
            chosen: List[str] = []
            for pid in candidate_ids:
                if len(chosen) >= want:
                    break
                if pid in taken or pid in chosen:
                    continue
                chosen.append(pid)
            taken.update(chosen)
            self._cycles[cycle_id] = (now, taken)
            return chosen

    def claimed(self, cycle_id: str) -> Set[str]:
        with self._lock:
            self._sweep(time.monotonic())
            entry = self._cycles.get(cycle_id)
            return set(entry[1]) if entry else set()

    def release(self, cycle_id: str) -> None:
        with self._lock:
            self._cycles.pop(cycle_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cycles)


DEDUP = Deduplicator()
