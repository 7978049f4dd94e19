# =============================================
# File: bazaar/services/context.py
# Purpose: Per-request context threaded through the read and write paths
# =============================================
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..utils.records import ANONYMOUS, TimeContext, UserContext
from ..utils.timing import CancellationToken, Deadline, utcnow


@dataclass
class RequestContext:
    """Who is asking, how long we have, and whether to stop."""

    user_id: Optional[str] = None
    is_admin: bool = False
    is_bot: bool = False
    ip: Optional[str] = None
    cycle_id: Optional[str] = None
    deadline: Deadline = field(default_factory=Deadline)
    token: CancellationToken = field(default_factory=CancellationToken)
    now: datetime = field(default_factory=utcnow)
    user: UserContext = ANONYMOUS

    @property
    def cache_user(self) -> Optional[str]:
        # bots share the anonymous cache entries
        return None if self.is_bot else self.user_id

    @property
    def time(self) -> TimeContext:
        return TimeContext.at(self.now)
