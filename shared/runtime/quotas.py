from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from shared.logging.logger import get_logger
from shared.runtime.errors import StreamRelayError
from shared.storage.state_store import StateStore

log = get_logger("shared.runtime.quotas")


# ======================================================================
# Exceptions
# ======================================================================

class QuotaExceeded(StreamRelayError):
    """Raised when a hard quota limit has been exceeded."""


class LiveLimitExceeded(QuotaExceeded):
    """Raised when a user already runs as many live streams as allowed."""

    def __init__(self, user_id: str, active: int, limit: int):
        super().__init__(
            f"Live limit reached: {active} / {limit} active streams"
        )
        self.user_id = user_id
        self.active = active
        self.limit = limit


# ======================================================================
# Data Models
# ======================================================================

@dataclass
class LiveLimitSnapshot:
    user_id: str
    active: int
    # None means unlimited
    limit: Optional[int]

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.active)

    def as_dict(self) -> Dict[str, Optional[int]]:
        return {
            "active": self.active,
            "limit": self.limit,
            "remaining": self.remaining,
        }


# ======================================================================
# Live Limit Policy (ENFORCEMENT ONLY)
# ======================================================================

class LiveLimitPolicy:
    """
    Concurrent live-stream quota per user.

    - Admin users are unlimited
    - A positive per-user `live_limit` overrides the default
    - A default of 0 means unlimited
    - Active streams are counted from persisted `live` status
    """

    def __init__(self, store: StateStore, *, default_limit: int = 0):
        self._store = store
        self._default_limit = max(0, int(default_limit))

    def limit_for(self, user_id: Optional[str]) -> Optional[int]:
        user = self._store.find_user(user_id) if user_id else None

        if user and user.get("role") == "admin":
            return None

        if user:
            try:
                custom = int(user.get("live_limit") or 0)
            except (TypeError, ValueError):
                custom = 0
            if custom > 0:
                return custom

        return self._default_limit or None

    def active_count(self, user_id: Optional[str], *, exclude_stream_id: Optional[str] = None) -> int:
        if not user_id:
            return 0
        return sum(
            1 for s in self._store.find_streams(status="live", user_id=user_id)
            if s.get("id") != exclude_stream_id
        )

    def snapshot(self, user_id: str) -> LiveLimitSnapshot:
        return LiveLimitSnapshot(
            user_id=user_id,
            active=self.active_count(user_id),
            limit=self.limit_for(user_id),
        )

    def check(self, user_id: Optional[str], *, exclude_stream_id: Optional[str] = None) -> None:
        limit = self.limit_for(user_id)
        if limit is None:
            return

        active = self.active_count(user_id, exclude_stream_id=exclude_stream_id)
        if active >= limit:
            log.warning(
                f"[{user_id}] Stream start refused "
                f"(active={active}, limit={limit})"
            )
            raise LiveLimitExceeded(str(user_id), active, limit)
