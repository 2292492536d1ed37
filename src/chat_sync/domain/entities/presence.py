from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True, slots=True)
class PresenceRecord:
    """A presence lease. ``conversation_id`` is set for typing records only."""

    user_id: str
    last_heartbeat_at: datetime
    conversation_id: str | None = None
    display_name: str | None = None

    def is_alive(self, now: datetime, lease: timedelta) -> bool:
        return now - self.last_heartbeat_at <= lease
