"""Time source for leases, debounce windows and optimistic timestamps.

All timestamps are timezone-aware UTC so client and server times compare.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def elapsed(clock: Clock, since: datetime) -> timedelta:
    return clock.now() - since
