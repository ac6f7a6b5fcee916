"""
Donor location cache — most recent known coordinate per user.

Fed at high frequency by an external location stream and read by the match
engine without blocking. Constructed once per process and injected; entries
older than max_age are reported as unknown.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from bloodmatch.schemas.request import Coordinate

logger = structlog.get_logger()


class DonorLocationCache:

    def __init__(self, max_age: Optional[timedelta] = None):
        self._max_age = max_age
        self._entries: dict[str, tuple[Coordinate, datetime]] = {}

    def update(self, user_id: str, latitude: float, longitude: float, seen_at: Optional[datetime] = None) -> None:
        # Single dict assignment: readers see the old or the new entry, never a partial one
        self._entries[user_id] = (
            Coordinate(latitude=latitude, longitude=longitude),
            seen_at or datetime.now(timezone.utc),
        )
        logger.debug("donor_location_updated", user_id=user_id)

    def get(self, user_id: str, now: Optional[datetime] = None) -> Optional[Coordinate]:
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        coord, seen_at = entry
        if self._max_age is not None:
            now = now or datetime.now(timezone.utc)
            if now - seen_at > self._max_age:
                return None
        return coord

    def forget(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._entries)
