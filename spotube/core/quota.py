"""
YouTube Data API daily quota tracking.

Unit costs (https://developers.google.com/youtube/v3/determine_quota_cost):
- playlists.list / playlistItems.list: 1
- playlistItems.insert / playlistItems.delete / playlists.update: 50
- search.list: 100

The budget resets at midnight UTC.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

from spotube.core.errors import QuotaExceeded
from spotube.core.models import DESTINATION_SERVICE, utcnow

logger = logging.getLogger(__name__)

COST_LIST = 1
COST_WRITE = 50
COST_SEARCH = 100


class QuotaTracker:
    def __init__(self, daily_limit: int = 10000, clock: Callable[[], datetime] = utcnow):
        self._limit = daily_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._used = 0
        self._day = self._today()

    def _today(self) -> str:
        return self._clock().astimezone(timezone.utc).strftime("%Y-%m-%d")

    def _roll(self) -> None:
        today = self._today()
        if today != self._day:
            logger.info(f"YouTube quota reset for new day: {today}")
            self._day = today
            self._used = 0

    def consume(self, cost: int, operation: str = "") -> None:
        """Charge `cost` units or raise QuotaExceeded without charging."""
        with self._lock:
            self._roll()
            if self._used + cost > self._limit:
                raise QuotaExceeded(
                    f"YouTube quota exhausted: used={self._used}, cost={cost}, limit={self._limit}"
                    + (f" ({operation})" if operation else ""),
                    service=DESTINATION_SERVICE,
                    retry_after=self.seconds_until_reset(),
                )
            self._used += cost
            logger.debug(f"YouTube quota consumed: {self._used}/{self._limit} (cost={cost} {operation})")

    def exhaust(self) -> None:
        """The API itself reported quotaExceeded; trust it over our count."""
        with self._lock:
            self._roll()
            self._used = self._limit

    def seconds_until_reset(self) -> int:
        now = self._clock().astimezone(timezone.utc)
        tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return max(1, int((tomorrow - now).total_seconds()))

    @property
    def used(self) -> int:
        with self._lock:
            self._roll()
            return self._used

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def remaining(self) -> int:
        return max(0, self._limit - self.used)
