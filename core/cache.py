import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, Optional, Sequence

from config import REFRESH_MINUTES, FETCH_TIME_WINDOW

logger = logging.getLogger("cache")

UTC = timezone.utc


def next_refresh_time(moment: datetime, minutes: Sequence[int] = REFRESH_MINUTES) -> datetime:
    """Next scheduled refresh minute strictly after ``moment``'s minute."""
    base = moment.replace(second=0, microsecond=0)
    for minute in sorted(minutes):
        if base.minute < minute:
            return base.replace(minute=minute)
    return base.replace(minute=sorted(minutes)[0]) + timedelta(hours=1)


@dataclass
class CachedData:
    data: Any
    last_updated: datetime
    next_update: datetime
    is_stale: bool = False


class AdvancedStationDataCache:
    """
    Holds the latest advanced table payload.

    Data past its next scheduled update is still served, only flagged stale.
    """

    def __init__(self, clock: Callable[[], datetime] = lambda: datetime.now(UTC)):
        self._clock = clock
        self._started = time.monotonic()
        self._cache: Optional[CachedData] = None
        self._fetch_times: Deque[float] = deque(maxlen=FETCH_TIME_WINDOW)
        self.metadata: Dict[str, Any] = {
            "totalFetches": 0,
            "lastFetchDuration": 0,
            "lastError": None,
            "cacheHits": 0,
            "averageFetchTime": 0,
        }

    def set_data(self, data: Any) -> None:
        now = self._clock()
        self._cache = CachedData(data=data, last_updated=now, next_update=next_refresh_time(now))
        logger.info(
            "[CACHE] Data cached at %s, next update at %s",
            now.isoformat(), self._cache.next_update.isoformat(),
        )

    def get_data(self) -> Any:
        if self._cache is None:
            logger.info("[CACHE] No data in cache")
            return None
        if self._clock() > self._cache.next_update:
            self._cache.is_stale = True
        self.metadata["cacheHits"] += 1
        logger.debug(
            "[CACHE] Serving cached data (%s), cache hits: %d",
            "stale" if self._cache.is_stale else "fresh", self.metadata["cacheHits"],
        )
        return self._cache.data

    def has_data(self) -> bool:
        return self._cache is not None

    def is_fresh(self) -> bool:
        if self._cache is None:
            return False
        return not self._cache.is_stale and self._clock() <= self._cache.next_update

    def record_fetch_start(self) -> float:
        return time.monotonic()

    def record_fetch_success(self, started: float, data: Any) -> None:
        duration_ms = (time.monotonic() - started) * 1000.0
        self.metadata["totalFetches"] += 1
        self.metadata["lastFetchDuration"] = round(duration_ms, 1)
        self.metadata["lastError"] = None
        self._fetch_times.append(duration_ms)
        self.metadata["averageFetchTime"] = round(sum(self._fetch_times) / len(self._fetch_times), 1)
        self.set_data(data)
        logger.info(
            "[CACHE] Fetch completed in %.0fms (avg: %.0fms)",
            duration_ms, self.metadata["averageFetchTime"],
        )

    def record_fetch_error(self, started: float, error: str) -> None:
        duration_ms = (time.monotonic() - started) * 1000.0
        self.metadata["totalFetches"] += 1
        self.metadata["lastFetchDuration"] = round(duration_ms, 1)
        self.metadata["lastError"] = error
        logger.error("[CACHE] Fetch failed after %.0fms: %s", duration_ms, error)

    def status(self) -> Dict[str, Any]:
        cache_info = None
        if self._cache is not None:
            cache_info = {
                "lastUpdated": self._cache.last_updated.isoformat(),
                "nextUpdate": self._cache.next_update.isoformat(),
                "isStale": self._cache.is_stale,
            }
        return {
            "hasData": self.has_data(),
            "isFresh": self.is_fresh(),
            "cacheInfo": cache_info,
            "metadata": dict(self.metadata),
            "uptime": round(time.monotonic() - self._started, 1),
        }

    def clear(self) -> None:
        self._cache = None
        logger.info("[CACHE] Cache cleared")
