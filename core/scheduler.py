import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from config import INITIAL_FETCH_DELAY_S, REFRESH_MINUTES

from .cache import AdvancedStationDataCache, next_refresh_time

logger = logging.getLogger("scheduler")

UTC = timezone.utc


class AdvancedDataScheduler:
    """
    Rebuilds the advanced table cache on the 9th minute of every 10-minute
    cycle (UTC), after an initial fetch shortly after start.

    ``fetch`` is a blocking callable; it runs in a worker thread.
    """

    def __init__(
        self,
        cache: AdvancedStationDataCache,
        fetch: Callable[[], Any],
        initial_delay_s: float = INITIAL_FETCH_DELAY_S,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.cache = cache
        self.fetch = fetch
        self.initial_delay_s = initial_delay_s
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.info("[SCHEDULER] Already running")
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "[SCHEDULER] Advanced station data job started - minutes %s of every hour (UTC)",
            ",".join(str(m) for m in REFRESH_MINUTES),
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[SCHEDULER] Advanced station data job stopped")

    def next_run_time(self) -> datetime:
        return next_refresh_time(self._clock())

    def following_tick(self, completed: datetime) -> datetime:
        """Tick after ``completed``; ticks overrun by a slow fetch are skipped."""
        return next_refresh_time(max(completed, self._clock()))

    def status(self) -> Dict[str, Any]:
        return {
            "isRunning": self.is_running,
            "nextRun": self.next_run_time().isoformat() if self.is_running else None,
            "schedule": "minutes " + ",".join(str(m) for m in REFRESH_MINUTES) + " of every hour",
            "timezone": "UTC",
        }

    async def trigger_manual_fetch(self) -> Any:
        logger.info("[SCHEDULER] Manual fetch triggered")
        return await self._fetch_job()

    async def _fetch_job(self) -> Any:
        started = self.cache.record_fetch_start()
        try:
            logger.info("[SCHEDULER] Starting scheduled data fetch at %s", self._clock().isoformat())
            data = await asyncio.to_thread(self.fetch)
            self.cache.record_fetch_success(started, data)
            return data
        except Exception as e:
            self.cache.record_fetch_error(started, str(e))
            raise

    async def _run(self) -> None:
        await asyncio.sleep(self.initial_delay_s)
        try:
            await self._fetch_job()
        except Exception as e:
            logger.error("[SCHEDULER] Initial fetch failed: %s", e)

        tick = self.next_run_time()
        while True:
            wait_seconds = (tick - self._clock()).total_seconds()
            if wait_seconds > 0:
                await asyncio.sleep(wait_seconds)
            try:
                await self._fetch_job()
            except Exception as e:
                # No retry: the next tick refreshes again
                logger.error("[SCHEDULER] Scheduled fetch failed: %s", e)
            tick = self.following_tick(tick)
