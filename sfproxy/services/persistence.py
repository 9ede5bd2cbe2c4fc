from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

from sfproxy.core.metrics import StatsStore, today_marker
from sfproxy.models import DailyStats, TotalStats
from sfproxy.storage import KeyValueStore

logger = logging.getLogger("sfproxy.persistence")

DAILY_STATS_KEY = "daily_stats"
TOTAL_STATS_KEY = "total_stats"
DOWNLOADS_KEY = "downloads_data"


class StatsPersistence:
    """Keeps a StatsStore in step with the external key-value store.

    - ``hydrate`` loads the stored records once per process.
    - ``maybe_rollover`` resets the per-day counters when the date changes.
    - ``maybe_flush`` schedules a background write once the sync interval elapsed.

    Storage failures are logged and dropped; they never reach the request.
    """

    def __init__(self, stats: StatsStore, store: Optional[KeyValueStore], sync_interval: float) -> None:
        self.stats = stats
        self.store = store
        self.sync_interval = sync_interval
        self._hydration_started = False
        self._pending: Set[asyncio.Task] = set()

    @property
    def hydrated(self) -> bool:
        return self._hydration_started and self.stats.last_sync_time > 0

    async def hydrate(self, now: Optional[float] = None, today: Optional[str] = None) -> bool:
        """Load stored records into the in-memory stats. Returns False when already done."""
        if self.stats.last_sync_time > 0 or self._hydration_started:
            return False
        # Set before the first await so concurrent first requests skip hydration
        self._hydration_started = True
        today = today or today_marker()

        if self.store is not None:
            await self._load(today)

        self.stats.last_sync_time = time.time() if now is None else now
        return True

    async def _load(self, today: str) -> None:
        # Each record loads on its own so one bad document cannot hide the others
        await self._load_record(DAILY_STATS_KEY, lambda raw: self._apply_daily(raw, today))
        await self._load_record(TOTAL_STATS_KEY, self._apply_totals)
        await self._load_record(DOWNLOADS_KEY, self.stats.apply_downloads)

        logger.info(
            "event=stats_hydrated backend=%s total_requests=%s downloads=%s",
            self.store.name,
            self.stats.total_requests,
            len(self.stats.downloads),
        )

    async def _load_record(self, key: str, apply: Callable[[Dict[str, Any]], None]) -> None:
        try:
            raw = await self.store.get(key)
            if raw is None:
                return
            if not isinstance(raw, dict):
                raise ValueError(f"expected a JSON object, got {type(raw).__name__}")
            apply(raw)
        except Exception as exc:
            logger.warning(
                "event=stats_hydrate_failed backend=%s key=%s error=%s",
                self.store.name,
                key,
                exc,
            )

    def _apply_daily(self, raw: Dict[str, Any], today: str) -> None:
        daily = DailyStats.model_validate(raw)
        if daily.date == today:
            self.stats.apply_daily(daily)
        else:
            logger.info("event=stats_daily_discarded stored_date=%s today=%s", daily.date, today)

    def _apply_totals(self, raw: Dict[str, Any]) -> None:
        self.stats.apply_totals(TotalStats.model_validate(raw))

    def maybe_rollover(self, today: Optional[str] = None) -> bool:
        today = today or today_marker()
        rolled = self.stats.reset_daily(today)
        if rolled:
            logger.info("event=stats_daily_reset date=%s", today)
        return rolled

    def maybe_flush(self, now: Optional[float] = None) -> Optional[asyncio.Task]:
        """Schedule a detached flush if the sync interval has elapsed since the last sync."""
        # Never overwrite the stored records with an unloaded, zeroed store
        if self.store is None or not self.hydrated:
            return None
        now = time.time() if now is None else now
        if now - self.stats.last_sync_time < self.sync_interval:
            return None

        self.stats.last_sync_time = now
        task = asyncio.get_running_loop().create_task(self._flush_quietly(now))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _flush_quietly(self, now: float) -> None:
        try:
            await self.flush(now)
        except Exception as exc:
            logger.warning("event=stats_flush_failed backend=%s error=%s", self.store.name, exc)

    async def flush(self, now: Optional[float] = None) -> None:
        """Write the daily, total and downloads records concurrently. Raises on storage failure."""
        if self.store is None:
            return
        now = time.time() if now is None else now
        daily, totals, downloads = self.stats.export_records(now)
        await asyncio.gather(
            self.store.put(DAILY_STATS_KEY, daily.model_dump_json()),
            self.store.put(TOTAL_STATS_KEY, totals.model_dump_json()),
            self.store.put(DOWNLOADS_KEY, json.dumps(downloads)),
        )
        logger.info(
            "event=stats_flushed backend=%s total_requests=%s requests_today=%s",
            self.store.name,
            totals.total_requests,
            daily.requests_today,
        )

    async def wait_pending(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
