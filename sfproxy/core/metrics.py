from __future__ import annotations

import threading
import time
from datetime import date
from typing import Any, Dict, List, Optional, Set

from sfproxy.config import RESPONSE_TIME_SAMPLE_CAP, RESPONSE_TIME_SAMPLE_KEEP
from sfproxy.models import DailyStats, TotalStats


def today_marker() -> str:
    return date.today().isoformat()


class StatsStore:
    """Thread-safe in-memory usage statistics.

    One instance lives for the whole process. It is a cache of the records kept
    in the external stats store and may drift from other processes' copies.
    """

    def __init__(
        self,
        sample_cap: int = RESPONSE_TIME_SAMPLE_CAP,
        sample_keep: int = RESPONSE_TIME_SAMPLE_KEEP,
    ) -> None:
        self._lock = threading.Lock()
        self.sample_cap = sample_cap
        self.sample_keep = sample_keep

        self.requests_today = 0
        self.total_requests = 0
        self.cache_hits = 0
        self.errors = 0
        self.data_transferred = 0
        self.response_times: List[int] = []
        self.active_users: Set[str] = set()
        self.downloads: Dict[str, int] = {}
        self.start_time = time.time()
        self.last_reset = today_marker()
        # 0 means never loaded from or written to the external store
        self.last_sync_time = 0.0

    def record_client(self, client_id: str) -> None:
        with self._lock:
            self.active_users.add(client_id)

    def record_request(self) -> None:
        with self._lock:
            self.total_requests += 1
            self.requests_today += 1

    def record_error(self) -> None:
        with self._lock:
            self.errors += 1

    def record_cache_hit(self) -> None:
        with self._lock:
            self.cache_hits += 1

    def record_transfer(self, size_bytes: int) -> None:
        if size_bytes <= 0:
            return
        with self._lock:
            self.data_transferred += size_bytes

    def record_download(self, filename: str) -> None:
        if not filename:
            return
        with self._lock:
            self.downloads[filename] = self.downloads.get(filename, 0) + 1

    def record_response_time(self, elapsed_ms: int) -> None:
        with self._lock:
            self.response_times.append(elapsed_ms)
            if len(self.response_times) > self.sample_cap:
                self.response_times = self.response_times[-self.sample_keep:]

    def reset_daily(self, today: str) -> bool:
        """Zero the per-day counters when ``today`` differs from the last reset day."""
        with self._lock:
            if self.last_reset == today:
                return False
            self.requests_today = 0
            self.active_users.clear()
            self.last_reset = today
            return True

    def apply_daily(self, record: DailyStats) -> None:
        with self._lock:
            self.requests_today = record.requests_today
            self.active_users = set(record.active_users)

    def apply_totals(self, record: TotalStats) -> None:
        with self._lock:
            self.total_requests = record.total_requests
            self.cache_hits = record.cache_hits
            self.data_transferred = record.data_transferred
            self.errors = record.errors
            self.start_time = record.start_time or time.time()

    def apply_downloads(self, downloads: Dict[str, Any]) -> None:
        with self._lock:
            self.downloads = {
                str(name): int(count) for name, count in downloads.items() if name and count is not None
            }

    def export_records(self, now: Optional[float] = None) -> tuple[DailyStats, TotalStats, Dict[str, int]]:
        now = time.time() if now is None else now
        with self._lock:
            daily = DailyStats(
                date=self.last_reset,
                requests_today=self.requests_today,
                active_users=sorted(self.active_users),
                last_updated=now,
            )
            totals = TotalStats(
                total_requests=self.total_requests,
                cache_hits=self.cache_hits,
                data_transferred=self.data_transferred,
                errors=self.errors,
                start_time=self.start_time,
                last_updated=now,
            )
            return daily, totals, dict(self.downloads)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "requests_today": self.requests_today,
                "total_requests": self.total_requests,
                "cache_hits": self.cache_hits,
                "errors": self.errors,
                "data_transferred": self.data_transferred,
                "response_times": list(self.response_times),
                "active_users": len(self.active_users),
                "downloads": dict(self.downloads),
                "start_time": self.start_time,
            }


stats = StatsStore()
