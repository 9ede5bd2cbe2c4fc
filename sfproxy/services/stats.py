from __future__ import annotations

import math
import time
from typing import Any, Dict, List

from sfproxy.core.metrics import StatsStore

NO_DOWNLOADS_PLACEHOLDER = "No download data yet"
TOP_DOWNLOADS_LIMIT = 5


def format_bytes(value: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    if value <= 0:
        return "0 B"
    index = min(int(math.log(value, 1024)), len(units) - 1)
    size = value / (1024 ** index)
    # Float log can land just below an exact power of 1024
    if size >= 1024 and index < len(units) - 1:
        index += 1
        size /= 1024
    return f"{size:.1f} {units[index]}"


def cache_hit_rate(cache_hits: int, total_requests: int) -> str:
    if total_requests <= 0:
        return "0.0"
    return f"{cache_hits / total_requests * 100:.1f}"


def average_response_time(samples: List[int]) -> int:
    if not samples:
        return 0
    return int(sum(samples) / len(samples) + 0.5)


def top_downloads(downloads: Dict[str, int], limit: int = TOP_DOWNLOADS_LIMIT) -> List[str]:
    # sorted() is stable, so ties keep insertion order
    ranked = sorted(downloads.items(), key=lambda item: item[1], reverse=True)[:limit]
    entries = [f"{name} ({count})" for name, count in ranked]
    return entries or [NO_DOWNLOADS_PLACEHOLDER]


def build_stats_payload(store: StatsStore) -> Dict[str, Any]:
    snapshot = store.snapshot()
    return {
        "requests_today": snapshot["requests_today"],
        "total_requests": snapshot["total_requests"],
        "cache_hit_rate": f"{cache_hit_rate(snapshot['cache_hits'], snapshot['total_requests'])}%",
        "avg_response_time": f"{average_response_time(snapshot['response_times'])}ms",
        "uptime_seconds": max(0, int(time.time() - snapshot["start_time"])),
        "data_transferred": format_bytes(snapshot["data_transferred"]),
        "active_users": snapshot["active_users"],
        "top_downloads": top_downloads(snapshot["downloads"]),
        "errors": snapshot["errors"],
    }
