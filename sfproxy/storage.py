from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from sfproxy.config import REDIS_URL, STATS_STORE

logger = logging.getLogger("sfproxy.storage")


class KeyValueStore:
    """Async key-value store holding JSON documents under fixed string keys."""

    name = "base"

    async def get(self, key: str) -> Any:  # pragma: no cover - interface
        """Return the parsed JSON value stored at ``key`` or None."""
        raise NotImplementedError

    async def put(self, key: str, value: str) -> None:  # pragma: no cover - interface
        """Store the JSON string ``value`` at ``key``. Raises on failure."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryKeyValueStore(KeyValueStore):
    name = "memory"

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: str) -> None:
        self._data[key] = value


class RedisKeyValueStore(KeyValueStore):
    name = "redis"

    def __init__(self, url: str, prefix: str = "sfproxy:") -> None:
        import redis.asyncio as redis

        self._client = redis.from_url(url)
        self._prefix = prefix

    async def get(self, key: str) -> Any:
        raw = await self._client.get(f"{self._prefix}{key}")
        return json.loads(raw) if raw else None

    async def put(self, key: str, value: str) -> None:
        await self._client.set(f"{self._prefix}{key}", value)

    async def close(self) -> None:
        await self._client.aclose()


class SQLKeyValueStore(KeyValueStore):
    """Stores documents as rows of the ``statrecord`` table.

    SQLModel sessions are blocking, so every call is pushed to a worker thread.
    """

    name = "sql"

    def __init__(self) -> None:
        from sfproxy.db import init_db

        init_db()

    async def get(self, key: str) -> Any:
        raw = await asyncio.to_thread(self._read, key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, key, value)

    @staticmethod
    def _read(key: str) -> Optional[str]:
        from sfproxy.db import session_scope
        from sfproxy.models import StatRecord

        with session_scope() as session:
            record = session.get(StatRecord, key)
            return record.value if record else None

    @staticmethod
    def _write(key: str, value: str) -> None:
        from sfproxy.db import session_scope
        from sfproxy.models import StatRecord, utc_now

        with session_scope() as session:
            record = session.get(StatRecord, key)
            if record is None:
                record = StatRecord(key=key, value=value)
            else:
                record.value = value
                record.updated_at = utc_now()
            session.add(record)
            session.commit()


def create_store(kind: str = STATS_STORE) -> Optional[KeyValueStore]:
    """Build the configured stats store. Returns None when persistence is disabled."""
    if kind == "auto":
        kind = "redis" if REDIS_URL else "sql"

    if kind == "none":
        logger.info("event=stats_store_disabled")
        return None
    if kind == "memory":
        store: KeyValueStore = MemoryKeyValueStore()
    elif kind == "redis":
        if not REDIS_URL:
            raise ValueError("REDIS_URL must be set when STATS_STORE=redis")
        store = RedisKeyValueStore(REDIS_URL)
    elif kind == "sql":
        store = SQLKeyValueStore()
    else:
        raise ValueError(f"Unknown STATS_STORE value: {kind!r}")

    logger.info("event=stats_store_ready backend=%s", store.name)
    return store
