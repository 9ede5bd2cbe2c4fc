from datetime import datetime, timezone
from typing import List

from pydantic import field_validator
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StatRecord(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value: str  # JSON document
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


class DailyStats(SQLModel):
    date: str
    requests_today: int = 0
    active_users: List[str] = Field(default_factory=list)
    last_updated: float = 0

    @field_validator("requests_today", "last_updated", mode="before")
    @classmethod
    def _null_as_zero(cls, value):
        return 0 if value is None else value

    @field_validator("active_users", mode="before")
    @classmethod
    def _null_as_empty(cls, value):
        return [] if value is None else value


class TotalStats(SQLModel):
    total_requests: int = 0
    cache_hits: int = 0
    data_transferred: int = 0
    errors: int = 0
    start_time: float | None = None
    last_updated: float = 0

    # Older writers stored null for counters they could not compute
    @field_validator("total_requests", "cache_hits", "data_transferred", "errors", "last_updated", mode="before")
    @classmethod
    def _null_as_zero(cls, value):
        return 0 if value is None else value
