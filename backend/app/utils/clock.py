"""Clock helpers. All persisted timestamps are naive UTC."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ms_between(start: datetime | None, end: datetime | None) -> int:
    if start is None or end is None:
        return 0
    return int((end - start).total_seconds() * 1000)


def ms_ago(now: datetime, ms: int) -> datetime:
    return now - timedelta(milliseconds=ms)


def iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
