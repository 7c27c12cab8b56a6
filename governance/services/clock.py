"""Time source for the governance engine.

All timestamps are naive UTC, truncated to milliseconds so that values survive
a database round-trip unchanged (the audit hash covers them).
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def truncate_to_millis(value: datetime) -> datetime:
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def utcnow() -> datetime:
    return truncate_to_millis(datetime.now(timezone.utc).replace(tzinfo=None))


def to_iso(value: datetime) -> str:
    """Render a naive UTC datetime as ISO-8601 with milliseconds and a Z suffix."""
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
