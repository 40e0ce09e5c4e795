from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from dateutil import parser

_STORAGE_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime_utc(value: Any) -> datetime | None:
    if value is None:
        return None

    if isinstance(value, datetime):
        return to_utc(value)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            return to_utc(parser.isoparse(value))
        except (ValueError, TypeError, OverflowError):
            pass
        try:
            return to_utc(parser.parse(value))
        except (ValueError, TypeError, OverflowError):
            return None

    return None


def format_storage_timestamp(value: datetime) -> str:
    """Fixed-width UTC text so stored values order lexicographically."""
    return to_utc(value).strftime(_STORAGE_FORMAT)


def format_datetime(value: datetime | None) -> str:
    if value is None:
        return "never"
    return to_utc(value).strftime("%Y-%m-%d %H:%M:%S UTC")
