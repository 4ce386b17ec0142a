"""
Date helpers.

Every timestamp we persist goes through to_iso(): UTC, millisecond precision,
"Z" suffix. Fixed width means string comparison in SQL matches time order,
which the review sort keys and schedule due-queries rely on.
"""

from datetime import date, datetime, timezone
from typing import Optional, Union

from dateutil.parser import isoparse


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are treated as UTC (the scrapers hand us both kinds)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso(value: Union[str, datetime, date, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass a datetime through) into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    try:
        return ensure_utc(isoparse(str(value).strip()))
    except (ValueError, OverflowError):
        return None


def to_iso(value: Union[str, datetime, date]) -> str:
    """
    Canonical storage format, e.g. "2026-01-15T10:30:00.000Z".

    Raises:
        ValueError: if a string value cannot be parsed.
    """
    parsed = parse_iso(value)
    if parsed is None:
        raise ValueError(f"Not an ISO-8601 timestamp: {value!r}")
    return parsed.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def day_of(value: datetime) -> str:
    """UTC calendar day, YYYY-MM-DD."""
    return ensure_utc(value).strftime("%Y-%m-%d")
