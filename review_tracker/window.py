"""
Ingestion window calculator.

Decides which slice of a store's review feed one ingestion run should look at.
The window is always anchored to the newest review we already hold, never to
"the last N days": if the scheduler misses a few cycles the next run still
starts where the data stops, so nothing is skipped.
"""

from datetime import datetime, timedelta
from typing import Any, Optional, Union

from review_tracker.config import DEFAULT_BACKFILL_DAYS, FIRST_RUN_DAYS, MAX_BACKFILL_DAYS
from review_tracker.dates import parse_iso, utc_now
from review_tracker.models import Window


def clamp_backfill_days(value: Any, default: int = DEFAULT_BACKFILL_DAYS,
                        maximum: int = MAX_BACKFILL_DAYS) -> int:
    """
    Coerce a caller-supplied backfill into [0, maximum].
    Anything that isn't a number (None, "abc", NaN, True) becomes the default.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        days = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    return max(0, min(maximum, days))


def compute_window(last_known_review_date: Union[str, datetime, None],
                   backfill_days: Any = DEFAULT_BACKFILL_DAYS,
                   now: Optional[datetime] = None,
                   first_run_days: int = FIRST_RUN_DAYS,
                   max_backfill_days: int = MAX_BACKFILL_DAYS) -> Window:
    """
    Compute the [start, end] scan window.

    Args:
        last_known_review_date: review_date of the newest stored review, or None
                                if the app has never been ingested.
        backfill_days:          How far before that date to re-scan. Store
                                pagination and clock skew can hide reviews right
                                at the boundary; the overlap catches them and the
                                idempotent insert absorbs the repeats.
        now:                    Injected for tests; defaults to current UTC time.

    Returns:
        Window(start, end) with end == now and start <= now.
    """
    now = parse_iso(now) if now is not None else utc_now()
    last = parse_iso(last_known_review_date)

    if last is None:
        return Window(start=now - timedelta(days=first_run_days), end=now)

    days = clamp_backfill_days(backfill_days, maximum=max_backfill_days)
    start = last - timedelta(days=days)
    if start > now:
        # Stored review dated in the future (clock skew on the store side)
        start = now
    return Window(start=start, end=now)
