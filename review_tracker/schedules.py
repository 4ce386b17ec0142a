"""
The "due" index for ingestion and themes runs.

One row per app key (ingestion) or group key (themes):
    interval_minutes, enabled, next_run_at, last_enqueued_at, in_flight_until

in_flight_until is the lock. It is the only contended field, it is only ever
taken with a conditional update, and every path that takes it releases it.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from review_tracker.config import DEFAULT_INGEST_INTERVAL_MINUTES, THEMES_DEFAULT_INTERVAL_MINUTES
from review_tracker.database import Database
from review_tracker.dates import to_iso, utc_now
from review_tracker.keys import group_key, parse_app_key, split_group_key
from review_tracker.models import Schedule
from review_tracker.reviews import decode_cursor, encode_cursor

logger = logging.getLogger(__name__)

INGEST_TABLE = "ingest_schedules"
THEMES_TABLE = "themes_schedules"
_TABLES = (INGEST_TABLE, THEMES_TABLE)


class ScheduleStore:

    def __init__(self, db: Database, table: str, default_interval_minutes: int):
        if table not in _TABLES:
            raise ValueError(f"Unknown schedule table: {table}")
        self.db = db
        self.table = table
        self.default_interval_minutes = default_interval_minutes

    @classmethod
    def for_ingest(cls, db: Database,
                   default_interval_minutes: int = DEFAULT_INGEST_INTERVAL_MINUTES) -> "ScheduleStore":
        return cls(db, INGEST_TABLE, default_interval_minutes)

    @classmethod
    def for_themes(cls, db: Database,
                   default_interval_minutes: int = THEMES_DEFAULT_INTERVAL_MINUTES) -> "ScheduleStore":
        return cls(db, THEMES_TABLE, default_interval_minutes)

    def normalize_key(self, key: str) -> str:
        """
        Canonical form of an app key (ingestion) or group key (themes).

        Raises:
            ValueError: if a sweep could never build a message for it.
        """
        if self.table == INGEST_TABLE:
            return parse_app_key(key).key
        members = split_group_key(key)
        if not members:
            raise ValueError("Group key is empty")
        return group_key(parse_app_key(member).key for member in members)

    # ---- Read API ----

    def get(self, key: str) -> Optional[Schedule]:
        with self.db.connect() as conn:
            row = conn.execute(f"SELECT * FROM {self.table} WHERE key = ?", (key,)).fetchone()
        return Schedule.from_row(row) if row else None

    def list_page(self, limit: int = 50, cursor: Optional[str] = None) -> tuple[list[Schedule], Optional[str]]:
        """Key-ordered listing, paginated with an opaque cursor."""
        limit = max(1, min(200, int(limit)))
        after = decode_cursor(cursor).get("after", "")
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {self.table} WHERE key > ? ORDER BY key ASC LIMIT ?",
                (after, limit + 1),
            ).fetchall()
        items = [Schedule.from_row(row) for row in rows[:limit]]
        next_cursor = encode_cursor({"after": items[-1].key}) if len(rows) > limit else None
        return items, next_cursor

    def due(self, now: datetime, limit: int) -> list[Schedule]:
        """Enabled entries whose next_run_at has arrived, oldest first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {self.table} WHERE enabled = 1 AND next_run_at <= ? "
                f"ORDER BY next_run_at ASC LIMIT ?",
                (to_iso(now), int(limit)),
            ).fetchall()
        return [Schedule.from_row(row) for row in rows]

    # ---- Write API ----

    def ensure(self, key: str, app_name: Optional[str] = None,
               now: Optional[datetime] = None) -> tuple[Schedule, bool]:
        """
        Create the entry if it doesn't exist (due immediately), else leave it alone.
        Returns (schedule, created). Raises ValueError for an invalid key.
        """
        key = self.normalize_key(key)
        stamp = to_iso(now or utc_now())
        with self.db.connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO {self.table} "
                f"(key, app_name, interval_minutes, enabled, next_run_at, created_at) "
                f"VALUES (?, ?, ?, 1, ?, ?) ON CONFLICT(key) DO NOTHING",
                (key, app_name, self.default_interval_minutes, stamp, stamp),
            )
            created = cursor.rowcount > 0
        return self.get(key), created

    def upsert(self, key: str, app_name: Optional[str] = None,
               interval_minutes: Optional[int] = None, enabled: Optional[bool] = None,
               jitter: bool = False, now: Optional[datetime] = None) -> tuple[Schedule, bool]:
        """
        Create-if-absent, otherwise partial update.

        On create, next_run_at is now, or a random point within the first
        interval when jitter=True (spreads a burst of new follows over time).
        On update only interval_minutes / enabled / app_name change;
        next_run_at is never touched here.

        Returns (schedule, created). Raises ValueError for an invalid key.
        """
        key = self.normalize_key(key)
        now = now or utc_now()
        if interval_minutes is not None:
            interval_minutes = int(interval_minutes)
            if interval_minutes <= 0:
                raise ValueError("interval_minutes must be positive")

        existing = self.get(key)
        if existing is None:
            interval = interval_minutes or self.default_interval_minutes
            first_run = now
            if jitter:
                first_run = now + timedelta(seconds=random.uniform(0, interval * 60))
            with self.db.connect() as conn:
                cursor = conn.execute(
                    f"INSERT INTO {self.table} "
                    f"(key, app_name, interval_minutes, enabled, next_run_at, last_enqueued_at, created_at) "
                    f"VALUES (?, ?, ?, ?, ?, NULL, ?) ON CONFLICT(key) DO NOTHING",
                    (key, app_name, interval, 1 if enabled is None or enabled else 0,
                     to_iso(first_run), to_iso(now)),
                )
                created = cursor.rowcount > 0
            if created:
                logger.info("Schedule created in %s: %s (every %d min)", self.table, key, interval)
                return self.get(key), True
            # Lost a race with a concurrent create; fall through to update
            existing = self.get(key)

        assignments, params = [], []
        if interval_minutes is not None and interval_minutes != existing.interval_minutes:
            assignments.append("interval_minutes = ?")
            params.append(interval_minutes)
        if enabled is not None and bool(enabled) != existing.enabled:
            assignments.append("enabled = ?")
            params.append(1 if enabled else 0)
        if app_name and app_name != existing.app_name:
            assignments.append("app_name = ?")
            params.append(app_name)
        if assignments:
            with self.db.connect() as conn:
                conn.execute(
                    f"UPDATE {self.table} SET {', '.join(assignments)} WHERE key = ?",
                    (*params, key),
                )
        return self.get(key), False

    # ---- Sweep primitives ----

    def claim(self, key: str, now: datetime, lock_seconds: int) -> bool:
        """
        Take the lock if nobody holds it (or the holder's lock expired) and
        the entry is still due. False means another sweep got there first.
        """
        stamp = to_iso(now)
        with self.db.connect() as conn:
            cursor = conn.execute(
                f"UPDATE {self.table} SET in_flight_until = ? "
                f"WHERE key = ? AND enabled = 1 AND next_run_at <= ? "
                f"AND (in_flight_until IS NULL OR in_flight_until < ?)",
                (to_iso(now + timedelta(seconds=lock_seconds)), key, stamp, stamp),
            )
            return cursor.rowcount == 1

    def release(self, key: str) -> None:
        """Drop the lock without touching next_run_at; the entry stays due."""
        with self.db.connect() as conn:
            conn.execute(f"UPDATE {self.table} SET in_flight_until = NULL WHERE key = ?", (key,))

    def disable(self, key: str) -> None:
        """Switch the entry off and drop the lock. Used for rows no sweep can handle."""
        with self.db.connect() as conn:
            conn.execute(f"UPDATE {self.table} SET enabled = 0, in_flight_until = NULL WHERE key = ?", (key,))

    def reschedule(self, key: str, now: datetime, interval_minutes: int) -> str:
        """Advance next_run_at by one interval, stamp last_enqueued_at, drop the lock."""
        next_run = to_iso(now + timedelta(minutes=interval_minutes))
        with self.db.connect() as conn:
            conn.execute(
                f"UPDATE {self.table} SET next_run_at = ?, last_enqueued_at = ?, in_flight_until = NULL "
                f"WHERE key = ?",
                (next_run, to_iso(now), key),
            )
        return next_run
