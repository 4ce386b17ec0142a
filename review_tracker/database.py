"""
Database layer — the storage backbone of the review tracker.

Uses SQLite: a file-based database built into Python.
One file holds every table; schedulers, workers and the queue all open short
connections against it. WAL mode plus a busy timeout lets several processes
(two overlapping sweeps, a handful of workers) share the file safely.

The store has no "upsert unless seen" primitive for our data, so every
idempotent write is phrased as a conditional statement and we read rowcount:
    - conditional create:   INSERT ... ON CONFLICT(...) DO NOTHING
    - conditional update:   UPDATE ... WHERE <condition>
    - atomic increment:     INSERT ... ON CONFLICT DO UPDATE SET n = n + excluded.n
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from review_tracker.config import DATABASE_PATH
from review_tracker.dates import to_iso, utc_now
from review_tracker.models import AppIdentity

logger = logging.getLogger(__name__)


SCHEMA = [
    # ---- Table 1: reviews ----
    # Append-only per-app log. (app_pk, sort_key) is the dedup key.
    """
    CREATE TABLE IF NOT EXISTS reviews (
        app_pk       TEXT NOT NULL,
        sort_key     TEXT NOT NULL,
        review_date  TEXT NOT NULL,
        rating       INTEGER,
        text         TEXT,
        author       TEXT,
        app_version  TEXT,
        app_name     TEXT,
        native_id    TEXT,
        ingested_at  TEXT NOT NULL,
        PRIMARY KEY (app_pk, sort_key)
    )
    """,

    # ---- Table 2: app_counters ----
    # Denormalised total_reviews per app, bumped by ingestion only.
    """
    CREATE TABLE IF NOT EXISTS app_counters (
        app_pk         TEXT PRIMARY KEY,
        total_reviews  INTEGER NOT NULL DEFAULT 0,
        updated_at     TEXT,
        reconciled_at  TEXT
    )
    """,

    # ---- Tables 3 & 4: schedules ----
    # Same shape; key is an app key for ingestion and a group key for themes.
    """
    CREATE TABLE IF NOT EXISTS ingest_schedules (
        key               TEXT PRIMARY KEY,
        app_name          TEXT,
        interval_minutes  INTEGER NOT NULL,
        enabled           INTEGER NOT NULL DEFAULT 1,
        next_run_at       TEXT NOT NULL,
        last_enqueued_at  TEXT,
        in_flight_until   TEXT,
        created_at        TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ingest_schedules_due ON ingest_schedules (enabled, next_run_at)",
    """
    CREATE TABLE IF NOT EXISTS themes_schedules (
        key               TEXT PRIMARY KEY,
        app_name          TEXT,
        interval_minutes  INTEGER NOT NULL,
        enabled           INTEGER NOT NULL DEFAULT 1,
        next_run_at       TEXT NOT NULL,
        last_enqueued_at  TEXT,
        in_flight_until   TEXT,
        created_at        TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS themes_schedules_due ON themes_schedules (enabled, next_run_at)",

    # ---- Table 5: themes_jobs ----
    # Pending markers and final results share the group partition;
    # sk is "pending#<day>#<job_id>" or "theme#<day>#<job_id>".
    """
    CREATE TABLE IF NOT EXISTS themes_jobs (
        group_key                 TEXT NOT NULL,
        sk                        TEXT NOT NULL,
        phase                     TEXT NOT NULL,
        job_id                    TEXT NOT NULL,
        day                       TEXT NOT NULL,
        status                    TEXT NOT NULL,
        selection                 TEXT,
        total_reviews_considered  INTEGER,
        result                    TEXT,
        error                     TEXT,
        created_at                TEXT NOT NULL,
        finished_at               TEXT,
        PRIMARY KEY (group_key, sk)
    )
    """,

    # ---- Tables 6 & 7: user follows and app links ----
    """
    CREATE TABLE IF NOT EXISTS user_follows (
        user_id          TEXT NOT NULL,
        app_pk           TEXT NOT NULL,
        followed_at      TEXT NOT NULL,
        last_seen_total  INTEGER NOT NULL DEFAULT 0,
        last_seen_at     TEXT,
        PRIMARY KEY (user_id, app_pk)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_links (
        user_id    TEXT NOT NULL,
        app_pk     TEXT NOT NULL,
        linked_pk  TEXT NOT NULL,
        linked_at  TEXT NOT NULL,
        PRIMARY KEY (user_id, app_pk, linked_pk)
    )
    """,

    # ---- Table 8: queue_messages ----
    # At-least-once queue. A received message is invisible until visible_at;
    # if it isn't deleted by then it is delivered again.
    """
    CREATE TABLE IF NOT EXISTS queue_messages (
        id             INTEGER PRIMARY KEY AUTOINCREMENT,
        queue          TEXT NOT NULL,
        body           TEXT NOT NULL,
        status         TEXT NOT NULL DEFAULT 'ready',
        visible_at     TEXT NOT NULL,
        receive_count  INTEGER NOT NULL DEFAULT 0,
        receipt        TEXT,
        created_at     TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS queue_messages_ready ON queue_messages (queue, status, visible_at)",
]


class Database:
    """
    Owns the path to the SQLite file and hands out connections.

    Build one at process start and pass it into every store; nothing in the
    package opens the database on its own.
    """

    def __init__(self, path: str = DATABASE_PATH, timeout: float = 30.0):
        self.path = path
        self.timeout = timeout

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """
        Open a connection, commit on success, roll back on error, always close.
        Rows come back as sqlite3.Row so columns can be read by name.
        """
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create every table. Safe to call repeatedly (IF NOT EXISTS)."""
        folder = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(folder, exist_ok=True)
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info("Database initialized: %s", self.path)

    def table_exists(self, table_name: str) -> bool:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
                (table_name,),
            ).fetchone()
        return row is not None


class AppCounters:
    """
    Denormalised review totals per app, used for unread badges.

    Ingestion only ever increments, atomically in SQL, so two workers touching
    the same app can't lose an update. The only other writer is the one-time
    reconciliation, which can raise but never lower the number.
    """

    def __init__(self, db: Database):
        self.db = db

    def increment(self, identity: AppIdentity, amount: int,
                  now: Optional[datetime] = None) -> None:
        if amount <= 0:
            return
        with self.db.connect() as conn:
            self.bump(conn, identity.key, amount, to_iso(now or utc_now()))

    def bump(self, conn: sqlite3.Connection, app_pk: str, amount: int, stamp: str) -> None:
        """Increment inside the caller's transaction."""
        conn.execute("""
            INSERT INTO app_counters (app_pk, total_reviews, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(app_pk) DO UPDATE SET
                total_reviews = total_reviews + excluded.total_reviews,
                updated_at = excluded.updated_at
        """, (app_pk, int(amount), stamp))

    def get(self, app_pk: str) -> int:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT total_reviews FROM app_counters WHERE app_pk = ?", (app_pk,)
            ).fetchone()
        return int(row["total_reviews"]) if row else 0

    def get_many(self, app_pks: list[str]) -> dict[str, int]:
        if not app_pks:
            return {}
        placeholders = ",".join("?" for _ in app_pks)
        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT app_pk, total_reviews FROM app_counters WHERE app_pk IN ({placeholders})",
                list(app_pks),
            ).fetchall()
        return {row["app_pk"]: int(row["total_reviews"]) for row in rows}

    def reconcile(self, identity: AppIdentity, force: bool = False,
                  now: Optional[datetime] = None) -> dict:
        """
        One-time fix for counters that started at 0 before counting existed.

        Sets total_reviews to max(current, actual rows) and stamps
        reconciled_at. A second call is a no-op unless force=True.
        """
        stamp = to_iso(now or utc_now())
        with self.db.connect() as conn:
            current = conn.execute(
                "SELECT total_reviews, reconciled_at FROM app_counters WHERE app_pk = ?",
                (identity.key,),
            ).fetchone()
            if current and current["reconciled_at"] and not force:
                return {"app_pk": identity.key, "total_reviews": current["total_reviews"],
                        "changed": False, "skipped": True}

            actual = conn.execute(
                "SELECT COUNT(*) FROM reviews WHERE app_pk = ?", (identity.key,)
            ).fetchone()[0]
            before = int(current["total_reviews"]) if current else 0
            after = max(before, int(actual))

            conn.execute("""
                INSERT INTO app_counters (app_pk, total_reviews, updated_at, reconciled_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(app_pk) DO UPDATE SET
                    total_reviews = MAX(total_reviews, excluded.total_reviews),
                    updated_at = excluded.updated_at,
                    reconciled_at = excluded.reconciled_at
            """, (identity.key, after, stamp, stamp))

        if after != before:
            logger.info("Counter reconciled for %s: %d -> %d", identity.key, before, after)
        return {"app_pk": identity.key, "total_reviews": after,
                "changed": after != before, "skipped": False}
