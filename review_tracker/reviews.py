"""
Append-only, per-app ordered log of reviews.

Rows are keyed by (app_pk, sort_key) where sort_key = "<date>#<content hash>".
Because the date comes first, ordering by sort_key is ordering by review date,
and the content hash makes re-ingesting the same review a no-op.
"""

import base64
import heapq
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional, Union

from review_tracker.database import AppCounters, Database
from review_tracker.dates import to_iso, utc_now
from review_tracker.keys import review_sort_key
from review_tracker.models import AppIdentity, RawReview, ReviewPage, ReviewRecord

logger = logging.getLogger(__name__)

# Sort-key bounds: every "<date>#<hash>" for a date sorts between these two
_LOW_SUFFIX = "#"
_HIGH_SUFFIX = "#\uffff"


def build_record(identity: AppIdentity, raw: RawReview, app_name: Optional[str] = None,
                 now: Optional[datetime] = None) -> ReviewRecord:
    """Turn a scraped review into the record we store, deriving its sort key."""
    review_date = to_iso(raw.date)
    return ReviewRecord(
        app_pk=identity.key,
        sort_key=review_sort_key(review_date, raw.text, raw.author),
        review_date=review_date,
        rating=int(raw.rating) if raw.rating is not None else None,
        text=raw.text,
        author=raw.author,
        app_version=raw.version,
        ingested_at=to_iso(now or utc_now()),
        app_name=app_name,
        native_id=str(raw.native_id) if raw.native_id is not None else None,
    )


def encode_cursor(state: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(state, sort_keys=True).encode("utf-8")).decode("ascii")


def decode_cursor(cursor: Optional[str]) -> dict:
    """
    Raises:
        ValueError: if the cursor was not produced by encode_cursor.
    """
    if not cursor:
        return {}
    try:
        state = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeError) as exc:
        raise ValueError(f"Invalid cursor: {exc}") from exc
    if not isinstance(state, dict):
        raise ValueError("Invalid cursor: expected an object")
    return state


class ReviewStore:
    """Read/write access to the reviews table."""

    def __init__(self, db: Database, max_parallel_queries: int = 8):
        self.db = db
        self.max_parallel_queries = max_parallel_queries

    # ---- Writes ----

    def insert_if_absent(self, record: ReviewRecord) -> bool:
        """
        Conditional create. Returns True if the row is new, False if a row with
        the same (app_pk, sort_key) already existed. Any other failure raises.
        """
        with self.db.connect() as conn:
            return self._insert(conn, record)

    def insert_counted(self, record: ReviewRecord, counters: AppCounters) -> bool:
        """
        insert_if_absent, plus a +1 on the app's counter when the row is new.

        Both writes share one transaction: if the counter update fails the row
        is rolled back too, so a redelivered message inserts and counts it again.
        """
        with self.db.connect() as conn:
            inserted = self._insert(conn, record)
            if inserted:
                counters.bump(conn, record.app_pk, 1, record.ingested_at)
            return inserted

    @staticmethod
    def _insert(conn, record: ReviewRecord) -> bool:
        cursor = conn.execute("""
            INSERT INTO reviews
            (app_pk, sort_key, review_date, rating, text, author,
             app_version, app_name, native_id, ingested_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(app_pk, sort_key) DO NOTHING
        """, (
            record.app_pk,
            record.sort_key,
            record.review_date,
            record.rating,
            record.text,
            record.author,
            record.app_version,
            record.app_name,
            record.native_id,
            record.ingested_at,
        ))
        return cursor.rowcount > 0

    # ---- Reads ----

    def latest(self, identity: Union[AppIdentity, str]) -> Optional[ReviewRecord]:
        """Most recent review for the app, or None if we have never ingested it."""
        items = self.query_latest_n(identity, 1)
        return items[0] if items else None

    def query_latest_n(self, identity: Union[AppIdentity, str], n: int) -> list[ReviewRecord]:
        if n <= 0:
            return []
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM reviews WHERE app_pk = ? ORDER BY sort_key DESC LIMIT ?",
                (_pk(identity), int(n)),
            ).fetchall()
        return [ReviewRecord.from_row(row) for row in rows]

    def query_range(self, identity: Union[AppIdentity, str],
                    start: Union[str, datetime], end: Union[str, datetime],
                    limit: int = 500, newest_first: bool = True,
                    cursor: Optional[str] = None) -> ReviewPage:
        """
        Reviews with start <= review_date <= end, one page at a time.

        Returns a ReviewPage; pass its next_cursor back to continue. The cursor
        is opaque to callers and only valid for the same app and direction.
        """
        low = to_iso(start) + _LOW_SUFFIX
        high = to_iso(end) + _HIGH_SUFFIX
        after = decode_cursor(cursor).get("after")

        clauses = ["app_pk = ?", "sort_key BETWEEN ? AND ?"]
        params: list = [_pk(identity), low, high]
        if after:
            clauses.append("sort_key < ?" if newest_first else "sort_key > ?")
            params.append(after)
        order = "DESC" if newest_first else "ASC"
        params.append(int(limit) + 1)

        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM reviews WHERE {' AND '.join(clauses)} "
                f"ORDER BY sort_key {order} LIMIT ?",
                params,
            ).fetchall()

        items = [ReviewRecord.from_row(row) for row in rows[:limit]]
        next_cursor = None
        if len(rows) > limit and items:
            next_cursor = encode_cursor({"after": items[-1].sort_key})
        return ReviewPage(items=items, next_cursor=next_cursor)

    def _page_before(self, app_pk: str, before: Optional[str], limit: int) -> list[ReviewRecord]:
        """Newest-first page of one app, strictly older than the given sort key."""
        with self.db.connect() as conn:
            if before:
                rows = conn.execute(
                    "SELECT * FROM reviews WHERE app_pk = ? AND sort_key < ? "
                    "ORDER BY sort_key DESC LIMIT ?",
                    (app_pk, before, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM reviews WHERE app_pk = ? ORDER BY sort_key DESC LIMIT ?",
                    (app_pk, limit),
                ).fetchall()
        return [ReviewRecord.from_row(row) for row in rows]

    def query_merged(self, app_pks: list[str], limit: int = 50,
                     cursor: Optional[str] = None) -> ReviewPage:
        """
        One newest-first stream across several apps.

        Each app contributes at most `limit` rows per call, fetched in
        parallel, and the per-app streams are k-way merged by sort key (which
        starts with the review date). Ties go to the app whose key sorts first.
        The cursor remembers, per app, the last row we handed out, so every
        app resumes independently; apps that contributed nothing this page
        keep their previous position.
        """
        apps = sorted({pk for pk in app_pks if pk})
        if not apps or limit <= 0:
            return ReviewPage(items=[], next_cursor=None)

        positions = decode_cursor(cursor).get("per_app", {})
        workers = max(1, min(self.max_parallel_queries, len(apps)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            buffers = list(executor.map(
                lambda pk: self._page_before(pk, positions.get(pk), limit + 1), apps
            ))

        # Tag each row with its app's rank so equal sort keys resolve stably
        streams = [
            [(record.sort_key, -rank, record) for record in buffer]
            for rank, buffer in enumerate(buffers)
        ]
        merged = []
        consumed = {pk: 0 for pk in apps}
        next_positions = dict(positions)
        for sort_key, neg_rank, record in heapq.merge(*streams, key=lambda t: (t[0], t[1]), reverse=True):
            if len(merged) >= limit:
                break
            merged.append(record)
            pk = apps[-neg_rank]
            consumed[pk] += 1
            next_positions[pk] = sort_key

        # One extra row per app tells us whether anything is left behind the cursor
        has_more = any(consumed[pk] < len(buffer) for pk, buffer in zip(apps, buffers))
        next_cursor = encode_cursor({"per_app": next_positions}) if has_more else None
        return ReviewPage(items=merged, next_cursor=next_cursor)

    def count(self, identity: Union[AppIdentity, str]) -> int:
        with self.db.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM reviews WHERE app_pk = ?", (_pk(identity),)
            ).fetchone()[0]


def _pk(identity: Union[AppIdentity, str]) -> str:
    return identity.key if isinstance(identity, AppIdentity) else str(identity)
