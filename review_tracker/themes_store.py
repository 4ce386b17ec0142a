"""
Pending markers and final results for themes jobs.

Both phases live in the themes_jobs table under the group key:
    sk = "pending#<day>#<job_id>"   written when a worker starts a job
    sk = "theme#<day>#<job_id>"     written once the analysis succeeded

Creating either is a conditional insert, so a duplicate delivery of the same
job never produces a second final result.
"""

import json
import logging
from datetime import datetime
from typing import Optional

from review_tracker.database import Database
from review_tracker.dates import to_iso, utc_now
from review_tracker.keys import group_key

logger = logging.getLogger(__name__)

PENDING, FINAL = "pending", "final"


def pending_sk(day: str, job_id: str) -> str:
    return f"pending#{day}#{job_id}"


def final_sk(day: str, job_id: str) -> str:
    return f"theme#{day}#{job_id}"


def _row_to_dict(row) -> dict:
    record = dict(row)
    for field in ("selection", "result"):
        if record.get(field):
            record[field] = json.loads(record[field])
    return record


def top_axes(result: Optional[dict], top_n: int = 3) -> dict:
    """
    Top positive/negative axes of a stored result. Older results (and some
    model replies) only carry the full `axes` breakdown, so rank from that
    when the top lists are empty.
    """
    result = result or {}
    negatives = list(result.get("top_negative_axes") or [])
    positives = list(result.get("top_positive_axes") or [])
    axes = result.get("axes") or []

    def ranked(side: str) -> list[dict]:
        candidates = [a for a in axes if (a.get(side) or {}).get("count")]
        candidates.sort(key=lambda a: a[side]["count"], reverse=True)
        return [
            {
                "axis_label": a.get("axis_label"),
                "axis_id": a.get("axis_id"),
                "count": a[side]["count"],
                "avg_rating": a[side].get("avg_rating"),
                "examples": a[side].get("examples") or [],
            }
            for a in candidates[:top_n]
        ]

    if not negatives:
        negatives = ranked("negative")
    if not positives:
        negative_ids = {a.get("axis_id") for a in negatives}
        positives = [a for a in ranked("positive") if a.get("axis_id") not in negative_ids]
    return {"top_negative_axes": negatives[:top_n], "top_positive_axes": positives[:top_n]}


class ThemesStore:

    def __init__(self, db: Database):
        self.db = db

    # ---- Writes ----

    def create_pending(self, group: str, job_id: str, day: str, selection: dict,
                       now: Optional[datetime] = None) -> bool:
        """False if a pending marker for this job already exists (duplicate delivery)."""
        with self.db.connect() as conn:
            cursor = conn.execute("""
                INSERT INTO themes_jobs
                (group_key, sk, phase, job_id, day, status, selection, created_at)
                VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)
                ON CONFLICT(group_key, sk) DO NOTHING
            """, (group_key(group), pending_sk(day, job_id), PENDING, job_id, day,
                  json.dumps(selection or {}, sort_keys=True), to_iso(now or utc_now())))
            return cursor.rowcount > 0

    def create_final(self, group: str, job_id: str, day: str, selection: dict,
                     total_reviews_considered: int, result: dict,
                     now: Optional[datetime] = None) -> bool:
        """False if this job already has a final record; callers treat that as done."""
        stamp = to_iso(now or utc_now())
        with self.db.connect() as conn:
            cursor = conn.execute("""
                INSERT INTO themes_jobs
                (group_key, sk, phase, job_id, day, status, selection,
                 total_reviews_considered, result, created_at, finished_at)
                VALUES (?, ?, ?, ?, ?, 'done', ?, ?, ?, ?, ?)
                ON CONFLICT(group_key, sk) DO NOTHING
            """, (group_key(group), final_sk(day, job_id), FINAL, job_id, day,
                  json.dumps(selection or {}, sort_keys=True), int(total_reviews_considered),
                  json.dumps(result, ensure_ascii=False), stamp, stamp))
            return cursor.rowcount > 0

    def mark_failed(self, group: str, job_id: str, day: str, error: str,
                    now: Optional[datetime] = None) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE themes_jobs SET status = 'failed', error = ?, finished_at = ? "
                "WHERE group_key = ? AND sk = ?",
                (str(error)[:1000], to_iso(now or utc_now()), group_key(group), pending_sk(day, job_id)),
            )

    def reset_pending(self, group: str, job_id: str, day: str) -> bool:
        """Put a failed marker back to 'pending' for a re-run. True if one was reset."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                "UPDATE themes_jobs SET status = 'pending', error = NULL, finished_at = NULL "
                "WHERE group_key = ? AND sk = ? AND status = 'failed'",
                (group_key(group), pending_sk(day, job_id)),
            )
            return cursor.rowcount > 0

    def delete_pending(self, group: str, job_id: str, day: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "DELETE FROM themes_jobs WHERE group_key = ? AND sk = ?",
                (group_key(group), pending_sk(day, job_id)),
            )

    # ---- Reads ----

    def _get(self, group: str, sk: str) -> Optional[dict]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM themes_jobs WHERE group_key = ? AND sk = ?", (group_key(group), sk)
            ).fetchone()
        return _row_to_dict(row) if row else None

    def get_pending(self, group: str, job_id: str, day: str) -> Optional[dict]:
        return self._get(group, pending_sk(day, job_id))

    def get_final(self, group: str, job_id: str, day: str) -> Optional[dict]:
        return self._get(group, final_sk(day, job_id))

    def latest_final(self, group: str) -> Optional[dict]:
        """Most recent successful result for the group, with top axes filled in."""
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM themes_jobs WHERE group_key = ? AND phase = ? "
                "ORDER BY day DESC, finished_at DESC LIMIT 1",
                (group_key(group), FINAL),
            ).fetchone()
        if row is None:
            return None
        record = _row_to_dict(row)
        record.update(top_axes(record.get("result")))
        return record

    def job_status(self, group: str, job_id: str, day: str) -> dict:
        """
        Poll one job. Status is "done", "failed", "pending" or "none"
        (never seen, e.g. the message is still queued).
        """
        final = self.get_final(group, job_id, day)
        if final:
            return {"status": "done", "job_id": job_id, "day": day,
                    "total_reviews_considered": final["total_reviews_considered"],
                    "finished_at": final["finished_at"],
                    "result": final["result"], **top_axes(final["result"])}
        pending = self.get_pending(group, job_id, day)
        if pending and pending["status"] == "failed":
            return {"status": "failed", "job_id": job_id, "day": day,
                    "error": pending["error"], "finished_at": pending["finished_at"]}
        if pending:
            return {"status": "pending", "job_id": job_id, "day": day,
                    "created_at": pending["created_at"]}
        return {"status": "none", "job_id": job_id, "day": day}
