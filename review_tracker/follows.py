"""
User-facing operations around followed apps.

    follow / unfollow     user -> app rows, plus the app's ingest schedule
    badges / mark_read    unread counts from the per-app review counters
    merge / unmerge       link two listings of the same product; their
                          combined group gets its own themes schedule

These are the entry points an HTTP layer (or the CLI) would call. They return
plain dicts and raise ValueError / LookupError for bad input.
"""

import logging
from datetime import datetime
from typing import Optional

from review_tracker.config import DEFAULT_BACKFILL_DAYS
from review_tracker.database import AppCounters, Database
from review_tracker.dates import to_iso, utc_now
from review_tracker.keys import group_key, parse_app_key
from review_tracker.message_queue import MessageQueue
from review_tracker.models import AppIdentity
from review_tracker.scheduler import ThemesScheduler, enqueue_ingest
from review_tracker.schedules import ScheduleStore

logger = logging.getLogger(__name__)


class FollowService:

    def __init__(self, db: Database, counters: AppCounters, queue: MessageQueue,
                 ingest_schedules: ScheduleStore, themes_schedules: ScheduleStore,
                 themes_scheduler: ThemesScheduler):
        self.db = db
        self.counters = counters
        self.queue = queue
        self.ingest_schedules = ingest_schedules
        self.themes_schedules = themes_schedules
        self.themes_scheduler = themes_scheduler

    # ---- Follow ----

    def follow_app(self, user_id: str, identity: AppIdentity, app_name: Optional[str] = None,
                   now: Optional[datetime] = None) -> dict:
        """
        Follow an app and get its reviews flowing right away.

        1. user -> app row (idempotent)
        2. ingest schedule, created due-now if missing
        3. immediate ingest message, then push next_run_at one interval out
           so the next sweep doesn't enqueue the same app again

        A failed immediate enqueue is logged and ignored: the schedule is
        still due, so the next sweep picks the app up.
        """
        now = now or utc_now()
        with self.db.connect() as conn:
            cursor = conn.execute(
                "INSERT INTO user_follows (user_id, app_pk, followed_at, last_seen_total) "
                "VALUES (?, ?, ?, 0) ON CONFLICT(user_id, app_pk) DO NOTHING",
                (user_id, identity.key, to_iso(now)),
            )
            newly_followed = cursor.rowcount > 0

        schedule, created = self.ingest_schedules.ensure(identity.key, app_name=app_name, now=now)

        enqueued = False
        try:
            enqueue_ingest(self.queue, identity, app_name or schedule.app_name,
                           DEFAULT_BACKFILL_DAYS, now=now)
            self.ingest_schedules.reschedule(identity.key, now, schedule.interval_minutes)
            enqueued = True
        except Exception:
            logger.warning("Immediate enqueue failed for %s; the next sweep will pick it up",
                           identity.key, exc_info=True)

        logger.info("User %s follows %s (new=%s, schedule created=%s)",
                    user_id, identity.key, newly_followed, created)
        return {
            "app_pk": identity.key,
            "followed": newly_followed,
            "schedule_created": created,
            "enqueued": enqueued,
            "schedule": self.ingest_schedules.get(identity.key).to_dict(),
        }

    def unfollow_app(self, user_id: str, identity: AppIdentity) -> bool:
        """The ingest schedule stays; other users may follow the same app."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM user_follows WHERE user_id = ? AND app_pk = ?", (user_id, identity.key)
            )
            return cursor.rowcount > 0

    def followed_apps(self, user_id: str) -> list[dict]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT app_pk, followed_at FROM user_follows WHERE user_id = ? ORDER BY app_pk",
                (user_id,),
            ).fetchall()
        links = self.links(user_id)
        followed = []
        for row in rows:
            identity = parse_app_key(row["app_pk"])
            followed.append({
                "app_pk": identity.key,
                "platform": identity.platform,
                "bundle_id": identity.bundle_id,
                "followed_at": row["followed_at"],
                "linked_app_pks": links.get(identity.key, []),
            })
        return followed

    # ---- Badges ----

    def badges(self, user_id: str) -> list[dict]:
        """badge_count = max(0, total_reviews - last_seen_total) per followed app."""
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT app_pk, last_seen_total, last_seen_at FROM user_follows "
                "WHERE user_id = ? ORDER BY app_pk",
                (user_id,),
            ).fetchall()
        totals = self.counters.get_many([row["app_pk"] for row in rows])

        items = []
        for row in rows:
            total = totals.get(row["app_pk"], 0)
            seen = row["last_seen_total"] or 0
            items.append({
                "app_pk": row["app_pk"],
                "badge_count": max(0, total - seen),
                "total_reviews": total,
                "last_seen_total": seen,
                "last_seen_at": row["last_seen_at"],
            })
        return items

    def mark_read(self, user_id: str, identity: AppIdentity, now: Optional[datetime] = None) -> dict:
        """
        Raises:
            LookupError: the user doesn't follow this app.
        """
        stamp = to_iso(now or utc_now())
        total = self.counters.get(identity.key)
        with self.db.connect() as conn:
            cursor = conn.execute(
                "UPDATE user_follows SET last_seen_total = ?, last_seen_at = ? "
                "WHERE user_id = ? AND app_pk = ?",
                (total, stamp, user_id, identity.key),
            )
            if cursor.rowcount == 0:
                raise LookupError(f"User {user_id} does not follow {identity.key}")
        return {"app_pk": identity.key, "last_seen_total": total, "last_seen_at": stamp}

    # ---- Merge ----

    @staticmethod
    def _validate_pair(app_pks: list[str]) -> tuple[str, str]:
        if not isinstance(app_pks, (list, tuple)) or len(app_pks) != 2:
            raise ValueError("Exactly two app keys are required")
        a, b = (str(pk or "").strip() for pk in app_pks)
        if not a or not b:
            raise ValueError("Both app keys are required")
        a, b = parse_app_key(a).key, parse_app_key(b).key
        if a == b:
            raise ValueError("The two app keys must be different")
        return a, b

    def merge_apps(self, user_id: str, app_pks: list[str], now: Optional[datetime] = None) -> dict:
        """
        Link two apps for this user and start a themes run on the pair.

        The run-now trigger goes straight through ThemesScheduler.run_now();
        if it fails the link still stands and the schedule will run it later.
        """
        now = now or utc_now()
        a, b = self._validate_pair(app_pks)
        stamp = to_iso(now)
        with self.db.connect() as conn:
            conn.executemany(
                "INSERT INTO app_links (user_id, app_pk, linked_pk, linked_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(user_id, app_pk, linked_pk) DO NOTHING",
                [(user_id, a, b, stamp), (user_id, b, a, stamp)],
            )

        merged = group_key([a, b])
        run_now = {"job_id": None, "day": None}
        try:
            self.themes_schedules.upsert(merged, enabled=True, now=now)
            run_now = self.themes_scheduler.run_now(merged, now=now)
        except Exception:
            logger.warning("Themes run-now failed for merged group %s", merged, exc_info=True)

        links = self.links(user_id)
        return {
            "group_key": merged,
            "linked": {a: links.get(a, []), b: links.get(b, [])},
            "run_now": run_now,
        }

    def unmerge_apps(self, user_id: str, app_pks: list[str]) -> dict:
        a, b = self._validate_pair(app_pks)
        with self.db.connect() as conn:
            conn.execute(
                "DELETE FROM app_links WHERE user_id = ? AND "
                "((app_pk = ? AND linked_pk = ?) OR (app_pk = ? AND linked_pk = ?))",
                (user_id, a, b, b, a),
            )
        links = self.links(user_id)
        return {"linked": {a: links.get(a, []), b: links.get(b, [])}}

    def links(self, user_id: str) -> dict[str, list[str]]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT app_pk, linked_pk FROM app_links WHERE user_id = ? ORDER BY app_pk, linked_pk",
                (user_id,),
            ).fetchall()
        links: dict[str, list[str]] = {}
        for row in rows:
            links.setdefault(row["app_pk"], []).append(row["linked_pk"])
        return links
