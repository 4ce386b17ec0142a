"""
Due sweeps: turn schedule rows into queue messages.

A sweep is run by an external timer (cron, a systemd timer, `review-tracker
sweep-ingest` in a loop). Two sweeps may overlap; the lock claim in
ScheduleStore.claim() makes sure only one of them enqueues a given entry.

Per due entry:
    claim lock -> send message -> reschedule (also releases the lock)
    claim lock -> send fails    -> release only, entry stays due
    claim lock -> bad key       -> disable, so it never blocks a batch again
"""

import logging
from datetime import datetime
from typing import Any, Optional

from review_tracker.config import DEFAULT_BACKFILL_DAYS, SCHED_BATCH_SIZE, SCHED_LOCK_SECONDS, THEMES_MAX_LIMIT
from review_tracker.dates import day_of, utc_now
from review_tracker.keys import build_selection, group_key, make_job_id, parse_app_key
from review_tracker.message_queue import INGEST_QUEUE, THEMES_QUEUE, MessageQueue
from review_tracker.models import AppIdentity, Schedule, SweepResult
from review_tracker.schedules import ScheduleStore
from review_tracker.window import clamp_backfill_days

logger = logging.getLogger(__name__)


# ---- Message builders ----

def ingest_message(identity: AppIdentity, app_name: Optional[str] = None,
                   backfill_days: Any = DEFAULT_BACKFILL_DAYS) -> dict:
    return {
        "mode": "incremental",
        "appName": app_name,
        "platform": identity.platform,
        "bundleId": identity.bundle_id,
        "backfillDays": clamp_backfill_days(backfill_days),
    }


def themes_message(group: str, selection: Optional[dict] = None,
                   now: Optional[datetime] = None) -> dict:
    """
    Themes job message. job_id is derived from (group, selection, day), so the
    same request twice on one day names the same job.
    """
    group = group_key(group)
    selection = selection or {}
    day = day_of(now or utc_now())
    return {
        "app_pk": group,
        **selection,
        "day": day,
        "job_id": make_job_id(group, selection, day),
    }


def enqueue_ingest(queue: MessageQueue, identity: AppIdentity, app_name: Optional[str] = None,
                   backfill_days: Any = DEFAULT_BACKFILL_DAYS,
                   now: Optional[datetime] = None) -> dict:
    """Manual "refresh now". Returns the accepted payload; the work happens later."""
    payload = ingest_message(identity, app_name, backfill_days)
    queue.send(INGEST_QUEUE, payload, now=now)
    logger.info("[ingest] manual enqueue %s backfill=%s", identity.key, payload["backfillDays"])
    return payload


def enqueue_themes(queue: MessageQueue, group: str, date_from: Optional[str] = None,
                   date_to: Optional[str] = None, limit: Optional[int] = None,
                   now: Optional[datetime] = None) -> dict:
    """
    Manual themes trigger, bypassing the schedule's next_run_at.

    Raises:
        ValueError: empty group, bad app keys, or invalid selection params.
    """
    group = group_key(group)
    if not group:
        raise ValueError("app_pk is required")
    for member in group.split(","):
        parse_app_key(member)
    selection = build_selection(date_from, date_to, limit, max_limit=THEMES_MAX_LIMIT)
    payload = themes_message(group, selection, now=now)
    queue.send(THEMES_QUEUE, payload, now=now)
    logger.info("[themes] manual enqueue %s job=%s day=%s", group, payload["job_id"], payload["day"])
    return payload


# ---- Sweeps ----

class ScheduleSweeper:
    """Shared due-sweep loop. Subclasses say which queue and what message."""

    queue_name = ""
    label = ""

    def __init__(self, schedules: ScheduleStore, queue: MessageQueue,
                 batch_size: int = SCHED_BATCH_SIZE, lock_seconds: int = SCHED_LOCK_SECONDS):
        self.schedules = schedules
        self.queue = queue
        self.batch_size = batch_size
        self.lock_seconds = lock_seconds

    def build_message(self, entry: Schedule, now: datetime) -> dict:
        raise NotImplementedError

    def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or utc_now()
        result = SweepResult()
        due = self.schedules.due(now, self.batch_size)
        logger.info("[%s] sweep: %d due", self.label, len(due))

        for entry in due:
            result.processed += 1
            if not self.schedules.claim(entry.key, now, self.lock_seconds):
                logger.info("[%s] lock conflict %s", self.label, entry.key)
                result.lock_conflicts += 1
                continue
            result.locked += 1
            logger.debug("[%s] lock ok %s", self.label, entry.key)

            try:
                message = self.build_message(entry, now)
            except ValueError as exc:
                # A bad key fails the same way on every sweep
                logger.error("[%s] unusable schedule %s, disabling: %s", self.label, entry.key, exc)
                result.errors += 1
                self._disable(entry.key)
                continue

            try:
                self.queue.send(self.queue_name, message, now=now)
            except Exception:
                logger.exception("[%s] enqueue error %s, releasing lock", self.label, entry.key)
                result.errors += 1
                self._release(entry.key)
                continue

            try:
                next_run = self.schedules.reschedule(entry.key, now, entry.interval_minutes)
            except Exception:
                # The message is out; the entry may fire again early, which consumers absorb
                logger.exception("[%s] reschedule error %s", self.label, entry.key)
                result.errors += 1
                self._release(entry.key)
            else:
                logger.info("[%s] enqueued %s, next run %s", self.label, entry.key, next_run)
            result.enqueued += 1
            result.enqueued_keys.append(entry.key)

        logger.info("[%s] sweep done: processed=%d locked=%d conflicts=%d enqueued=%d errors=%d",
                    self.label, result.processed, result.locked, result.lock_conflicts,
                    result.enqueued, result.errors)
        return result

    def _release(self, key: str) -> None:
        try:
            self.schedules.release(key)
        except Exception:
            logger.exception("[%s] lock release failed %s; it expires in %ds",
                             self.label, key, self.lock_seconds)

    def _disable(self, key: str) -> None:
        try:
            self.schedules.disable(key)
        except Exception:
            logger.exception("[%s] disable failed %s; lock expires in %ds",
                             self.label, key, self.lock_seconds)


class IngestScheduler(ScheduleSweeper):
    queue_name = INGEST_QUEUE
    label = "ingest"

    def __init__(self, schedules: ScheduleStore, queue: MessageQueue,
                 backfill_days: int = DEFAULT_BACKFILL_DAYS, **kwargs):
        super().__init__(schedules, queue, **kwargs)
        self.backfill_days = backfill_days

    def build_message(self, entry: Schedule, now: datetime) -> dict:
        return ingest_message(parse_app_key(entry.key), entry.app_name, self.backfill_days)


class ThemesScheduler(ScheduleSweeper):
    queue_name = THEMES_QUEUE
    label = "themes"

    def build_message(self, entry: Schedule, now: datetime) -> dict:
        # Scheduled runs use the default selection (recent window)
        return themes_message(self.schedules.normalize_key(entry.key), now=now)

    def run_now(self, group: str, date_from: Optional[str] = None, date_to: Optional[str] = None,
                limit: Optional[int] = None, now: Optional[datetime] = None) -> dict:
        """Enqueue immediately. Returns {"job_id", "day"} so callers can poll status."""
        payload = enqueue_themes(self.queue, group, date_from, date_to, limit, now=now)
        return {"job_id": payload["job_id"], "day": payload["day"]}
