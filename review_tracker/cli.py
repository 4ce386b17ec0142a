"""
Command-line entry point: `python -m review_tracker <command>`.

Sweeps and workers are meant to be run by an external timer, e.g.

    */5 * * * *  python -m review_tracker sweep-ingest
    */1 * * * *  python -m review_tracker work-ingest

Every command prints its result as JSON and exits 0; bad arguments exit 2.
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from typing import Optional

from review_tracker.config import DATABASE_PATH, LOG_LEVEL, setup_logging
from review_tracker.database import AppCounters, Database
from review_tracker.follows import FollowService
from review_tracker.ingest_worker import IngestionWorker
from review_tracker.keys import parse_app_key, split_group_key
from review_tracker.message_queue import INGEST_QUEUE, THEMES_QUEUE, MessageQueue, consume
from review_tracker.models import AppIdentity
from review_tracker.reviews import ReviewStore
from review_tracker.scheduler import IngestScheduler, ThemesScheduler, enqueue_ingest
from review_tracker.schedules import ScheduleStore
from review_tracker.scraper import default_scrapers
from review_tracker.themes_store import ThemesStore
from review_tracker.themes_worker import ThemesWorker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything wired together once per process."""
    db: Database
    queue: MessageQueue
    reviews: ReviewStore
    counters: AppCounters
    ingest_schedules: ScheduleStore
    themes_schedules: ScheduleStore
    themes_store: ThemesStore
    ingest_scheduler: IngestScheduler
    themes_scheduler: ThemesScheduler
    follows: FollowService
    ingest_worker: Optional[IngestionWorker] = None
    themes_worker: Optional[ThemesWorker] = None


def build_services(db_path: str = DATABASE_PATH, scrapers: Optional[dict] = None,
                   analyzer=None) -> Services:
    db = Database(db_path)
    db.initialize()
    queue = MessageQueue(db)
    reviews = ReviewStore(db)
    counters = AppCounters(db)
    ingest_schedules = ScheduleStore.for_ingest(db)
    themes_schedules = ScheduleStore.for_themes(db)
    themes_store = ThemesStore(db)
    ingest_scheduler = IngestScheduler(ingest_schedules, queue)
    themes_scheduler = ThemesScheduler(themes_schedules, queue)
    follows = FollowService(db, counters, queue, ingest_schedules, themes_schedules, themes_scheduler)

    # Scrapers and the analyzer only get built for commands that need them
    ingest_worker = IngestionWorker(reviews, counters, scrapers) if scrapers is not None else None
    themes_worker = ThemesWorker(reviews, themes_store, analyzer) if analyzer is not None else None

    return Services(db, queue, reviews, counters, ingest_schedules, themes_schedules, themes_store,
                    ingest_scheduler, themes_scheduler, follows, ingest_worker, themes_worker)


def _identity(value: str) -> AppIdentity:
    try:
        return parse_app_key(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="review-tracker",
        description="Incremental app-store review ingestion and theme analysis",
    )
    parser.add_argument("--db", default=DATABASE_PATH, help="SQLite file (default: %(default)s)")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING ...")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create tables")
    sub.add_parser("sweep-ingest", help="enqueue ingestion for every due app")
    sub.add_parser("sweep-themes", help="enqueue themes jobs for every due group")

    for name in ("work-ingest", "work-themes"):
        p = sub.add_parser(name, help=f"consume one batch from the {name[5:]} queue")
        p.add_argument("--max-messages", type=int, default=10)

    p = sub.add_parser("ingest-now", help="queue an ingestion for one app")
    p.add_argument("app", type=_identity, help="platform#bundleId")
    p.add_argument("--backfill-days", type=int, default=None)
    p.add_argument("--app-name", default=None)

    p = sub.add_parser("themes-now", help="queue a themes job for an app or group")
    p.add_argument("group", help="app key, or comma-joined app keys")
    p.add_argument("--from", dest="date_from", default=None)
    p.add_argument("--to", dest="date_to", default=None)
    p.add_argument("--limit", type=int, default=None)

    p = sub.add_parser("themes-status", help="poll a themes job, or show the latest result")
    p.add_argument("group")
    p.add_argument("--job-id", default=None)
    p.add_argument("--day", default=None)

    p = sub.add_parser("follow", help="follow (or --unfollow) an app for a user")
    p.add_argument("user")
    p.add_argument("app", type=_identity)
    p.add_argument("--app-name", default=None)
    p.add_argument("--unfollow", action="store_true")

    p = sub.add_parser("merge", help="link (or --unmerge) two apps for a user")
    p.add_argument("user")
    p.add_argument("app_a", type=_identity)
    p.add_argument("app_b", type=_identity)
    p.add_argument("--unmerge", action="store_true")

    p = sub.add_parser("badges", help="unread counts for a user's followed apps")
    p.add_argument("user")
    p.add_argument("--mark-read", type=_identity, default=None, metavar="APP")

    p = sub.add_parser("reconcile", help="one-time counter correction")
    p.add_argument("app", type=_identity)
    p.add_argument("--force", action="store_true")

    p = sub.add_parser("reviews", help="newest-first reviews across one or more apps")
    p.add_argument("apps", help="comma-joined app keys")
    p.add_argument("--limit", type=int, default=20)
    p.add_argument("--cursor", default=None)

    p = sub.add_parser("schedule", help="show, list or update schedules")
    p.add_argument("kind", choices=("ingest", "themes"))
    p.add_argument("key", nargs="?", default=None, help="omit to list")
    p.add_argument("--interval", type=int, default=None, help="minutes")
    p.add_argument("--enable", dest="enabled", action="store_true", default=None)
    p.add_argument("--disable", dest="enabled", action="store_false")
    p.add_argument("--jitter", action="store_true")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--cursor", default=None)
    return parser


def run(args: argparse.Namespace, services: Services) -> object:
    command = args.command

    if command == "init-db":
        return {"database": services.db.path, "initialized": True}

    if command == "sweep-ingest":
        return services.ingest_scheduler.run_sweep().to_dict()
    if command == "sweep-themes":
        return services.themes_scheduler.run_sweep().to_dict()

    if command == "work-ingest":
        worker = services.ingest_worker or IngestionWorker(services.reviews, services.counters, default_scrapers())
        return vars(consume(services.queue, INGEST_QUEUE, worker.handle_message, args.max_messages))
    if command == "work-themes":
        worker = services.themes_worker or ThemesWorker(services.reviews, services.themes_store)
        return vars(consume(services.queue, THEMES_QUEUE, worker.handle_message, args.max_messages))

    if command == "ingest-now":
        return enqueue_ingest(services.queue, args.app, args.app_name, args.backfill_days)
    if command == "themes-now":
        return services.themes_scheduler.run_now(args.group, args.date_from, args.date_to, args.limit)
    if command == "themes-status":
        if args.job_id and args.day:
            return services.themes_store.job_status(args.group, args.job_id, args.day)
        return services.themes_store.latest_final(args.group) or {"status": "none"}

    if command == "follow":
        if args.unfollow:
            return {"app_pk": args.app.key, "unfollowed": services.follows.unfollow_app(args.user, args.app)}
        return services.follows.follow_app(args.user, args.app, args.app_name)
    if command == "merge":
        pair = [args.app_a.key, args.app_b.key]
        if args.unmerge:
            return services.follows.unmerge_apps(args.user, pair)
        return services.follows.merge_apps(args.user, pair)
    if command == "badges":
        if args.mark_read:
            return services.follows.mark_read(args.user, args.mark_read)
        return services.follows.badges(args.user)

    if command == "reconcile":
        return services.counters.reconcile(args.app, force=args.force)

    if command == "reviews":
        page = services.reviews.query_merged(split_group_key(args.apps), args.limit, args.cursor)
        return {"items": [r.to_dict() for r in page.items], "next_cursor": page.next_cursor}

    if command == "schedule":
        store = services.ingest_schedules if args.kind == "ingest" else services.themes_schedules
        if args.key is None:
            items, next_cursor = store.list_page(args.limit, args.cursor)
            return {"items": [s.to_dict() for s in items], "next_cursor": next_cursor}
        if args.interval is None and args.enabled is None and not args.jitter:
            schedule = store.get(args.key)
            return schedule.to_dict() if schedule else {"key": args.key, "schedule": None}
        schedule, created = store.upsert(args.key, interval_minutes=args.interval,
                                         enabled=args.enabled, jitter=args.jitter)
        return {**schedule.to_dict(), "created": created}

    raise ValueError(f"Unknown command: {command}")


def main(argv: Optional[list[str]] = None, services: Optional[Services] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level or LOG_LEVEL)

    services = services or build_services(args.db)
    try:
        result = run(args, services)
    except (ValueError, LookupError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"error: {exc}", file=sys.stderr)
        return 2
    _print(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
