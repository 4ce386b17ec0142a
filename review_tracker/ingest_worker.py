"""
Ingestion worker — brings one app's stored reviews up to date.

Pipeline for a single app:
    1. Resolve the store id (Android: the bundle id; iOS: an iTunes lookup)
    2. Find the newest review we already hold
    3. Compute the scan window from it
    4. Scrape newest-first pages until we're past the window start
    5. Keep only items inside the window, oldest first
    6. Insert each one, a bounded number at a time, bumping the app's counter
       in the same transaction whenever the row was actually new

Running this twice gives the same end state: the window is anchored to what
is in the store at call time, and re-inserting a review is a no-op.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Optional

from review_tracker.config import INSERT_CONCURRENCY, SCRAPE_MAX_PAGES
from review_tracker.database import AppCounters
from review_tracker.dates import to_iso, utc_now
from review_tracker.models import AppIdentity, IngestResult, MalformedMessage, ScrapeError
from review_tracker.reviews import ReviewStore, build_record
from review_tracker.scraper import StoreScraper, scrape_window
from review_tracker.window import clamp_backfill_days, compute_window

logger = logging.getLogger(__name__)

INSERTED, DUPLICATE, FAILED = "inserted", "duplicate", "failed"


def parse_ingest_message(payload: Any) -> tuple[AppIdentity, int, Optional[str]]:
    """
    Validate an ingestion queue message.

    Expected shape:
        {"mode": "incremental", "platform": "android", "bundleId": "...",
         "appName": "...", "backfillDays": 2}

    Returns:
        (identity, backfill_days, app_name)

    Raises:
        MalformedMessage: missing or invalid platform / bundleId.
    """
    if not isinstance(payload, dict):
        raise MalformedMessage("Ingestion message must be an object")
    mode = payload.get("mode", "incremental")
    if mode != "incremental":
        raise MalformedMessage(f"Unsupported ingestion mode: {mode!r}")
    try:
        identity = AppIdentity(platform=payload.get("platform"), bundle_id=payload.get("bundleId"))
    except ValueError as exc:
        raise MalformedMessage(str(exc)) from exc
    return identity, clamp_backfill_days(payload.get("backfillDays")), payload.get("appName") or None


class IngestionWorker:
    """
    One instance per process. Stores and scrapers are passed in, so tests can
    hand it fakes and a temp database.
    """

    def __init__(self, reviews: ReviewStore, counters: AppCounters,
                 scrapers: dict[str, StoreScraper],
                 insert_concurrency: int = INSERT_CONCURRENCY,
                 max_pages: int = SCRAPE_MAX_PAGES):
        self.reviews = reviews
        self.counters = counters
        self.scrapers = scrapers
        self.insert_concurrency = max(1, insert_concurrency)
        self.max_pages = max_pages

    def ingest(self, identity: AppIdentity, backfill_days: Any = None,
               app_name: Optional[str] = None, now: Optional[datetime] = None) -> IngestResult:
        """
        Run one incremental ingestion for an app.

        Partial failures (scrape errors, individual insert errors) are counted
        in the returned summary rather than raised. Database failures outside
        the per-item inserts propagate so the queue redelivers the message.
        """
        now = now or utc_now()
        result = IngestResult(app_pk=identity.key)

        scraper = self.scrapers.get(identity.platform)
        if scraper is None:
            raise ValueError(f"No scraper configured for platform {identity.platform}")

        latest = self.reviews.latest(identity)
        window = compute_window(latest.review_date if latest else None, backfill_days, now=now)
        result.window_start = to_iso(window.start)
        result.window_end = to_iso(window.end)
        logger.info("[%s] window %s -> %s (%s)", identity.key, result.window_start, result.window_end,
                    "incremental" if latest else "first run")

        try:
            store_id = scraper.resolve_store_id(identity.bundle_id)
            raw_items = scrape_window(scraper, store_id, window, max_pages=self.max_pages)
        except ScrapeError as exc:
            logger.error("[%s] scrape failed: %s", identity.key, exc)
            result.errors += 1
            return result

        result.scanned = len(raw_items)
        in_window = sorted(
            (item for item in raw_items if window.contains(item.date)),
            key=lambda item: item.date,
        )
        result.fetched = len(in_window)

        records = [build_record(identity, item, app_name=app_name, now=now) for item in in_window]
        workers = min(self.insert_concurrency, len(records)) or 1
        with ThreadPoolExecutor(max_workers=workers) as executor:
            outcomes = list(executor.map(self._insert_one, records))

        result.inserted = outcomes.count(INSERTED)
        result.duplicates = outcomes.count(DUPLICATE)
        result.errors += outcomes.count(FAILED)

        logger.info("[%s] scanned=%d fetched=%d inserted=%d duplicates=%d errors=%d",
                    identity.key, result.scanned, result.fetched, result.inserted,
                    result.duplicates, result.errors)
        return result

    def _insert_one(self, record) -> str:
        try:
            if self.reviews.insert_counted(record, self.counters):
                return INSERTED
            logger.debug("duplicate skipped %s %s", record.app_pk, record.sort_key)
            return DUPLICATE
        except Exception:
            logger.exception("insert failed %s %s", record.app_pk, record.sort_key)
            return FAILED

    def handle_message(self, payload: dict) -> IngestResult:
        """Queue handler: parse, then ingest."""
        identity, backfill_days, app_name = parse_ingest_message(payload)
        return self.ingest(identity, backfill_days, app_name=app_name)
