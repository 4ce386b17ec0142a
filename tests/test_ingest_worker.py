"""
Tests for the ingestion worker: first run, idempotent re-run, window
filtering, partial failures and message parsing.
"""

import unittest
from datetime import timedelta

from review_tracker.database import AppCounters
from review_tracker.dates import utc_now
from review_tracker.ingest_worker import IngestionWorker, parse_ingest_message
from review_tracker.message_queue import INGEST_QUEUE, MessageQueue, consume
from review_tracker.models import AppIdentity, MalformedMessage, RawReview
from review_tracker.reviews import ReviewStore, build_record
from review_tracker.scheduler import enqueue_ingest

from support import NOW, FakeScraper, TempDatabaseCase, make_reviews, paginate

APP = AppIdentity("android", "com.example.app")


class FlakyReviewStore(ReviewStore):
    """Raises for one specific review text, like a throttled write would."""

    def __init__(self, db, bad_text):
        super().__init__(db)
        self.bad_text = bad_text

    def insert_counted(self, record, counters):
        if record.text == self.bad_text:
            raise RuntimeError("ProvisionedThroughputExceeded")
        return super().insert_counted(record, counters)


class OutageCounters(AppCounters):
    """Counter writes fail until the outage is over."""

    def __init__(self, db):
        super().__init__(db)
        self.down = True

    def bump(self, conn, app_pk, amount, stamp):
        if self.down:
            raise RuntimeError("counter table unavailable")
        super().bump(conn, app_pk, amount, stamp)


class TestIngest(TempDatabaseCase):

    def setUp(self):
        super().setUp()
        self.reviews = ReviewStore(self.db)
        self.counters = AppCounters(self.db)

    def _worker(self, scraper, reviews=None):
        return IngestionWorker(reviews or self.reviews, self.counters, {"android": scraper},
                               insert_concurrency=4)

    def test_first_run_then_rerun(self):
        # 50 reviews over the last ~25 hours
        raws = make_reviews(50)
        scraper = FakeScraper("android", [raws])
        worker = self._worker(scraper)

        first = worker.ingest(APP, now=NOW)
        self.assertEqual((first.fetched, first.inserted, first.duplicates, first.errors), (50, 50, 0, 0))
        self.assertEqual(self.counters.get(APP.key), 50)
        self.assertEqual(first.window_start, "2025-10-02T12:00:00.000Z")
        self.assertEqual(first.window_end, "2026-03-01T12:00:00.000Z")

        second = worker.ingest(APP, now=NOW)
        self.assertEqual((second.fetched, second.inserted, second.duplicates, second.errors), (50, 0, 50, 0))
        self.assertEqual(self.counters.get(APP.key), 50)
        self.assertEqual(self.reviews.count(APP), 50)

    def test_incremental_window_anchored_to_latest_review(self):
        old = RawReview(date=NOW - timedelta(days=10), rating=5, text="old", author="a")
        self.reviews.insert_if_absent(build_record(APP, old, now=NOW))
        worker = self._worker(FakeScraper("android", [make_reviews(3)]))
        result = worker.ingest(APP, backfill_days=1, now=NOW)
        self.assertEqual(result.window_start, "2026-02-18T12:00:00.000Z")
        self.assertEqual(result.inserted, 3)
        self.assertEqual(self.counters.get(APP.key), 3)

    def test_items_outside_window_are_dropped(self):
        inside = make_reviews(5)
        too_old = RawReview(date=NOW - timedelta(days=200), rating=1, text="ancient", author="x")
        future = RawReview(date=NOW + timedelta(hours=2), rating=1, text="from the future", author="y")
        scraper = FakeScraper("android", [[future] + inside + [too_old]])

        result = self._worker(scraper).ingest(APP, now=NOW)
        self.assertEqual(result.scanned, 7)
        self.assertEqual(result.fetched, 5)
        self.assertEqual(result.inserted, 5)
        texts = {r.text for r in self.reviews.query_latest_n(APP, 10)}
        self.assertNotIn("ancient", texts)
        self.assertNotIn("from the future", texts)

    def test_early_stop_bounds_pages(self):
        # Seed so the next window starts at NOW - 3 days
        seed = make_reviews(1, newest=NOW - timedelta(days=1))
        self._worker(FakeScraper("android", [seed])).ingest(APP, now=NOW)

        pages = paginate(make_reviews(100, spacing=timedelta(hours=6)), 10)
        scraper = FakeScraper("android", pages)
        self._worker(scraper).ingest(APP, now=NOW)
        # page 1 reaches back to NOW - 55h, page 2 to NOW - 115h
        self.assertEqual(scraper.fetch_calls, [0, 1])

    def test_single_insert_failure_does_not_abort_batch(self):
        raws = make_reviews(10)
        worker = self._worker(FakeScraper("android", [raws]),
                              reviews=FlakyReviewStore(self.db, bad_text="review number 3"))
        with self.assertLogs("review_tracker.ingest_worker", level="ERROR"):
            result = worker.ingest(APP, now=NOW)
        self.assertEqual((result.fetched, result.inserted, result.duplicates, result.errors), (10, 9, 0, 1))
        self.assertEqual(self.counters.get(APP.key), 9)

    def test_counter_failure_then_redelivery_counts_everything(self):
        counters = OutageCounters(self.db)
        worker = IngestionWorker(self.reviews, counters, {"android": FakeScraper("android", [make_reviews(50)])},
                                 insert_concurrency=4)

        with self.assertLogs("review_tracker.ingest_worker", level="ERROR"):
            first = worker.ingest(APP, now=NOW)
        self.assertEqual((first.inserted, first.errors), (0, 50))
        self.assertEqual(self.reviews.count(APP), 0)

        counters.down = False
        second = worker.ingest(APP, now=NOW)
        self.assertEqual((second.inserted, second.duplicates, second.errors), (50, 0, 0))
        self.assertEqual(self.reviews.count(APP), 50)
        self.assertEqual(counters.get(APP.key), 50)

    def test_scrape_failure_returns_summary(self):
        scraper = FakeScraper("android", [make_reviews(5)], fail_pages={1})
        with self.assertLogs("review_tracker.ingest_worker", level="ERROR"):
            result = self._worker(scraper).ingest(APP, now=NOW)
        self.assertEqual((result.fetched, result.inserted, result.errors), (0, 0, 1))
        self.assertEqual(self.counters.get(APP.key), 0)

    def test_nothing_new_leaves_counter_alone(self):
        result = self._worker(FakeScraper("android", [[]])).ingest(APP, now=NOW)
        self.assertEqual((result.fetched, result.inserted), (0, 0))
        self.assertEqual(self.counters.get(APP.key), 0)

    def test_store_id_resolved_once_per_run(self):
        scraper = FakeScraper("android", paginate(make_reviews(30), 10))
        self._worker(scraper).ingest(APP, now=NOW)
        self.assertEqual(scraper.resolve_calls, ["com.example.app"])


class TestParseIngestMessage(unittest.TestCase):

    def test_valid(self):
        identity, backfill, name = parse_ingest_message({
            "mode": "incremental", "platform": "iOS", "bundleId": "com.example.app",
            "appName": "Example", "backfillDays": 5,
        })
        self.assertEqual(identity, AppIdentity("ios", "com.example.app"))
        self.assertEqual((backfill, name), (5, "Example"))

    def test_defaults(self):
        _, backfill, name = parse_ingest_message({"platform": "android", "bundleId": "x"})
        self.assertEqual((backfill, name), (2, None))

    def test_invalid(self):
        for payload in ({}, {"platform": "android"}, {"platform": "web", "bundleId": "x"},
                        {"mode": "full", "platform": "android", "bundleId": "x"}, ["android"]):
            with self.subTest(payload=payload):
                with self.assertRaises(MalformedMessage):
                    parse_ingest_message(payload)


class TestIngestThroughQueue(TempDatabaseCase):

    def test_enqueue_then_consume(self):
        queue = MessageQueue(self.db)
        reviews, counters = ReviewStore(self.db), AppCounters(self.db)
        # handle_message runs on the real clock
        fresh = make_reviews(4, newest=utc_now() - timedelta(hours=1))
        worker = IngestionWorker(reviews, counters, {"android": FakeScraper("android", [fresh])})

        payload = enqueue_ingest(queue, APP, app_name="Example", backfill_days="junk", now=NOW)
        self.assertEqual(payload, {"mode": "incremental", "appName": "Example", "platform": "android",
                                   "bundleId": "com.example.app", "backfillDays": 2})

        queue.send(INGEST_QUEUE, {"platform": "android"}, now=NOW)
        with self.assertLogs("review_tracker.message_queue", level="WARNING"):
            result = consume(queue, INGEST_QUEUE, worker.handle_message, now=NOW)
        self.assertEqual((result.handled, result.dropped, result.failed), (1, 1, 0))
        self.assertEqual(counters.get(APP.key), 4)
        self.assertEqual(reviews.latest(APP).app_name, "Example")


if __name__ == "__main__":
    unittest.main(verbosity=2)
