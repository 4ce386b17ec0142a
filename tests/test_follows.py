"""
Tests for follow / badges / merge. Ingestion runs against a fake scraper so
the badge numbers come from real counter updates.
"""

import unittest
from datetime import timedelta

from review_tracker.database import AppCounters
from review_tracker.dates import to_iso
from review_tracker.follows import FollowService
from review_tracker.ingest_worker import IngestionWorker
from review_tracker.keys import make_job_id
from review_tracker.message_queue import INGEST_QUEUE, THEMES_QUEUE, MessageQueue
from review_tracker.models import AppIdentity
from review_tracker.reviews import ReviewStore
from review_tracker.scheduler import ThemesScheduler
from review_tracker.schedules import ScheduleStore

from support import NOW, FakeScraper, TempDatabaseCase, make_reviews

APP = AppIdentity("android", "com.example.app")
IOS_APP = AppIdentity("ios", "com.example.app")


class BrokenQueue(MessageQueue):
    def send(self, queue, body, now=None):
        raise RuntimeError("queue unavailable")


class FollowCase(TempDatabaseCase):

    def setUp(self):
        super().setUp()
        self.counters = AppCounters(self.db)
        self.queue = MessageQueue(self.db)
        self.ingest_schedules = ScheduleStore.for_ingest(self.db)
        self.themes_schedules = ScheduleStore.for_themes(self.db)
        self.service = self._service(self.queue)

    def _service(self, queue):
        return FollowService(self.db, self.counters, queue, self.ingest_schedules,
                             self.themes_schedules, ThemesScheduler(self.themes_schedules, queue))


class TestFollow(FollowCase):

    def test_follow_enqueues_and_pushes_schedule(self):
        result = self.service.follow_app("user-1", APP, app_name="Example", now=NOW)

        self.assertTrue(result["followed"])
        self.assertTrue(result["schedule_created"])
        self.assertTrue(result["enqueued"])
        self.assertEqual(result["schedule"]["next_run_at"], to_iso(NOW + timedelta(minutes=120)))
        self.assertEqual(result["schedule"]["last_enqueued_at"], to_iso(NOW))
        self.assertEqual(self.queue.peek(INGEST_QUEUE), [{
            "mode": "incremental", "appName": "Example", "platform": "android",
            "bundleId": "com.example.app", "backfillDays": 2,
        }])

    def test_second_follow_is_not_new(self):
        self.service.follow_app("user-1", APP, now=NOW)
        again = self.service.follow_app("user-1", APP, now=NOW + timedelta(minutes=1))
        self.assertFalse(again["followed"])
        self.assertFalse(again["schedule_created"])
        self.assertEqual([f["app_pk"] for f in self.service.followed_apps("user-1")], [APP.key])

    def test_failed_immediate_enqueue_leaves_schedule_due(self):
        service = self._service(BrokenQueue(self.db))
        with self.assertLogs("review_tracker.follows", level="WARNING"):
            result = service.follow_app("user-1", APP, now=NOW)

        self.assertTrue(result["followed"])
        self.assertFalse(result["enqueued"])
        self.assertEqual(result["schedule"]["next_run_at"], to_iso(NOW))
        self.assertEqual([s.key for s in self.ingest_schedules.due(NOW, 10)], [APP.key])

    def test_unfollow_keeps_schedule(self):
        self.service.follow_app("user-1", APP, now=NOW)
        self.assertTrue(self.service.unfollow_app("user-1", APP))
        self.assertFalse(self.service.unfollow_app("user-1", APP))
        self.assertEqual(self.service.followed_apps("user-1"), [])
        self.assertIsNotNone(self.ingest_schedules.get(APP.key))


class TestBadges(FollowCase):

    def test_badge_lifecycle(self):
        self.service.follow_app("user-1", APP, now=NOW)
        worker = IngestionWorker(ReviewStore(self.db), self.counters,
                                 {"android": FakeScraper("android", [make_reviews(50)])})
        worker.ingest(APP, now=NOW)

        [badge] = self.service.badges("user-1")
        self.assertEqual((badge["badge_count"], badge["total_reviews"], badge["last_seen_total"]), (50, 50, 0))

        marked = self.service.mark_read("user-1", APP, now=NOW)
        self.assertEqual(marked["last_seen_total"], 50)
        self.assertEqual(self.service.badges("user-1")[0]["badge_count"], 0)

        self.counters.increment(APP, 5, now=NOW)
        self.assertEqual(self.service.badges("user-1")[0]["badge_count"], 5)

    def test_badges_are_per_user(self):
        self.service.follow_app("user-1", APP, now=NOW)
        self.service.follow_app("user-2", APP, now=NOW)
        self.counters.increment(APP, 7, now=NOW)
        self.service.mark_read("user-1", APP, now=NOW)

        self.assertEqual(self.service.badges("user-1")[0]["badge_count"], 0)
        self.assertEqual(self.service.badges("user-2")[0]["badge_count"], 7)

    def test_mark_read_requires_follow(self):
        with self.assertRaises(LookupError):
            self.service.mark_read("user-1", APP, now=NOW)


class TestMerge(FollowCase):

    def test_merge_links_and_runs_themes(self):
        result = self.service.merge_apps("user-1", [IOS_APP.key, APP.key], now=NOW)
        group = f"{APP.key},{IOS_APP.key}"

        self.assertEqual(result["group_key"], group)
        self.assertEqual(result["linked"], {IOS_APP.key: [APP.key], APP.key: [IOS_APP.key]})

        expected_job = make_job_id(group, {}, "2026-03-01")
        self.assertEqual(result["run_now"], {"job_id": expected_job, "day": "2026-03-01"})
        [message] = self.queue.peek(THEMES_QUEUE)
        self.assertEqual(message["job_id"], expected_job)

        schedule = self.themes_schedules.get(group)
        self.assertTrue(schedule.enabled)
        self.assertEqual(schedule.interval_minutes, 1440)

    def test_merge_is_idempotent(self):
        self.service.merge_apps("user-1", [APP.key, IOS_APP.key], now=NOW)
        self.service.merge_apps("user-1", [IOS_APP.key, APP.key], now=NOW)
        self.assertEqual(self.service.links("user-1"), {APP.key: [IOS_APP.key], IOS_APP.key: [APP.key]})

    def test_merge_survives_failed_run_now(self):
        service = self._service(BrokenQueue(self.db))
        with self.assertLogs("review_tracker.follows", level="WARNING"):
            result = service.merge_apps("user-1", [APP.key, IOS_APP.key], now=NOW)
        self.assertEqual(result["run_now"], {"job_id": None, "day": None})
        self.assertEqual(result["linked"][APP.key], [IOS_APP.key])

    def test_merge_validation(self):
        for app_pks in ([APP.key], [APP.key, APP.key], [APP.key, ""], [APP.key, "web#x"], APP.key):
            with self.subTest(app_pks=app_pks):
                with self.assertRaises(ValueError):
                    self.service.merge_apps("user-1", app_pks, now=NOW)

    def test_unmerge(self):
        self.service.merge_apps("user-1", [APP.key, IOS_APP.key], now=NOW)
        result = self.service.unmerge_apps("user-1", [IOS_APP.key, APP.key])
        self.assertEqual(result["linked"], {IOS_APP.key: [], APP.key: []})
        self.assertEqual(self.service.links("user-1"), {})

    def test_followed_apps_show_links(self):
        self.service.follow_app("user-1", APP, now=NOW)
        self.service.merge_apps("user-1", [APP.key, IOS_APP.key], now=NOW)
        [followed] = self.service.followed_apps("user-1")
        self.assertEqual(followed["linked_app_pks"], [IOS_APP.key])


if __name__ == "__main__":
    unittest.main(verbosity=2)
