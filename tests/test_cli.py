"""
End-to-end checks of the command-line entry point against a temp database.
Commands that would hit the stores get fake scrapers injected through
build_services().
"""

import io
import json
import os
import tempfile
import unittest
from datetime import timedelta
from unittest.mock import patch

from review_tracker.cli import build_services, main
from review_tracker.dates import utc_now

from support import FakeScraper, make_reviews

APP_KEY = "android#com.example.app"


class TestCli(unittest.TestCase):

    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmpdir.name, "cli.db")

    def tearDown(self):
        self._tmpdir.cleanup()

    def _run(self, *argv, services=None):
        with patch("sys.stdout", new_callable=io.StringIO) as out:
            code = main(["--db", self.db_path, "--log-level", "WARNING", *argv], services=services)
        output = out.getvalue()
        return code, json.loads(output) if output.strip() else None

    def test_init_db(self):
        code, payload = self._run("init-db")
        self.assertEqual(code, 0)
        self.assertTrue(payload["initialized"])
        self.assertTrue(os.path.exists(self.db_path))

    def test_follow_then_work_then_badges(self):
        code, followed = self._run("follow", "user-1", APP_KEY, "--app-name", "Example")
        self.assertEqual(code, 0)
        self.assertTrue(followed["enqueued"])

        scraper = FakeScraper("android", [make_reviews(6, newest=utc_now() - timedelta(hours=1))])
        services = build_services(self.db_path, scrapers={"android": scraper})
        code, consumed = self._run("work-ingest", services=services)
        self.assertEqual((code, consumed["handled"]), (0, 1))

        _, badges = self._run("badges", "user-1")
        self.assertEqual(badges[0]["badge_count"], 6)

        _, marked = self._run("badges", "user-1", "--mark-read", APP_KEY)
        self.assertEqual(marked["last_seen_total"], 6)

        _, reviews = self._run("reviews", APP_KEY, "--limit", "4")
        self.assertEqual(len(reviews["items"]), 4)
        self.assertIsNotNone(reviews["next_cursor"])

    def test_schedule_commands(self):
        self._run("follow", "user-1", APP_KEY)
        _, listing = self._run("schedule", "ingest")
        self.assertEqual([s["key"] for s in listing["items"]], [APP_KEY])

        _, updated = self._run("schedule", "ingest", APP_KEY, "--interval", "30", "--disable")
        self.assertEqual((updated["interval_minutes"], updated["enabled"], updated["created"]), (30, False, False))

        _, shown = self._run("schedule", "themes", "android#missing")
        self.assertIsNone(shown["schedule"])

    def test_bad_schedule_key_exits_2(self):
        with patch("sys.stderr", new_callable=io.StringIO) as err:
            code, _ = self._run("schedule", "ingest", "garbage", "--interval", "30")
        self.assertEqual(code, 2)
        self.assertIn("Invalid app key", err.getvalue())

    def test_ingest_now(self):
        code, payload = self._run("ingest-now", APP_KEY, "--backfill-days", "5")
        self.assertEqual(code, 0)
        self.assertEqual(payload["backfillDays"], 5)

    def test_themes_now_and_status(self):
        _, queued = self._run("themes-now", APP_KEY, "--limit", "10")
        self.assertTrue(queued["job_id"].startswith("job_"))

        _, status = self._run("themes-status", APP_KEY, "--job-id", queued["job_id"], "--day", queued["day"])
        self.assertEqual(status["status"], "none")

        _, latest = self._run("themes-status", APP_KEY)
        self.assertEqual(latest, {"status": "none"})

    def test_bad_app_key_is_a_usage_error(self):
        with patch("sys.stderr", new_callable=io.StringIO):
            with self.assertRaises(SystemExit) as ctx:
                main(["--db", self.db_path, "follow", "user-1", "web#com.example.app"])
        self.assertEqual(ctx.exception.code, 2)

    def test_invalid_request_exits_2(self):
        with patch("sys.stderr", new_callable=io.StringIO) as err:
            code, _ = self._run("merge", "user-1", APP_KEY, APP_KEY)
        self.assertEqual(code, 2)
        self.assertIn("must be different", err.getvalue())

    def test_mark_read_without_follow_exits_2(self):
        with patch("sys.stderr", new_callable=io.StringIO):
            code, _ = self._run("badges", "user-1", "--mark-read", APP_KEY)
        self.assertEqual(code, 2)


if __name__ == "__main__":
    unittest.main(verbosity=2)
