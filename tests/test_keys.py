"""
Unit tests for identity keys: app keys, group keys, sort keys and job ids.
"""

import unittest

from review_tracker.keys import (
    app_key,
    build_selection,
    canonical_selection,
    content_hash,
    group_key,
    make_job_id,
    parse_app_key,
    review_sort_key,
    split_group_key,
)
from review_tracker.models import AppIdentity


class TestAppKeys(unittest.TestCase):

    def test_app_key_format(self):
        self.assertEqual(app_key("Android", "com.example.app"), "android#com.example.app")
        self.assertEqual(AppIdentity("ios", "com.example.app").key, "ios#com.example.app")

    def test_identity_normalises_platform(self):
        identity = AppIdentity(" IOS ", " com.example.app ")
        self.assertEqual(identity.platform, "ios")
        self.assertEqual(identity.bundle_id, "com.example.app")

    def test_identity_rejects_unknown_platform(self):
        with self.assertRaises(ValueError):
            AppIdentity("windows", "com.example.app")
        with self.assertRaises(ValueError):
            AppIdentity("android", "")

    def test_parse_app_key_round_trip(self):
        identity = parse_app_key("android#com.example.app")
        self.assertEqual(identity, AppIdentity("android", "com.example.app"))

    def test_parse_app_key_rejects_garbage(self):
        for bad in ("", "android", "android#", "web#com.example", None):
            with self.subTest(bad=bad):
                with self.assertRaises(ValueError):
                    parse_app_key(bad)


class TestGroupKey(unittest.TestCase):

    def test_order_and_duplicates_do_not_matter(self):
        self.assertEqual(group_key(["b", "a"]), "a,b")
        self.assertEqual(group_key(["a", "b"]), "a,b")
        self.assertEqual(group_key(["a", "a", "b"]), "a,b")

    def test_accepts_joined_string(self):
        self.assertEqual(group_key("ios#x, android#x"), "android#x,ios#x")
        self.assertEqual(split_group_key("ios#x,android#x,ios#x"), ["android#x", "ios#x"])

    def test_blank_members_dropped(self):
        self.assertEqual(group_key(["", "a", None, "  "]), "a")
        self.assertEqual(group_key([]), "")


class TestReviewSortKey(unittest.TestCase):

    def test_same_content_same_key(self):
        first = review_sort_key("2026-01-01T00:00:00.000Z", "Great app", "alice")
        second = review_sort_key("2026-01-01T00:00:00.000Z", "Great   app ", "alice")
        self.assertEqual(first, second)

    def test_different_author_different_key(self):
        self.assertNotEqual(content_hash("Great app", "alice"), content_hash("Great app", "bob"))

    def test_date_prefix_orders_keys(self):
        older = review_sort_key("2026-01-01T00:00:00.000Z", "zzz", "a")
        newer = review_sort_key("2026-01-02T00:00:00.000Z", "aaa", "a")
        self.assertLess(older, newer)

    def test_missing_text_and_author(self):
        key = review_sort_key("2026-01-01T00:00:00.000Z", None, None)
        self.assertTrue(key.startswith("2026-01-01T00:00:00.000Z#"))
        self.assertEqual(len(key.split("#")[1]), 16)


class TestJobId(unittest.TestCase):

    def test_deterministic(self):
        a = make_job_id("ios#x,android#x", {"limit": 100}, "2026-03-01")
        b = make_job_id("android#x,ios#x", {"limit": 100}, "2026-03-01")
        self.assertEqual(a, b)
        self.assertTrue(a.startswith("job_"))
        self.assertEqual(len(a), len("job_") + 16)

    def test_changes_with_day_and_selection(self):
        base = make_job_id("android#x", {}, "2026-03-01")
        self.assertNotEqual(base, make_job_id("android#x", {}, "2026-03-02"))
        self.assertNotEqual(base, make_job_id("android#x", {"limit": 5}, "2026-03-01"))

    def test_none_values_ignored(self):
        self.assertEqual(canonical_selection({"limit": None, "from": None}), "{}")
        self.assertEqual(make_job_id("android#x", {"limit": None}, "2026-03-01"),
                         make_job_id("android#x", None, "2026-03-01"))


class TestBuildSelection(unittest.TestCase):

    def test_empty(self):
        self.assertEqual(build_selection(), {})

    def test_dates_are_canonicalised(self):
        selection = build_selection("2026-01-01", "2026-02-01T10:00:00+00:00")
        self.assertEqual(selection, {"from": "2026-01-01T00:00:00.000Z", "to": "2026-02-01T10:00:00.000Z"})

    def test_limit_clamped(self):
        self.assertEqual(build_selection(limit=5000)["limit"], 2000)
        self.assertEqual(build_selection(limit=0)["limit"], 1)
        self.assertEqual(build_selection(limit="30")["limit"], 30)

    def test_invalid_inputs(self):
        with self.assertRaises(ValueError):
            build_selection(limit="lots")
        with self.assertRaises(ValueError):
            build_selection("not a date")
        with self.assertRaises(ValueError):
            build_selection("2026-02-01", "2026-01-01")


if __name__ == "__main__":
    unittest.main(verbosity=2)
