"""
Shared fixtures for the test suite. Everything is offline: a fresh SQLite
file per test and in-memory fake scrapers.
"""

import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from review_tracker.database import Database
from review_tracker.models import RawReview, ScrapeError, ScrapePage
from review_tracker.scraper import StoreScraper

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class TempDatabaseCase(unittest.TestCase):
    """Gives each test its own initialized database at self.db."""

    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self._tmpdir.name, "test.db")
        self.db = Database(self.db_path)
        self.db.initialize()

    def tearDown(self):
        self._tmpdir.cleanup()


def make_reviews(n: int, newest: datetime = NOW - timedelta(hours=1),
                 spacing: timedelta = timedelta(minutes=30), prefix: str = "review") -> list[RawReview]:
    """n distinct reviews, newest first, `spacing` apart."""
    return [
        RawReview(
            date=newest - spacing * i,
            rating=(i % 5) + 1,
            text=f"{prefix} number {i}",
            author=f"user_{i}",
            version="1.0.0",
            native_id=f"{prefix}-{i}",
        )
        for i in range(n)
    ]


class FakeScraper(StoreScraper):
    """
    Serves pre-built pages newest first. Page tokens are page indexes.
    `fail_pages` holds 1-based page numbers that raise ScrapeError.
    """

    def __init__(self, platform: str, pages: list[list[RawReview]], fail_pages=()):
        self.platform = platform
        self.pages = pages
        self.fail_pages = set(fail_pages)
        self.fetch_calls = []
        self.resolve_calls = []

    def resolve_store_id(self, bundle_id: str) -> str:
        self.resolve_calls.append(bundle_id)
        return f"store-{bundle_id}"

    def fetch_page(self, store_id, page_token=None) -> ScrapePage:
        index = page_token or 0
        self.fetch_calls.append(index)
        if index + 1 in self.fail_pages:
            raise ScrapeError(f"page {index + 1} unavailable")
        if index >= len(self.pages):
            return ScrapePage(items=[], next_page_token=None)
        has_next = index + 1 < len(self.pages)
        return ScrapePage(items=list(self.pages[index]), next_page_token=index + 1 if has_next else None)


def paginate(reviews: list[RawReview], size: int) -> list[list[RawReview]]:
    return [reviews[i:i + size] for i in range(0, len(reviews), size)]
