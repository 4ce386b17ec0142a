"""
Review scrapers — fetch raw reviews from Google Play and the Apple App Store.

Both stores are wrapped behind the same two-method interface:

    resolve_store_id(bundle_id) -> the id the store's review feed wants
    fetch_page(store_id, page_token) -> ScrapePage(items, next_page_token)

Pages come back newest-first. Scrapers are stateless and do no dedup or
window filtering; scrape_window() walks pages and stops once it has gone
past the start of the window, and the ingestion worker filters precisely.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import requests
from google_play_scraper import Sort, reviews as gplay_reviews

from review_tracker.config import ANDROID_PAGE_SIZE, SCRAPE_MAX_PAGES, STORE_COUNTRY, STORE_LANG
from review_tracker.dates import ensure_utc, parse_iso
from review_tracker.models import RawReview, ScrapeError, ScrapePage, Window

logger = logging.getLogger(__name__)


class StoreScraper:
    """Capability interface shared by the two store variants."""

    platform = ""

    def resolve_store_id(self, bundle_id: str) -> str:
        raise NotImplementedError

    def fetch_page(self, store_id: str, page_token: Any = None) -> ScrapePage:
        raise NotImplementedError


class AndroidScraper(StoreScraper):
    """
    Google Play, via the google-play-scraper package.
    The bundle id *is* the package name, so no lookup is needed.
    """

    platform = "android"

    def __init__(self, country: str = STORE_COUNTRY, lang: str = STORE_LANG,
                 page_size: int = ANDROID_PAGE_SIZE):
        self.country = country
        self.lang = lang
        self.page_size = page_size

    def resolve_store_id(self, bundle_id: str) -> str:
        return bundle_id

    def fetch_page(self, store_id: str, page_token: Any = None) -> ScrapePage:
        """
        One batch of reviews, newest first.

        page_token is the continuation token returned by the previous call
        (None for the first page).
        """
        try:
            result, continuation_token = gplay_reviews(
                store_id,
                lang=self.lang,
                country=self.country,
                sort=Sort.NEWEST,
                count=self.page_size,
                continuation_token=page_token,
            )
        except Exception as exc:
            raise ScrapeError(f"Google Play fetch failed for {store_id}: {exc}") from exc

        items = []
        for raw in result or []:
            review_date = raw.get("at")
            if isinstance(review_date, datetime):
                # The library builds "at" with datetime.fromtimestamp, so a naive value is host-local time
                review_date = review_date.astimezone(timezone.utc)
            else:
                review_date = parse_iso(review_date)
            if review_date is None:
                continue
            items.append(RawReview(
                date=ensure_utc(review_date),
                rating=raw.get("score"),
                text=raw.get("content"),
                author=raw.get("userName") or "",
                version=raw.get("appVersion") or raw.get("reviewCreatedVersion"),
                native_id=raw.get("reviewId"),
            ))

        # The library always returns a token object; an empty inner token means "no more pages"
        has_next = bool(result) and continuation_token is not None \
            and getattr(continuation_token, "token", None) is not None
        return ScrapePage(items=items, next_page_token=continuation_token if has_next else None)


class IosScraper(StoreScraper):
    """
    Apple App Store, using the public iTunes RSS JSON API.

    Note:
        Apple's RSS feed gives 50 reviews per page and stops at page 10, so
        at most ~500 of the most recent reviews are reachable this way.
    """

    platform = "ios"
    MAX_PAGES = 10
    RSS_URL = "https://itunes.apple.com/{country}/rss/customerreviews/page={page}/id={app_id}/sortby=mostrecent/json"
    LOOKUP_URL = "https://itunes.apple.com/lookup"

    def __init__(self, country: str = STORE_COUNTRY, session: Optional[requests.Session] = None,
                 timeout: float = 15):
        self.country = country
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "Mozilla/5.0"})

    def resolve_store_id(self, bundle_id: str) -> str:
        """
        The RSS feed wants the numeric track id, not the bundle id.
        A purely numeric value is assumed to already be a track id.
        """
        if str(bundle_id).isdigit():
            return str(bundle_id)
        try:
            response = self.session.get(
                self.LOOKUP_URL,
                params={"bundleId": bundle_id, "country": self.country},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ScrapeError(f"iTunes lookup failed for {bundle_id}: {exc}") from exc

        results = data.get("results") or []
        track_id = results[0].get("trackId") if results else None
        if not track_id:
            raise ScrapeError(f"No App Store listing found for bundle id {bundle_id}")
        return str(track_id)

    def fetch_page(self, store_id: str, page_token: Any = None) -> ScrapePage:
        """page_token is the 1-based page number (None means page 1)."""
        page = int(page_token or 1)
        url = self.RSS_URL.format(country=self.country, page=page, app_id=store_id)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise ScrapeError(f"App Store RSS page {page} failed for {store_id}: {exc}") from exc

        entries = data.get("feed", {}).get("entry", [])
        if isinstance(entries, dict):
            # A feed with a single entry is not wrapped in a list
            entries = [entries]

        items = []
        for entry in entries:
            # The first entry on page 1 is app metadata, not a review
            if "im:rating" not in entry:
                continue
            review_date = parse_iso(entry.get("updated", {}).get("label"))
            if review_date is None:
                continue
            rating_raw = entry.get("im:rating", {}).get("label")
            items.append(RawReview(
                date=review_date,
                rating=int(float(rating_raw)) if rating_raw else None,
                text=entry.get("content", {}).get("label"),
                author=entry.get("author", {}).get("name", {}).get("label") or "",
                version=entry.get("im:version", {}).get("label"),
                native_id=entry.get("id", {}).get("label"),
            ))

        has_next = bool(entries) and page < self.MAX_PAGES
        return ScrapePage(items=items, next_page_token=page + 1 if has_next else None)


def default_scrapers() -> dict[str, StoreScraper]:
    return {"android": AndroidScraper(), "ios": IosScraper()}


def scrape_window(scraper: StoreScraper, store_id: str, window: Window,
                  max_pages: int = SCRAPE_MAX_PAGES) -> list[RawReview]:
    """
    Walk newest-first pages until one reaches back past window.start.

    Returns everything seen, unfiltered; page boundaries don't line up with the
    window so the caller filters. A failure on the first page raises
    ScrapeError; a failure further in keeps what we already have.
    """
    collected: list[RawReview] = []
    token = None

    for page_number in range(1, max_pages + 1):
        try:
            page = scraper.fetch_page(store_id, token)
        except ScrapeError:
            if page_number == 1:
                raise
            logger.warning("[%s] page %d failed for %s, keeping %d reviews already fetched",
                           scraper.platform, page_number, store_id, len(collected), exc_info=True)
            break

        collected.extend(page.items)
        oldest = min((item.date for item in page.items), default=None)
        logger.debug("[%s] page %d: %d reviews (oldest %s)",
                     scraper.platform, page_number, len(page.items), oldest)

        if not page.items:
            break
        if oldest is not None and oldest < window.start:
            break
        if page.next_page_token is None:
            break
        token = page.next_page_token
    else:
        logger.warning("[%s] hit page cap (%d) for %s before reaching %s",
                       scraper.platform, max_pages, store_id, window.start.isoformat())

    return collected
