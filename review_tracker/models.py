"""
Data models — the structure of our data.
Every review, no matter which store it comes from, gets converted into these shapes.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

PLATFORMS = ("ios", "android")


class MalformedMessage(ValueError):
    """A queue message that can never be processed. Dropped, not retried."""


class ScrapeError(RuntimeError):
    """A store scraper could not resolve the app or fetch reviews."""


class AnalyzerError(RuntimeError):
    """The theme analyzer failed or returned something unusable."""


@dataclass(frozen=True)
class AppIdentity:
    """One store listing. Immutable; its key partitions reviews, schedules and counters."""
    platform: str               # "ios" or "android"
    bundle_id: str              # e.g., "com.spotify.music"

    def __post_init__(self):
        platform = str(self.platform or "").strip().lower()
        if platform not in PLATFORMS:
            raise ValueError(f"Unknown platform: {self.platform!r}")
        if not str(self.bundle_id or "").strip():
            raise ValueError("bundle_id is required")
        object.__setattr__(self, "platform", platform)
        object.__setattr__(self, "bundle_id", str(self.bundle_id).strip())

    @property
    def key(self) -> str:
        return f"{self.platform}#{self.bundle_id}"

    def __str__(self) -> str:
        return self.key


@dataclass
class RawReview:
    """What a scraper hands back, before we give it an identity."""
    date: datetime
    rating: Optional[int]
    text: Optional[str]
    author: Optional[str]
    version: Optional[str] = None
    native_id: Optional[str] = None


@dataclass
class ScrapePage:
    items: list[RawReview]
    next_page_token: Any = None   # None means there is no further page


@dataclass
class ReviewRecord:
    """A stored review. Append-only: created once by ingestion, never updated."""
    app_pk: str
    sort_key: str
    review_date: str            # canonical ISO, see dates.to_iso
    rating: Optional[int]
    text: Optional[str]
    author: Optional[str]
    app_version: Optional[str]
    ingested_at: str
    app_name: Optional[str] = None
    native_id: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "ReviewRecord":
        return cls(
            app_pk=row["app_pk"],
            sort_key=row["sort_key"],
            review_date=row["review_date"],
            rating=row["rating"],
            text=row["text"],
            author=row["author"],
            app_version=row["app_version"],
            ingested_at=row["ingested_at"],
            app_name=row["app_name"],
            native_id=row["native_id"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ReviewPage:
    items: list[ReviewRecord]
    next_cursor: Optional[str] = None


@dataclass
class Window:
    """Inclusive scan window for one ingestion run."""
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass
class Schedule:
    """
    One row of an ingest or themes schedule.
    key is an app key for ingestion and a group key for themes.
    """
    key: str
    interval_minutes: int
    enabled: bool
    next_run_at: str
    last_enqueued_at: Optional[str] = None
    in_flight_until: Optional[str] = None
    app_name: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Schedule":
        return cls(
            key=row["key"],
            interval_minutes=row["interval_minutes"],
            enabled=bool(row["enabled"]),
            next_run_at=row["next_run_at"],
            last_enqueued_at=row["last_enqueued_at"],
            in_flight_until=row["in_flight_until"],
            app_name=row["app_name"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class IngestResult:
    """Summary returned by one ingestion run. Partial failures end up in errors."""
    app_pk: str
    fetched: int = 0            # items inside the window
    inserted: int = 0
    duplicates: int = 0
    errors: int = 0
    scanned: int = 0            # raw items returned by the scraper
    window_start: Optional[str] = None
    window_end: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SweepResult:
    processed: int = 0
    locked: int = 0
    lock_conflicts: int = 0
    enqueued: int = 0
    errors: int = 0
    enqueued_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)
