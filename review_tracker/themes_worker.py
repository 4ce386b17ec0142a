"""
Themes worker — runs one theme-analysis job per queue message.

Per job (group, job_id, day):
    pending marker -> fetch reviews -> analyzer ok     -> final record -> drop pending
    pending marker -> fetch reviews -> analyzer failed -> pending marked "failed"

Duplicate deliveries are expected. A second pending insert is ignored, and a
second final insert is a no-op that counts as success.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from review_tracker.analyzer import analyze_themes
from review_tracker.config import THEMES_DEFAULT_DAYS, THEMES_MAX_LIMIT, THEMES_PER_APP_LIMIT
from review_tracker.dates import day_of, parse_iso, to_iso, utc_now
from review_tracker.keys import build_selection, group_key, make_job_id, parse_app_key, split_group_key
from review_tracker.models import AnalyzerError, MalformedMessage, ReviewRecord
from review_tracker.reviews import ReviewStore
from review_tracker.themes_store import ThemesStore

logger = logging.getLogger(__name__)


@dataclass
class ThemesJob:
    group: str
    job_id: str
    day: str
    selection: dict = field(default_factory=dict)   # as requested: from/to/limit


def parse_themes_message(payload: Any, now: Optional[datetime] = None) -> ThemesJob:
    """
    Raises:
        MalformedMessage: missing app_pk, bad app keys, or bad selection params.
    """
    if not isinstance(payload, dict):
        raise MalformedMessage("Themes message must be an object")
    group = group_key(payload.get("app_pk") or "")
    if not group:
        raise MalformedMessage("Themes message is missing app_pk")
    try:
        for member in split_group_key(group):
            parse_app_key(member)
        selection = build_selection(payload.get("from"), payload.get("to"), payload.get("limit"),
                                    max_limit=THEMES_MAX_LIMIT)
    except ValueError as exc:
        raise MalformedMessage(str(exc)) from exc

    day = payload.get("day") or day_of(now or utc_now())
    job_id = payload.get("job_id") or make_job_id(group, selection, day)
    return ThemesJob(group=group, job_id=job_id, day=day, selection=selection)


def _as_analyzer_input(record: ReviewRecord) -> dict:
    return {
        "app_pk": record.app_pk,
        "review_date": record.review_date,
        "rating": record.rating,
        "text": record.text,
    }


class ThemesWorker:

    def __init__(self, reviews: ReviewStore, store: ThemesStore,
                 analyzer: Callable[[dict, list[dict]], dict] = analyze_themes,
                 default_days: int = THEMES_DEFAULT_DAYS,
                 per_app_limit: int = THEMES_PER_APP_LIMIT,
                 max_limit: int = THEMES_MAX_LIMIT,
                 max_parallel_queries: int = 8):
        self.reviews = reviews
        self.store = store
        self.analyzer = analyzer
        self.default_days = default_days
        self.per_app_limit = per_app_limit
        self.max_limit = max_limit
        self.max_parallel_queries = max_parallel_queries

    # ---- Review selection ----

    def select_reviews(self, app_pks: list[str], selection: dict,
                       now: Optional[datetime] = None) -> tuple[list[ReviewRecord], dict]:
        """
        Three modes:
            from/to   date range, each app capped at per_app_limit
            limit     newest N overall: ceil(N / apps) per app, merged, cut to N
            neither   the last default_days days, as a date range

        Returns (reviews newest-first, resolved selection). The resolved
        selection has concrete dates and is what gets stored with the result.
        """
        now = now or utc_now()
        workers = max(1, min(self.max_parallel_queries, len(app_pks)))

        if "limit" in selection and "from" not in selection and "to" not in selection:
            n = max(1, min(self.max_limit, int(selection["limit"])))
            per_app = -(-n // len(app_pks))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                batches = list(executor.map(lambda pk: self.reviews.query_latest_n(pk, per_app), app_pks))
            merged = sorted((r for batch in batches for r in batch), key=lambda r: r.sort_key, reverse=True)
            return merged[:n], {"limit": n}

        end = selection.get("to") or to_iso(now)
        start = selection.get("from") or to_iso(
            parse_iso(end) - timedelta(days=self.default_days)
        )
        with ThreadPoolExecutor(max_workers=workers) as executor:
            batches = list(executor.map(
                lambda pk: self.reviews.query_range(pk, start, end, limit=self.per_app_limit).items,
                app_pks,
            ))
        merged = sorted((r for batch in batches for r in batch), key=lambda r: r.sort_key, reverse=True)
        return merged, {"from": start, "to": end}

    # ---- Job ----

    def process_job(self, job: ThemesJob, now: Optional[datetime] = None) -> str:
        """
        Run one job. Returns "done", "duplicate" or "failed".

        Analyzer failures are recorded on the pending marker and not raised;
        a same-day re-trigger (same job id) resets the marker and runs again.
        Database errors do raise, and the message is redelivered.
        """
        now = now or utc_now()
        app_pks = split_group_key(job.group)

        if not self.store.create_pending(job.group, job.job_id, job.day, job.selection, now=now):
            if self.store.reset_pending(job.group, job.job_id, job.day):
                logger.info("[themes] re-running failed %s job=%s", job.group, job.job_id)
            else:
                logger.info("[themes] pending exists for %s job=%s, continuing", job.group, job.job_id)
        if self.store.get_final(job.group, job.job_id, job.day):
            logger.info("[themes] skip %s job=%s, already done", job.group, job.job_id)
            self._drop_pending(job)
            return "duplicate"

        records, resolved = self.select_reviews(app_pks, job.selection, now=now)
        reviews = [_as_analyzer_input(r) for r in records if (r.text or "").strip()]

        context = {
            "app_pks": app_pks,
            "from": resolved.get("from"),
            "to": resolved.get("to"),
            "lang": "en",
            "pos_cutoff": 4,
            "neg_cutoff": 3,
            "top_n": 3,
        }
        try:
            result = self.analyzer(context, reviews)
        except Exception as exc:
            logger.error("[themes] analyzer failed for %s job=%s: %s", job.group, job.job_id, exc,
                         exc_info=not isinstance(exc, AnalyzerError))
            self.store.mark_failed(job.group, job.job_id, job.day, str(exc), now=now)
            return "failed"

        created = self.store.create_final(job.group, job.job_id, job.day, resolved,
                                          len(reviews), result, now=now)
        self._drop_pending(job)
        if not created:
            logger.info("[themes] final already written for %s job=%s", job.group, job.job_id)
            return "duplicate"
        logger.info("[themes] done for %s day=%s job=%s apps=%d reviews=%d",
                    job.group, job.day, job.job_id, len(app_pks), len(reviews))
        return "done"

    def _drop_pending(self, job: ThemesJob) -> None:
        try:
            self.store.delete_pending(job.group, job.job_id, job.day)
        except Exception:
            logger.warning("[themes] could not delete pending marker for %s job=%s",
                           job.group, job.job_id, exc_info=True)

    def handle_message(self, payload: dict) -> str:
        return self.process_job(parse_themes_message(payload))
