"""
How apps, app groups, reviews and theme jobs are named.

    app key     "android#com.spotify.music"
    group key   "android#com.foo,ios#com.foo"   (deduped, sorted, comma-joined)
    sort key    "<review date ISO>#<content hash>"
    job id      "job_<16 hex chars>"

All of these are deterministic: the same inputs always give the same string.
That is what makes duplicate queue deliveries and duplicate triggers harmless.
"""

import hashlib
import json
from typing import Iterable, Optional

from review_tracker.dates import to_iso
from review_tracker.models import AppIdentity, PLATFORMS

GROUP_SEPARATOR = ","
KEY_SEPARATOR = "#"


def app_key(platform: str, bundle_id: str) -> str:
    return f"{str(platform).strip().lower()}{KEY_SEPARATOR}{str(bundle_id).strip()}"


def parse_app_key(key: str) -> AppIdentity:
    """
    Split "platform#bundleId" back into an AppIdentity.

    Raises:
        ValueError: if the key is not of that shape or the platform is unknown.
    """
    platform, sep, bundle_id = str(key or "").strip().partition(KEY_SEPARATOR)
    platform = platform.lower()
    if not sep or not bundle_id or platform not in PLATFORMS:
        raise ValueError(f"Invalid app key: {key!r}")
    return AppIdentity(platform=platform, bundle_id=bundle_id)


def group_key(members: Iterable[str]) -> str:
    """
    Collapse a set of app keys into one stable string.

    Accepts either an iterable of keys or a single comma-joined string, so
    "b,a", ["a", "b"] and ["a", "a", "b"] all give "a,b".
    """
    if isinstance(members, str):
        members = members.split(GROUP_SEPARATOR)
    clean = {str(m).strip() for m in members if m is not None and str(m).strip()}
    return GROUP_SEPARATOR.join(sorted(clean))


def split_group_key(key: str) -> list[str]:
    return [part for part in group_key(key).split(GROUP_SEPARATOR) if part]


def content_hash(text: Optional[str], author: Optional[str]) -> str:
    """Short, stable hash of what a reviewer wrote. Whitespace is normalised."""
    norm_text = " ".join(str(text or "").split())
    norm_author = " ".join(str(author or "").split())
    digest = hashlib.sha256(f"{norm_text}\n{norm_author}".encode("utf-8")).hexdigest()
    return digest[:16]


def review_sort_key(review_date_iso: str, text: Optional[str], author: Optional[str]) -> str:
    """
    Per-review key inside an app's partition.

    Store-native review IDs are not used: some sources omit them and others
    re-issue them, which produced duplicate rows. Date + content is stable.
    """
    return f"{review_date_iso}{KEY_SEPARATOR}{content_hash(text, author)}"


def canonical_selection(selection: Optional[dict]) -> str:
    """Selection params as a canonical string (None values dropped, keys sorted)."""
    cleaned = {k: v for k, v in (selection or {}).items() if v is not None}
    return json.dumps(cleaned, sort_keys=True, separators=(",", ":"))


def make_job_id(group: str, selection: Optional[dict], day: str) -> str:
    """Same group + selection + day always gives the same job id."""
    material = f"{group_key(group)}|{canonical_selection(selection)}|{day}"
    return "job_" + hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]


def build_selection(date_from: Optional[str] = None, date_to: Optional[str] = None,
                    limit: Optional[int] = None, max_limit: int = 2000) -> dict:
    """
    Normalise themes selection params into the dict that goes into job ids
    and queue messages. Dates become canonical ISO strings and limit is
    clamped to [1, max_limit]; absent params are left out entirely.

    Raises:
        ValueError: unparseable dates, a non-numeric limit, or from > to.
    """
    selection = {}
    if date_from:
        selection["from"] = to_iso(date_from)
    if date_to:
        selection["to"] = to_iso(date_to)
    if "from" in selection and "to" in selection and selection["from"] > selection["to"]:
        raise ValueError("from must not be after to")
    if limit is not None and limit != "":
        try:
            selection["limit"] = max(1, min(max_limit, int(limit)))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"limit must be an integer, got {limit!r}") from exc
    return selection
