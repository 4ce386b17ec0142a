"""
Themes analyzer — turns a pile of reviews into positive/negative "axes".

An axis is one concrete topic users talk about ("login problems",
"fast transfers"). The LLM does the reading; everything around it is plain
code so the output shape is predictable:

    1. build_prompt()      one line per review: date | rating★ | text
    2. call_llm()          single JSON-mode call
    3. post_process()      coerce types, add axis_id slugs, clean examples
    4. enforce_disjoint()  an axis can't be both a top positive and a top negative
"""

import json
import re
import unicodedata
from typing import Callable, Optional

from review_tracker.llm_client import call_llm
from review_tracker.models import AnalyzerError

MAX_REVIEW_CHARS = 600
MAX_EXAMPLE_CHARS = 240
MAX_EXAMPLES = 3

# The "job description" for the model.
THEMES_SYSTEM_PROMPT = """You are a multilingual voice-of-customer analyst for mobile apps.

Goal: extract clear, actionable AXES (themes) from the reviews, plus the top {top_n} negative and top {top_n} positive axes.

RULES — follow these exactly:
1. Polarity: rating <= {neg_cutoff} is negative, rating >= {pos_cutoff} is positive; otherwise infer from the text.
2. Axis labels are short and concrete (e.g., "late transaction display", "login and authentication problems", "intrusive notifications").
3. Merge synonyms under ONE axis. The same concept always gets the same label.
4. An axis must NEVER appear in both the negative and the positive top lists.
5. Examples: at most 3 per axis, distinct, quoted from the reviews, concise.
6. Do NOT invent themes. Only report what users actually say.

Respond STRICTLY in JSON matching the schema given by the user."""

RESPONSE_SCHEMA = {
    "top_negative_axes": [
        {"axis_label": "string", "count": 0, "avg_rating": 0,
         "examples": [{"date": "YYYY-MM-DD", "rating": 1, "text": "..."}]}
    ],
    "top_positive_axes": [
        {"axis_label": "string", "count": 0, "avg_rating": 0,
         "examples": [{"date": "YYYY-MM-DD", "rating": 5, "text": "..."}]}
    ],
    "axes": [
        {"axis_label": "string", "total_reviews": 0,
         "positive": {"count": 0, "avg_rating": 0, "examples": []},
         "negative": {"count": 0, "avg_rating": 0, "examples": []}}
    ],
}


def empty_result() -> dict:
    return {"top_negative_axes": [], "top_positive_axes": [], "axes": []}


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _squash(text) -> str:
    return " ".join(str(text or "").split())


def _to_number(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return int(number) if number.is_integer() else number


def axis_id(label: str) -> str:
    """Slug used to compare axes, e.g. "Connexion & Login" -> "connexion_login"."""
    text = unicodedata.normalize("NFD", str(label or "").lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[^a-z0-9/_\s-]", "", text)
    return re.sub(r"\s+", "_", text.strip())


def dedupe_examples(examples) -> list[dict]:
    seen = set()
    cleaned = []
    for example in examples if isinstance(examples, list) else []:
        if not isinstance(example, dict) or not example.get("text"):
            continue
        marker = (example.get("date") or "", example.get("rating"), example.get("text"))
        if marker in seen:
            continue
        seen.add(marker)
        cleaned.append({
            "date": str(example.get("date") or "")[:10],
            "rating": _to_number(example.get("rating")),
            "text": _truncate(_squash(example["text"]), MAX_EXAMPLE_CHARS),
        })
        if len(cleaned) >= MAX_EXAMPLES:
            break
    return cleaned


def build_prompt(context: dict, reviews: list[dict]) -> str:
    """User prompt: window, apps, the reviews, and the schema we expect back."""
    lines = []
    for review in reviews:
        day = str(review.get("review_date") or review.get("date") or "")[:10]
        rating = review.get("rating")
        text = _truncate(_squash(review.get("text")), MAX_REVIEW_CHARS)
        lines.append(f"{day} | {'' if rating is None else rating}★ | {text}")

    return "\n".join([
        f"Language: {context.get('lang') or 'en'}",
        f"Window: {context.get('from') or '?'} -> {context.get('to') or '?'}",
        f"Apps: {', '.join(context.get('app_pks') or []) or 'n/a'}",
        "",
        "Reviews (one per line: date | rating★ | text):",
        *lines,
        "",
        "Expected JSON:",
        json.dumps(RESPONSE_SCHEMA, indent=2),
        "",
        f"Constraints: top_negative_axes={context.get('top_n', 3)}, "
        f"top_positive_axes={context.get('top_n', 3)}, axes=full breakdown.",
    ])


def post_process(raw: dict) -> dict:
    def fix_top(items):
        fixed = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            label = str(item.get("axis_label") or "").strip()
            fixed.append({
                **item,
                "axis_label": label,
                "axis_id": axis_id(label),
                "count": _to_number(item.get("count")) or 0,
                "avg_rating": _to_number(item.get("avg_rating")),
                "examples": dedupe_examples(item.get("examples")),
            })
        return fixed

    def fix_side(side):
        side = side if isinstance(side, dict) else {}
        return {
            "count": _to_number(side.get("count")) or 0,
            "avg_rating": _to_number(side.get("avg_rating")),
            "examples": dedupe_examples(side.get("examples")),
        }

    axes = []
    for axis in raw.get("axes") if isinstance(raw.get("axes"), list) else []:
        if not isinstance(axis, dict):
            continue
        label = str(axis.get("axis_label") or "").strip()
        axes.append({
            "axis_label": label,
            "axis_id": axis_id(label),
            "total_reviews": _to_number(axis.get("total_reviews")) or 0,
            "positive": fix_side(axis.get("positive")),
            "negative": fix_side(axis.get("negative")),
        })

    return {
        "top_negative_axes": fix_top(raw.get("top_negative_axes")),
        "top_positive_axes": fix_top(raw.get("top_positive_axes")),
        "axes": axes,
    }


def enforce_disjoint(result: dict) -> dict:
    """Negative wins: drop any positive axis whose id is also a negative axis."""
    negative_ids = {item["axis_id"] for item in result.get("top_negative_axes", [])}
    return {
        **result,
        "top_positive_axes": [
            item for item in result.get("top_positive_axes", [])
            if item["axis_id"] not in negative_ids
        ],
    }


def analyze_themes(context: dict, reviews: list[dict],
                   llm: Callable[..., dict] = call_llm) -> dict:
    """
    Args:
        context: {"app_pks", "from", "to", "lang", "pos_cutoff", "neg_cutoff", "top_n"}
        reviews: dicts with review_date/date, rating, text.
        llm:     injected for tests; same signature as call_llm.

    Raises:
        AnalyzerError: the LLM call failed or returned garbage.
    """
    if not reviews:
        return empty_result()

    system_prompt = THEMES_SYSTEM_PROMPT.format(
        top_n=context.get("top_n", 3),
        pos_cutoff=context.get("pos_cutoff", 4),
        neg_cutoff=context.get("neg_cutoff", 3),
    )
    raw = llm(system_prompt=system_prompt, user_prompt=build_prompt(context, reviews),
              temperature=0.2, expect_json=True)
    if not isinstance(raw, dict):
        raise AnalyzerError("Analyzer returned a non-object response")
    return enforce_disjoint(post_process(raw))
