"""
Configuration loader.
Reads settings from .env file and makes them available to the rest of the app.

Values are read once at import time. Components never reach into this module
at call time: they take these constants as constructor defaults, so tests can
pass their own values instead.
"""

import logging
import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    """Read an integer env var, falling back to the default on junk values."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# Storage: one SQLite file shared by the schedulers, workers and queue
DATABASE_PATH = os.getenv(
    "DATABASE_PATH",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "data", "review_tracker.db"),
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Store locale used by both scrapers
STORE_COUNTRY = os.getenv("STORE_COUNTRY", "us")
STORE_LANG = os.getenv("STORE_LANG", "en")

# Ingestion window policy
FIRST_RUN_DAYS = _int_env("FIRST_RUN_DAYS", 150)
DEFAULT_BACKFILL_DAYS = _int_env("DEFAULT_BACKFILL_DAYS", 2)
MAX_BACKFILL_DAYS = _int_env("MAX_BACKFILL_DAYS", 30)

# Scraping and insert fan-out
SCRAPE_MAX_PAGES = _int_env("SCRAPE_MAX_PAGES", 50)
ANDROID_PAGE_SIZE = _int_env("ANDROID_PAGE_SIZE", 100)
INSERT_CONCURRENCY = _int_env("INSERT_CONCURRENCY", 15)

# Due sweeps
SCHED_BATCH_SIZE = _int_env("SCHED_BATCH_SIZE", 25)
SCHED_LOCK_SECONDS = _int_env("SCHED_LOCK_SECONDS", 60)
DEFAULT_INGEST_INTERVAL_MINUTES = _int_env("DEFAULT_INGEST_INTERVAL_MINUTES", 120)
THEMES_DEFAULT_INTERVAL_MINUTES = _int_env("THEMES_DEFAULT_INTERVAL_MINUTES", 1440)

# Themes selection
THEMES_DEFAULT_DAYS = _int_env("THEMES_DEFAULT_DAYS", 90)
THEMES_PER_APP_LIMIT = _int_env("THEMES_PER_APP_LIMIT", 1200)
THEMES_MAX_LIMIT = _int_env("THEMES_MAX_LIMIT", 2000)

# Queue redelivery
QUEUE_VISIBILITY_SECONDS = _int_env("QUEUE_VISIBILITY_SECONDS", 300)
QUEUE_MAX_RECEIVES = _int_env("QUEUE_MAX_RECEIVES", 5)

# LLM API settings (any OpenAI-compatible endpoint)
LLM_API_KEY = os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "https://api.openai.com/v1")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configure the root logger once for CLI and worker processes."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
