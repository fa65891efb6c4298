"""Runtime configuration read from environment variables.

Values are read once at import time.  Every setting has a default so the
app starts with nothing configured: a local SQLite file, an in-process
cache and no Redis.
"""

from __future__ import annotations

import os


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
REDIS_URL = os.getenv("REDIS_URL")

# Day boundaries (stats "today", nightly reset) are computed in this zone.
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "Africa/Tunis")

STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", 5))

CACHE_SWEEP_SECONDS = float(os.getenv("CACHE_SWEEP_SECONDS", 60))
QUEUE_TTL = float(os.getenv("QUEUE_TTL", 5))
STATS_TTL = float(os.getenv("STATS_TTL", 10))
CLINIC_TTL = float(os.getenv("CLINIC_TTL", 60))

PHONE_COUNTRY_CODE = os.getenv("PHONE_COUNTRY_CODE", "216")
PHONE_LOCAL_DIGITS = int(os.getenv("PHONE_LOCAL_DIGITS", 8))

RESET_ENABLED = _flag("RESET_ENABLED")
RESET_HOUR = int(os.getenv("RESET_HOUR", 0))

SUBSCRIBER_BUFFER = int(os.getenv("SUBSCRIBER_BUFFER", 100))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
