import os


def _int_setting(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./fintrack.db")
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Attempts for a transaction update whose row changed underneath it.
MAX_RETRIES = max(1, _int_setting("FINTRACK_MAX_RETRIES", 3))

DEFAULT_PAGE_LIMIT = 100
PAGE_LIMIT_MAX = max(1, _int_setting("FINTRACK_PAGE_LIMIT_MAX", 500))
