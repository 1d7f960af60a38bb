import os
from pathlib import Path


def _int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def _database_url(raw: str | None) -> str | None:
    """Normalize a connection string to an async SQLAlchemy URL."""
    if not raw:
        return None
    for prefix in ("postgres://", "postgresql://"):
        if raw.startswith(prefix):
            return "postgresql+asyncpg://" + raw[len(prefix) :]
    return raw


DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
CHART_DIR = Path(os.getenv("CHART_DIR", str(DATA_DIR / "charts")))
STAGING_DIR = Path(os.getenv("STAGING_DIR", str(DATA_DIR / "staging")))

DATABASE_URL = _database_url(os.getenv("DATABASE_URL"))
DB_CONNECT_ATTEMPTS = _int("DB_CONNECT_ATTEMPTS", 3)
DB_POOL_SIZE = _int("DB_POOL_SIZE", 5)

FETCH_TIMEOUT_MS = _int("FETCH_TIMEOUT_MS", 30_000)
CHART_TTL_HOURS = _float("CHART_TTL_HOURS", 24)

CHART_URL_TEMPLATE = os.getenv(
    "CHART_URL_TEMPLATE",
    "https://finviz.com/chart.ashx?t={ticker}&ty=c&ta=1&p=d&s=l",
)
USER_AGENT = os.getenv("USER_AGENT", "Mozilla/5.0 (compatible; chart-cache/0.1)")

MAX_CHART_BYTES = _int("MAX_CHART_BYTES", 10 * 1024 * 1024)  # 10 MB

UPLOAD_ALLOWED_TYPES = tuple(
    ct.strip().lower()
    for ct in os.getenv("UPLOAD_ALLOWED_TYPES", "image/png").split(",")
    if ct.strip()
)

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").rstrip("/")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
