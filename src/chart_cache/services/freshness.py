from datetime import datetime, timedelta, timezone
from typing import Optional

from chart_cache.config import CHART_TTL_HOURS

DEFAULT_TTL = timedelta(hours=CHART_TTL_HOURS)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(ts: datetime) -> datetime:
    # sqlite hands back naive datetimes; every stored timestamp is UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def is_fresh(
    updated_at: Optional[datetime],
    now: Optional[datetime] = None,
    ttl: timedelta = DEFAULT_TTL,
) -> bool:
    """True while ``now - updated_at < ttl``; a missing timestamp is never fresh."""
    if updated_at is None:
        return False
    now = as_utc(now or now_utc())
    return now - as_utc(updated_at) < ttl
