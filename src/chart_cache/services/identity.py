import re
from typing import Pattern

from chart_cache.errors import InvalidSymbolFormat
from chart_cache.schemas.chart import TICKER_MAX_LENGTH

KEY_SUFFIX = "_chart.png"

_RAW_RE: Pattern[str] = re.compile(r"[A-Za-z0-9]{1,%d}" % TICKER_MAX_LENGTH)
_KEY_RE: Pattern[str] = re.compile(
    r"([A-Z0-9]{1,%d})%s" % (TICKER_MAX_LENGTH, re.escape(KEY_SUFFIX))
)


def resolve(raw: object) -> str:
    """Normalize a raw symbol into a ticker.

    The raw value must already be 1-10 ASCII letters or digits; it is only
    uppercased, never trimmed or otherwise rewritten.

    Raises:
        InvalidSymbolFormat: for anything else, including surrounding
            whitespace and non-ASCII letters that uppercase into ASCII.
    """
    if not isinstance(raw, str) or not raw.isascii() or not _RAW_RE.fullmatch(raw):
        raise InvalidSymbolFormat(f"Invalid symbol: {raw!r}")
    return raw.upper()


def derive_key(ticker: str) -> str:
    return f"{ticker}{KEY_SUFFIX}"


def key_to_ticker(key: str) -> str:
    m = _KEY_RE.fullmatch(key or "")
    if not m:
        raise InvalidSymbolFormat(f"Invalid chart filename: {key!r}")
    return m.group(1)


def is_storage_key(name: str) -> bool:
    return bool(_KEY_RE.fullmatch(name))
