from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

TICKER_PATTERN = r"^[A-Z0-9]+$"
TICKER_MAX_LENGTH = 10

Committed = Literal["inserted", "updated"]
Source = Literal["cached", "fetched", "stale"]


class ChartRequest(BaseModel):
    symbol: Any = None  # validated by the identity resolver, not by pydantic


class BatchChartRequest(BaseModel):
    symbols: Any = None


class ImageUploadRequest(BaseModel):
    imageBase64: str = Field(..., min_length=1)


class ChartResult(BaseModel):
    ticker: str = Field(min_length=1, max_length=TICKER_MAX_LENGTH, pattern=TICKER_PATTERN)
    source: Source
    committed: Committed | None = None
    bytes: int
    updated_at: datetime
    url: str | None = None


class SymbolEntry(BaseModel):
    ticker: str
    created_at: datetime
    updated_at: datetime


class BatchOutcome(BaseModel):
    """One per input symbol, in input order."""

    status: Literal["success", "failure"]
    ticker: str
    source: Source | None = None
    committed: Committed | None = None
    reason: str | None = None
    detail: str | None = None


class UploadOutcome(BaseModel):
    status: Literal["success", "failure"]
    filename: str | None = None
    ticker: str | None = None
    url: str | None = None
    reason: str | None = None
    detail: str | None = None
