"""Fetch-on-miss chart cache.

``ChartCache`` is written against ``ArtifactStore`` only; the application
builds one per backend. Concurrent refreshes of the same ticker share one
upstream fetch (single-flight); different tickers never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from chart_cache.errors import UPSTREAM_ERRORS, ChartCacheError, NotFound
from chart_cache.schemas.chart import BatchOutcome, Source
from chart_cache.services.fetch import ChartFetcher
from chart_cache.services.freshness import DEFAULT_TTL, is_fresh, now_utc
from chart_cache.services.identity import resolve
from chart_cache.services.store import Artifact, ArtifactInfo, ArtifactStore, Committed

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheLookup:
    artifact: Artifact
    source: Source
    committed: Optional[Committed] = None


class ChartCache:
    def __init__(
        self,
        store: ArtifactStore,
        fetcher: ChartFetcher,
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.store = store
        self.fetcher = fetcher
        self.ttl = ttl
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[CacheLookup]] = {}

    async def get(self, raw: object) -> Artifact:
        """Stored artifact for ``raw`` without fetching; ``NotFound`` if absent."""
        return await self.store.get(resolve(raw))

    async def list(self) -> list[ArtifactInfo]:
        return await self.store.list()

    async def get_or_fetch(self, raw: object, *, allow_stale: bool = False) -> CacheLookup:
        """Serve a fresh stored chart or refetch and commit a new one.

        Upstream failures are raised even when a stale copy exists, unless the
        caller passes ``allow_stale=True``.
        """
        ticker = resolve(raw)
        try:
            current: Optional[Artifact] = await self.store.get(ticker)
        except NotFound:
            current = None

        if current is not None and is_fresh(current.updated_at, self._clock(), self.ttl):
            log.info("cache.hit ticker=%s store=%s", ticker, self.store.name)
            return CacheLookup(artifact=current, source="cached")

        log.info(
            "cache.%s ticker=%s store=%s",
            "stale" if current else "miss",
            ticker,
            self.store.name,
        )
        try:
            return await self._refresh(ticker)
        except UPSTREAM_ERRORS as e:
            if allow_stale and current is not None:
                log.warning("cache.serve_stale ticker=%s reason=%s", ticker, e.code)
                return CacheLookup(artifact=current, source="stale")
            raise

    async def _refresh(self, ticker: str) -> CacheLookup:
        task = self._inflight.get(ticker)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_commit(ticker))
            self._inflight[ticker] = task
            task.add_done_callback(lambda t: self._forget(ticker, t))
            # a cancelled waiter must not cancel the fetch other callers share
            return await asyncio.shield(task)

        log.info("cache.join_inflight ticker=%s", ticker)
        lookup = await asyncio.shield(task)
        # only the caller that started the fetch reports the commit
        return replace(lookup, committed=None)

    def _forget(self, ticker: str, task: asyncio.Task) -> None:
        if self._inflight.get(ticker) is task:
            del self._inflight[ticker]
        if not task.cancelled():
            task.exception()  # marks the failure retrieved

    async def _fetch_and_commit(self, ticker: str) -> CacheLookup:
        result = await self.fetcher.fetch(ticker)
        try:
            data = await asyncio.to_thread(result.read_bytes)
            committed = await self.store.put(ticker, data)
        finally:
            result.discard()
        artifact = await self.store.get(ticker)
        return CacheLookup(artifact=artifact, source="fetched", committed=committed)

    async def batch_get_or_fetch(self, raws: Iterable[object]) -> list[BatchOutcome]:
        """One outcome per input, in input order, one item at a time."""
        return [await self._outcome(raw) for raw in raws]

    async def _outcome(self, raw: object) -> BatchOutcome:
        label = raw if isinstance(raw, str) else repr(raw)
        try:
            lookup = await self.get_or_fetch(raw)
        except ChartCacheError as e:
            log.warning("cache.batch_item_failed ticker=%s reason=%s", label, e.code)
            return BatchOutcome(status="failure", ticker=label, reason=e.code, detail=e.detail)
        except Exception as e:
            log.exception("cache.batch_item_crashed ticker=%s", label)
            return BatchOutcome(
                status="failure", ticker=label, reason="InternalError", detail=str(e)
            )
        return BatchOutcome(
            status="success",
            ticker=lookup.artifact.ticker,
            source=lookup.source,
            committed=lookup.committed,
        )
