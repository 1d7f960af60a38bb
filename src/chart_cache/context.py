"""Application context: every long-lived collaborator, built in one place.

Startup order is ``AppContext(...)`` then ``await start()``: the relational
backend is connected (or left absent, i.e. degraded mode) before any request
is served. ``aclose()`` is idempotent.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import httpx

from chart_cache import config
from chart_cache.errors import BackendUnavailable
from chart_cache.services.cache import ChartCache
from chart_cache.services.database import Database, SqlArtifactStore
from chart_cache.services.fetch import ChartFetcher
from chart_cache.services.store import FileArtifactStore
from chart_cache.services.upload import UploadValidator

log = logging.getLogger(__name__)


class AppContext:
    def __init__(
        self,
        *,
        database: Optional[Database] = None,
        chart_dir: Path = config.CHART_DIR,
        staging_dir: Path = config.STAGING_DIR,
        ttl: timedelta = timedelta(hours=config.CHART_TTL_HOURS),
        http_client: Optional[httpx.AsyncClient] = None,
        fetch_timeout_ms: int = config.FETCH_TIMEOUT_MS,
        url_template: str = config.CHART_URL_TEMPLATE,
        public_base_url: str = config.PUBLIC_BASE_URL,
    ):
        self.database = database if database is not None else Database()
        self.public_base_url = public_base_url
        self.fetcher = ChartFetcher(
            http_client,
            url_template=url_template,
            timeout_ms=fetch_timeout_ms,
            staging_dir=staging_dir,
        )
        self.files = FileArtifactStore(chart_dir)
        self.file_cache = ChartCache(self.files, self.fetcher, ttl=ttl)
        self.db_cache = ChartCache(SqlArtifactStore(self.database), self.fetcher, ttl=ttl)
        self.uploads = UploadValidator(self.files, staging_dir=staging_dir)
        self._closed = False

    @property
    def degraded(self) -> bool:
        return not self.database.ready

    async def start(self) -> None:
        await self.database.connect()
        if self.degraded:
            log.warning("context.degraded reason=relational_backend_unavailable")

    def relational(self) -> ChartCache:
        """Cache over the relational store; ``BackendUnavailable`` when degraded."""
        if self.degraded:
            raise BackendUnavailable("Database is not ready")
        return self.db_cache

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.fetcher.aclose()
        await self.database.dispose()
