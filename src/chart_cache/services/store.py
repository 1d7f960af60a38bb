"""Artifact store capability and its named-file backend.

Both backends (this module's ``FileArtifactStore`` and the relational
``SqlArtifactStore`` in ``chart_cache.services.database``) honor the same
contract so the cache orchestrator never needs to know which one it talks to:

* one artifact per ticker, ``put`` is an upsert reporting ``inserted`` or
  ``updated``;
* a reader never observes a partially written artifact;
* ``get`` raises ``NotFound`` for an absent ticker;
* ``list`` is ordered by ticker ascending.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from chart_cache.config import CHART_DIR
from chart_cache.errors import NotFound, StorageIOFailure
from chart_cache.schemas.chart import Committed
from chart_cache.services.identity import derive_key, is_storage_key, key_to_ticker

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArtifactInfo:
    ticker: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Artifact:
    ticker: str
    data: bytes
    created_at: datetime
    updated_at: datetime

    @property
    def info(self) -> ArtifactInfo:
        return ArtifactInfo(self.ticker, self.created_at, self.updated_at)


class ArtifactStore(abc.ABC):
    name: str = "abstract"

    @abc.abstractmethod
    async def get(self, ticker: str) -> Artifact: ...

    @abc.abstractmethod
    async def put(self, ticker: str, data: bytes) -> Committed: ...

    @abc.abstractmethod
    async def exists(self, ticker: str) -> bool: ...

    @abc.abstractmethod
    async def list(self) -> list[ArtifactInfo]: ...

    @abc.abstractmethod
    async def remove(self, ticker: str) -> bool:
        """Delete the artifact; return whether one existed."""


def _mtime(st: os.stat_result) -> datetime:
    return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)


class FileArtifactStore(ArtifactStore):
    """One ``<TICKER>_chart.png`` file per ticker under ``directory``.

    Freshness comes from the file's mtime. Writes go to a hidden temp file in
    the same directory and are moved into place with ``os.replace``.
    """

    name = "file"

    def __init__(self, directory: Path = CHART_DIR):
        self.directory = Path(directory)

    def path_for(self, ticker: str) -> Path:
        return self.directory / derive_key(ticker)

    async def get(self, ticker: str) -> Artifact:
        return await asyncio.to_thread(self._get, ticker)

    def _get(self, ticker: str) -> Artifact:
        path = self.path_for(ticker)
        try:
            with open(path, "rb") as f:
                st = os.fstat(f.fileno())
                data = f.read()
        except FileNotFoundError:
            raise NotFound(f"No chart for {ticker}") from None
        except OSError as e:
            raise StorageIOFailure(f"Failed reading {path.name}: {e}") from e
        ts = _mtime(st)
        return Artifact(ticker=ticker, data=data, created_at=ts, updated_at=ts)

    async def put(self, ticker: str, data: bytes) -> Committed:
        return await asyncio.to_thread(self._put, ticker, data)

    def _put(self, ticker: str, data: bytes) -> Committed:
        path = self.path_for(ticker)
        tmp = self.directory / f".{path.name}.{uuid.uuid4().hex}.tmp"
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            existed = path.exists()
            tmp.write_bytes(data)
            tmp.replace(path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageIOFailure(f"Failed writing {path.name}: {e}") from e
        committed: Committed = "updated" if existed else "inserted"
        log.info("store.file.put ticker=%s bytes=%s %s", ticker, len(data), committed)
        return committed

    async def exists(self, ticker: str) -> bool:
        return await asyncio.to_thread(self.path_for(ticker).is_file)

    async def list(self) -> list[ArtifactInfo]:
        return await asyncio.to_thread(self._list)

    def _list(self) -> list[ArtifactInfo]:
        if not self.directory.exists():
            return []
        rows = []
        try:
            for entry in os.scandir(self.directory):
                if not entry.is_file() or not is_storage_key(entry.name):
                    continue
                ts = _mtime(entry.stat())
                rows.append(ArtifactInfo(key_to_ticker(entry.name), ts, ts))
        except OSError as e:
            raise StorageIOFailure(f"Failed listing {self.directory}: {e}") from e
        return sorted(rows, key=lambda r: r.ticker)

    async def remove(self, ticker: str) -> bool:
        return await asyncio.to_thread(self._remove, ticker)

    def _remove(self, ticker: str) -> bool:
        try:
            self.path_for(ticker).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageIOFailure(f"Failed removing chart for {ticker}: {e}") from e
        log.info("store.file.removed ticker=%s", ticker)
        return True
