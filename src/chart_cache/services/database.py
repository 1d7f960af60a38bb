"""Relational backend: connection lifecycle and the blob-table artifact store.

``Database`` is the explicitly constructed owner of the engine and its
connection pool. Initialization order is: construct, ``connect()`` (engine,
ping, table creation), then hand it to ``SqlArtifactStore``. ``dispose()``
may be called any number of times. A ``Database`` that never became ready
leaves the service in degraded mode and every session request raises
``BackendUnavailable``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from sqlalchemy import DateTime, LargeBinary, String, delete, func, literal_column, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from chart_cache.config import DATABASE_URL, DB_CONNECT_ATTEMPTS, DB_POOL_SIZE
from chart_cache.errors import BackendUnavailable, NotFound, StorageIOFailure
from chart_cache.schemas.chart import TICKER_MAX_LENGTH
from chart_cache.services.freshness import as_utc, now_utc
from chart_cache.services.store import Artifact, ArtifactInfo, ArtifactStore, Committed

log = logging.getLogger(__name__)

_CONNECT_ERRORS = (OSError, TimeoutError, SQLAlchemyError)

_UPSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


class Base(DeclarativeBase):
    pass


class ChartImage(Base):
    __tablename__ = "chart_images"

    ticker: Mapped[str] = mapped_column(String(TICKER_MAX_LENGTH), primary_key=True)
    image: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


def upsert_statement(dialect: str, ticker: str, data: bytes, now: datetime):
    """INSERT ... ON CONFLICT for dialects that have it, else None.

    On Postgres the statement also returns whether the row was inserted
    (`xmax = 0` only holds for a tuple this transaction created). Other
    dialects rely on a probe inside the same transaction.
    """
    upsert = _UPSERTS.get(dialect)
    if upsert is None:
        return None
    stmt = upsert(ChartImage).values(
        ticker=ticker, image=data, created_at=now, updated_at=now
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[ChartImage.ticker],
        set_={"image": stmt.excluded.image, "updated_at": stmt.excluded.updated_at},
    )
    if dialect == "postgresql":
        stmt = stmt.returning(literal_column("(xmax = 0)").label("inserted"))
    return stmt


def mask_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return make_url(url).render_as_string(hide_password=True)


class Database:
    def __init__(
        self,
        url: Optional[str] = DATABASE_URL,
        *,
        connect_attempts: int = DB_CONNECT_ATTEMPTS,
        pool_size: int = DB_POOL_SIZE,
    ):
        self.url = url
        self._connect_attempts = max(1, connect_attempts)
        self._pool_size = pool_size
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def configured(self) -> bool:
        return bool(self.url)

    @property
    def ready(self) -> bool:
        return self._engine is not None

    @property
    def dialect_name(self) -> Optional[str]:
        return self._engine.dialect.name if self._engine else None

    def _engine_kwargs(self) -> dict:
        kwargs: dict = {"pool_pre_ping": True}
        if make_url(self.url).get_backend_name() != "sqlite":
            kwargs["pool_size"] = self._pool_size
        return kwargs

    async def connect(self) -> bool:
        """Create the engine and the table; return whether the backend is ready."""
        if self.ready:
            return True
        if not self.url:
            log.info("db.disabled reason=no_database_url")
            return False

        try:
            engine = create_async_engine(self.url, **self._engine_kwargs())
        except (SQLAlchemyError, ImportError, ValueError) as e:
            log.warning("db.engine_failed url=%s error=%s", mask_url(self.url), e)
            return False

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(_CONNECT_ERRORS),
                wait=wait_exponential(multiplier=0.5, min=1, max=8),
                stop=stop_after_attempt(self._connect_attempts),
                before_sleep=before_sleep_log(log, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    async with engine.begin() as conn:
                        await conn.run_sync(Base.metadata.create_all)
        except _CONNECT_ERRORS as e:
            log.warning(
                "db.connect_failed url=%s attempts=%s error=%s; running degraded",
                mask_url(self.url),
                self._connect_attempts,
                e,
            )
            await engine.dispose()
            return False

        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        log.info("db.ready url=%s", mask_url(self.url))
        return True

    async def setup(self) -> None:
        """Create the chart table if it is missing."""
        if self._engine is None:
            raise BackendUnavailable("Database is not connected")
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageIOFailure(f"Database setup failed: {e}") from e

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._sessions is None:
            raise BackendUnavailable("Database is not connected")
        async with self._sessions() as session:
            yield session

    async def ping(self) -> datetime:
        try:
            async with self.session() as session:
                result = await session.execute(select(func.current_timestamp()))
                return result.scalar_one()
        except SQLAlchemyError as e:
            raise BackendUnavailable(f"Database connection error: {e}") from e

    async def dispose(self) -> None:
        engine, self._engine, self._sessions = self._engine, None, None
        if engine is not None:
            await engine.dispose()
            log.info("db.disposed")


class SqlArtifactStore(ArtifactStore):
    """Charts as rows of ``chart_images`` keyed by ticker."""

    name = "database"

    def __init__(self, db: Database):
        self._db = db

    async def get(self, ticker: str) -> Artifact:
        try:
            async with self._db.session() as session:
                row = await session.get(ChartImage, ticker)
        except SQLAlchemyError as e:
            raise StorageIOFailure(f"Failed reading chart for {ticker}: {e}") from e
        if row is None:
            raise NotFound(f"No chart for {ticker}")
        return Artifact(
            ticker=row.ticker,
            data=row.image,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    async def put(self, ticker: str, data: bytes) -> Committed:
        now = now_utc()
        dialect = self._db.dialect_name or ""
        try:
            async with self._db.session() as session:
                async with session.begin():
                    stmt = upsert_statement(dialect, ticker, data, now)
                    if dialect == "postgresql":
                        inserted = (await session.execute(stmt)).scalar_one()
                    elif stmt is not None:
                        inserted = not await self._exists(session, ticker)
                        await session.execute(stmt)
                    else:
                        row = await session.get(ChartImage, ticker, with_for_update=True)
                        inserted = row is None
                        if row is None:
                            session.add(
                                ChartImage(
                                    ticker=ticker, image=data, created_at=now, updated_at=now
                                )
                            )
                        else:
                            row.image = data
                            row.updated_at = now
        except SQLAlchemyError as e:
            raise StorageIOFailure(f"Failed writing chart for {ticker}: {e}") from e
        committed: Committed = "inserted" if inserted else "updated"
        log.info("store.db.put ticker=%s bytes=%s %s", ticker, len(data), committed)
        return committed

    @staticmethod
    async def _exists(session: AsyncSession, ticker: str) -> bool:
        found = await session.scalar(
            select(ChartImage.ticker).where(ChartImage.ticker == ticker)
        )
        return found is not None

    async def exists(self, ticker: str) -> bool:
        try:
            async with self._db.session() as session:
                return await self._exists(session, ticker)
        except SQLAlchemyError as e:
            raise StorageIOFailure(f"Failed probing chart for {ticker}: {e}") from e

    async def list(self) -> list[ArtifactInfo]:
        stmt = select(
            ChartImage.ticker, ChartImage.created_at, ChartImage.updated_at
        ).order_by(ChartImage.ticker)
        try:
            async with self._db.session() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as e:
            raise StorageIOFailure(f"Failed listing charts: {e}") from e
        return [ArtifactInfo(t, as_utc(c), as_utc(u)) for t, c, u in rows]

    async def remove(self, ticker: str) -> bool:
        try:
            async with self._db.session() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(ChartImage).where(ChartImage.ticker == ticker)
                    )
        except SQLAlchemyError as e:
            raise StorageIOFailure(f"Failed removing chart for {ticker}: {e}") from e
        removed = result.rowcount > 0
        if removed:
            log.info("store.db.removed ticker=%s", ticker)
        return removed
