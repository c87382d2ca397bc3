"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobqueue.config import Settings
from jobqueue.db.models import Base
from jobqueue.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Seconds a SQLite connection waits on the database write lock
SQLITE_BUSY_TIMEOUT = 30


def is_connectivity_error(exc: BaseException) -> bool:
    """Check whether an exception means the Store could not be reached."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (ConnectionError, OSError, TimeoutError))


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Create the async database engine.

    Args:
        settings: Application settings.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    if settings.is_sqlite:
        engine = create_async_engine(
            settings.database_url,
            echo=settings.database_echo,
            poolclass=NullPool,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
        )
        _configure_sqlite(engine)
        return engine

    return create_async_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.database_echo,
        pool_pre_ping=True,
    )


def _configure_sqlite(engine: AsyncEngine) -> None:
    # pysqlite's implicit BEGIN only covers DML; take the write lock up front
    # so a claim's read-then-update runs under one lock.
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT * 1000}")
        cursor.close()

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """
    Owns the engine and session factory for one process.

    Created by the QueueContext at process start and disposed at stop.
    """

    def __init__(self, settings: Settings, engine: AsyncEngine | None = None):
        self._settings = settings
        self.engine = engine or create_engine_from_settings(settings)
        self._session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Transactional session scope.

        Commits on success and rolls back on error. Connectivity failures are
        re-raised as StoreUnavailableError after the rollback, so no state
        change is assumed without a durable commit.

        Yields:
            AsyncSession: An async database session.
        """
        try:
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except BaseException:
                    await session.rollback()
                    raise
        except StoreUnavailableError:
            raise
        except Exception as exc:
            if is_connectivity_error(exc):
                raise StoreUnavailableError(f"Store unavailable: {exc}") from exc
            raise

    async def create_all(self) -> None:
        """Create the schema (development and tests; production uses Alembic)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema created")

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def ping(self) -> bool:
        """Check Store reachability."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            if is_connectivity_error(exc):
                logger.warning("Database ping failed", extra={"error": str(exc)})
                return False
            raise

    async def close(self) -> None:
        """
        Close the database connection.
        Should be called on process shutdown.
        """
        await self.engine.dispose()
        logger.info("Database connection closed")
