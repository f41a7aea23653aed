"""Database connection and session management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import Depends
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from credits_service.config import settings
from credits_service.database.models import Base

logger = structlog.get_logger()


def is_sqlite_url(url: str) -> bool:
    """Return True when the URL targets SQLite."""
    return make_url(url).get_backend_name() == "sqlite"


def create_engine_for_url(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine configured for the ledger's locking model.

    SQLite has no row locks, so every transaction starts with
    ``BEGIN IMMEDIATE`` and takes the database write lock up front. Two
    writers that both read before upgrading their lock would otherwise
    deadlock into SQLITE_BUSY.
    """
    if is_sqlite_url(url):
        async_engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": settings.SQLITE_BUSY_TIMEOUT},
        )
        _setup_sqlite_listeners(async_engine)
        return async_engine

    async_engine = create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_POOL_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )
    _setup_pool_listeners(async_engine)
    return async_engine


def _setup_sqlite_listeners(async_engine: AsyncEngine) -> None:
    """Take transaction control away from the sqlite3 driver."""
    sync_engine = async_engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: object) -> None:
        # Stop the driver from emitting its own deferred BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _setup_pool_listeners(async_engine: AsyncEngine) -> None:
    """Setup connection pool event listeners for monitoring.

    This helps detect pool exhaustion before it causes request failures.
    """
    pool = async_engine.sync_engine.pool

    @event.listens_for(pool, "checkout")
    def _on_checkout(
        _dbapi_conn: object, _connection_record: object, _connection_proxy: object
    ) -> None:
        checked_out = pool.checkedout()  # type: ignore[attr-defined]
        pool_size = pool.size()  # type: ignore[attr-defined]
        if checked_out >= pool_size:
            logger.warning(
                "DB pool at capacity",
                checked_out=checked_out,
                pool_size=pool_size,
                overflow=pool.overflow(),  # type: ignore[attr-defined]
                max_overflow=settings.DB_POOL_MAX_OVERFLOW,
            )

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(
        _dbapi_conn: object, _connection_record: object, exception: Exception | None
    ) -> None:
        logger.warning(
            "DB connection invalidated",
            exception=str(exception) if exception else None,
        )


def create_session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory used for every unit of work."""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine: AsyncEngine = create_engine_for_url(settings.DATABASE_URL, echo=settings.DEBUG)
async_session_factory = create_session_factory(engine)


async def create_tables(async_engine: AsyncEngine) -> None:
    """Create all tables from the models (idempotent)."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_database() -> None:
    """Initialize database connection and create tables if needed.

    In development/test: Creates tables from models using create_all().
    In production: Relies on Alembic migrations for schema management.
    """
    # Only log the database host, not credentials or path
    try:
        db_host = settings.DATABASE_URL.split("@")[-1].split(":")[0].split("/")[0]
    except (IndexError, AttributeError):
        db_host = "unknown"
    logger.info("Initializing database connection", host=db_host)

    if settings.ENVIRONMENT in ("development", "test"):
        await create_tables(engine)
        logger.info("Database tables created/verified (development mode)")
    else:
        logger.info("Skipping create_all in production - Alembic manages schema")


async def close_database() -> None:
    """Close database connection pool."""
    logger.info("Closing database connection pool")
    await engine.dispose()


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the process-wide session factory."""
    return async_session_factory


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting a read session.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Run a block as one committed unit of work.

    Usage:
        async with session_scope(factory) as db:
            ...
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
