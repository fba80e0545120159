"""Shared-store database engine and session management.

The shared store holds the live records and the append-only audit log in ONE
database. A mutation and its audit entry are written in the same session and
commit together.

Key exports:
- Base: declarative base for the shared-store models
- UTCDateTime: column type keeping datetimes timezone-aware on SQLite
- init_database(...): call at startup to create the engine and tables
- close_database(): call at shutdown to dispose the engine
- get_db_session(): FastAPI dependency yielding a unit-of-work session
- get_session_factory()
"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, event
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from dispatch_history.observability import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """Base class for shared-store models."""


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC datetime on every backend.

    SQLite drops the offset on write; values read back are re-tagged as UTC
    so they compare with freshly created ones.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# Module-level engine and session factory, set by init_database()
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 10,
    echo: bool = False,
) -> AsyncEngine:
    """Create an async engine, applying pool options only where they apply.

    Args:
        database_url: SQLAlchemy async URL.
        pool_size: Connection pool size (server databases only).
        max_overflow: Max overflow connections (server databases only).
        echo: Echo SQL statements.

    Returns:
        The configured AsyncEngine.
    """
    engine_kwargs: dict[str, Any] = {"echo": echo}
    is_sqlite = database_url.startswith("sqlite")
    if not is_sqlite:
        engine_kwargs.update(
            {
                "pool_size": pool_size,
                "max_overflow": max_overflow,
                "pool_pre_ping": True,
            }
        )
    elif ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
        # One shared connection, otherwise every checkout sees an empty database
        engine_kwargs["poolclass"] = StaticPool

    engine = create_async_engine(database_url, **engine_kwargs)
    if is_sqlite:
        _enable_sqlite_transactions(engine)
    return engine


def _enable_sqlite_transactions(engine: AsyncEngine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT and rollback behave on SQLite.

    Transactions start with BEGIN IMMEDIATE: the write lock is taken up front,
    so a second writer waits for the first to commit and then reads its
    result, instead of failing its lock upgrade with "database is locked".
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


async def init_database(
    database_url: str,
    pool_size: int = 5,
    max_overflow: int = 10,
    echo: bool = False,
    create_tables: bool = True,
) -> async_sessionmaker[AsyncSession]:
    """Initialize the shared-store engine and session factory.

    Must be called once at application startup (in the lifespan handler)
    before any request touches the database.

    Args:
        database_url: SQLAlchemy async URL of the shared store.
        pool_size: Connection pool size.
        max_overflow: Max overflow connections above pool_size.
        echo: Echo SQL statements.
        create_tables: Create missing tables from the model metadata.

    Returns:
        The session factory bound to the new engine.
    """
    global _engine, _session_factory  # noqa: PLW0603

    # Register the models on Base.metadata before create_all
    from dispatch_history.core import models  # noqa: F401

    logger.info("Initializing shared-store engine", pool_size=pool_size, max_overflow=max_overflow)

    _engine = build_engine(database_url, pool_size=pool_size, max_overflow=max_overflow, echo=echo)
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    if create_tables:
        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    logger.info("Shared-store engine initialized")
    return _session_factory


async def close_database() -> None:
    """Dispose the shared-store engine."""
    global _engine, _session_factory  # noqa: PLW0603

    if _engine is not None:
        logger.info("Disposing shared-store engine")
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the initialized session factory.

    Raises:
        RuntimeError: If init_database() has not been called yet.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Shared-store database has not been initialized. "
            "Call init_database() in the application lifespan handler."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields one unit-of-work session.

    The session commits when the request handler returns and rolls back if
    it raises, so a mutation and its audit entry share one fate.

    Yields:
        AsyncSession: A session on the shared store.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
