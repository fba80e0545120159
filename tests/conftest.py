"""Test fixtures for dispatch-history.

Provides:
- owner_id / other_user_id: deterministic user UUIDs
- entity_types: the default entity type registry
- db_session: an AsyncSession on a fresh in-memory SQLite shared store
- audit_log / live_records: repositories bound to db_session
- local_store: an opened client-local store in a temporary SQLite file
- make_user / make_listing / make_task: record documents
"""

import uuid
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_history.adapters.audit_log import AuditLogRepository
from dispatch_history.adapters.live_records import LiveRecordRepository
from dispatch_history.core import models  # noqa: F401
from dispatch_history.database import Base, build_engine
from dispatch_history.offline.local_store import LocalStore
from dispatch_history.settings import EntityTypeConfig, default_entity_types


@pytest.fixture()
def owner_id() -> uuid.UUID:
    """Return a fixed UUID for the user who owns the test records."""
    return uuid.UUID("00000000-0000-0000-0000-000000000001")


@pytest.fixture()
def other_user_id() -> uuid.UUID:
    """Return a fixed UUID for a user who owns nothing."""
    return uuid.UUID("00000000-0000-0000-0000-000000000002")


@pytest.fixture()
def entity_types() -> dict[str, EntityTypeConfig]:
    return default_entity_types()


@pytest_asyncio.fixture()
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create a fresh in-memory shared store with all tables.

    Yields:
        A session factory bound to the in-memory engine.
    """
    engine = build_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def audit_log(db_session: AsyncSession) -> AuditLogRepository:
    return AuditLogRepository(db_session)


@pytest.fixture()
def live_records(db_session: AsyncSession, entity_types: dict[str, EntityTypeConfig]) -> LiveRecordRepository:
    return LiveRecordRepository(db_session, entity_types)


@pytest_asyncio.fixture()
async def local_store(tmp_path: Path) -> AsyncGenerator[LocalStore, None]:
    """Open a client-local store in a temporary file.

    Yields:
        The opened LocalStore.
    """
    store = LocalStore(f"sqlite+aiosqlite:///{tmp_path / 'local.db'}")
    await store.open()
    yield store
    await store.close()


def make_user(user_id: uuid.UUID, name: str = "Alice", email: str | None = None) -> dict[str, Any]:
    """Build a user document."""
    return {"id": str(user_id), "name": name, "email": email or f"{name.lower()}@example.com"}


def make_listing(owner_id: uuid.UUID, address: str = "123 Main St", **fields: Any) -> dict[str, Any]:
    """Build a listing document owned by owner_id."""
    return {
        "id": str(fields.pop("id", uuid.uuid4())),
        "address": address,
        "owned_by": str(owner_id),
        "price": 450000,
        "stage": "active",
        **fields,
    }


def make_task(declared_by: uuid.UUID, listing_id: uuid.UUID | None = None, **fields: Any) -> dict[str, Any]:
    """Build a task document declared by declared_by."""
    return {
        "id": str(fields.pop("id", uuid.uuid4())),
        "title": "Update lockbox code",
        "declared_by": str(declared_by),
        "listing": str(listing_id) if listing_id else None,
        "status": "open",
        **fields,
    }
