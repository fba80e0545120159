"""Client-local database holding tombstones and the local record mirror.

The local store is a separate SQLite file on the client. Tombstones live in
it so a delete made offline survives a process restart. The local_records
table mirrors the records the client can edit; removing a row there and
writing its tombstone always happen in one local transaction.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Integer, String, Text, Uuid
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dispatch_history.core.models import utcnow
from dispatch_history.core.snapshots import to_snapshot
from dispatch_history.database import UTCDateTime, build_engine
from dispatch_history.observability import get_logger

logger = get_logger(__name__)


class LocalBase(DeclarativeBase):
    """Base class for client-local models. Never created in the shared store."""


class LocalRecord(LocalBase):
    """A record as the client last saw it."""

    __tablename__ = "local_records"

    entity_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Tombstone(LocalBase):
    """A durable, pending remote delete.

    Attributes:
        id: Tombstone identifier.
        entity_type: Entity type of the deleted record.
        record_id: Identifier of the deleted record.
        created_at: When the record was deleted locally. Drain order is FIFO
            on this column.
        retry_count: Failed delivery attempts so far.
        last_error: Description of the most recent failure.
        last_attempted_at: When delivery was last attempted.
    """

    __tablename__ = "tombstones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, index=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"Tombstone(id={self.id}, entity_type={self.entity_type!r}, "
            f"record_id={self.record_id}, retry_count={self.retry_count})"
        )


class LocalStore:
    """Owns the client-local engine and session factory.

    Args:
        database_url: SQLAlchemy async URL of the local SQLite database.
    """

    def __init__(self, database_url: str) -> None:
        self._database_url = database_url
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def open(self) -> None:
        """Create the engine and any missing tables."""
        self._engine = build_engine(self._database_url)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        async with self._engine.begin() as conn:
            await conn.run_sync(LocalBase.metadata.create_all)
        logger.info("Local store opened")

    async def close(self) -> None:
        """Dispose the engine."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Local store closed")

    def session(self) -> AsyncSession:
        """Return a new session on the local database.

        Raises:
            RuntimeError: If open() has not been called.
        """
        if self._session_factory is None:
            raise RuntimeError("Local store is not open. Call open() first.")
        return self._session_factory()

    async def save_record(self, entity_type: str, data: dict[str, Any]) -> LocalRecord:
        """Insert or replace a record in the local mirror.

        Args:
            entity_type: Entity type of the record.
            data: The record document, including its "id".

        Returns:
            The stored LocalRecord.
        """
        document = to_snapshot(data)
        record_id = uuid.UUID(str(document["id"]))
        async with self.session() as session, session.begin():
            record = await session.get(LocalRecord, (entity_type, record_id))
            if record is None:
                record = LocalRecord(entity_type=entity_type, id=record_id, data=document)
                session.add(record)
            else:
                record.data = document
        return record

    async def get_record(self, entity_type: str, record_id: uuid.UUID) -> LocalRecord | None:
        """Return a record from the local mirror, or None."""
        async with self.session() as session:
            return await session.get(LocalRecord, (entity_type, record_id))
