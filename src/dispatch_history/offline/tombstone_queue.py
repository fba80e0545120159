"""Durable queue of pending remote deletes.

Every method runs in its own local transaction. A tombstone is written in
the same transaction that removes the local record, so a crash can never
leave a record deleted locally without a pending remote delete, or the
other way round.
"""

import uuid

from sqlalchemy import delete, select, update

from dispatch_history.core.models import utcnow
from dispatch_history.errors import NotFoundError
from dispatch_history.offline.local_store import LocalRecord, LocalStore, Tombstone
from dispatch_history.observability import get_logger

logger = get_logger(__name__)

# last_error is stored for display; keep it bounded
_MAX_ERROR_LENGTH = 500


class TombstoneQueue:
    """Tombstone persistence for one client.

    A tombstone is stuck once retry_count reaches max_retries. Stuck
    tombstones are excluded from list_pending(), kept indefinitely, and only
    leave that state through retry_stuck() or retry_all_stuck().

    Args:
        store: The opened local store.
        max_retries: Failed attempts after which a tombstone is stuck.
    """

    def __init__(self, store: LocalStore, max_retries: int = 5) -> None:
        self._store = store
        self._max_retries = max_retries

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def delete_locally(self, entity_type: str, record_id: uuid.UUID) -> Tombstone:
        """Remove a record locally and enqueue its remote delete, atomically.

        Args:
            entity_type: Entity type of the record.
            record_id: Identifier of the record.

        Returns:
            The new tombstone.

        Raises:
            NotFoundError: If the record is not in the local store. No
                tombstone is written.
        """
        async with self._store.session() as session, session.begin():
            result = await session.execute(
                delete(LocalRecord).where(
                    LocalRecord.entity_type == entity_type,
                    LocalRecord.id == record_id,
                )
            )
            if result.rowcount == 0:
                raise NotFoundError(resource=entity_type, resource_id=str(record_id))
            tombstone = self._new_tombstone(entity_type, record_id)
            session.add(tombstone)

        logger.info(
            "Tombstone enqueued",
            tombstone_id=str(tombstone.id),
            entity_type=entity_type,
            record_id=str(record_id),
        )
        return tombstone

    @staticmethod
    def _new_tombstone(entity_type: str, record_id: uuid.UUID) -> Tombstone:
        return Tombstone(
            id=uuid.uuid4(),
            entity_type=entity_type,
            record_id=record_id,
            created_at=utcnow(),
            retry_count=0,
        )

    async def get(self, tombstone_id: uuid.UUID) -> Tombstone | None:
        async with self._store.session() as session:
            return await session.get(Tombstone, tombstone_id)

    async def list_pending(self) -> list[Tombstone]:
        """Return tombstones still eligible for delivery, oldest first."""
        stmt = (
            select(Tombstone)
            .where(Tombstone.retry_count < self._max_retries)
            .order_by(Tombstone.created_at.asc(), Tombstone.id.asc())
        )
        async with self._store.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_stuck(self) -> list[Tombstone]:
        """Return tombstones that exhausted their automatic retries, oldest first."""
        stmt = (
            select(Tombstone)
            .where(Tombstone.retry_count >= self._max_retries)
            .order_by(Tombstone.created_at.asc(), Tombstone.id.asc())
        )
        async with self._store.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def remove(self, tombstone_id: uuid.UUID) -> bool:
        """Delete a tombstone after its remote delete was confirmed.

        Returns:
            True if the tombstone existed.
        """
        async with self._store.session() as session, session.begin():
            result = await session.execute(delete(Tombstone).where(Tombstone.id == tombstone_id))
        removed = result.rowcount > 0
        if removed:
            logger.info("Tombstone delivered", tombstone_id=str(tombstone_id))
        return removed

    async def record_failure(self, tombstone_id: uuid.UUID, error: str) -> Tombstone | None:
        """Count one failed delivery attempt.

        Args:
            tombstone_id: The tombstone that failed.
            error: Description of the failure.

        Returns:
            The updated tombstone, or None if it no longer exists.
        """
        async with self._store.session() as session, session.begin():
            tombstone = await session.get(Tombstone, tombstone_id)
            if tombstone is None:
                return None
            tombstone.retry_count += 1
            tombstone.last_error = error[:_MAX_ERROR_LENGTH]
            tombstone.last_attempted_at = utcnow()

        if tombstone.retry_count >= self._max_retries:
            logger.warning(
                "Tombstone stuck after exhausting retries",
                tombstone_id=str(tombstone.id),
                entity_type=tombstone.entity_type,
                record_id=str(tombstone.record_id),
                retry_count=tombstone.retry_count,
            )
        else:
            logger.info(
                "Tombstone delivery failed",
                tombstone_id=str(tombstone.id),
                retry_count=tombstone.retry_count,
            )
        return tombstone

    async def retry_stuck(self, tombstone_id: uuid.UUID) -> bool:
        """Make one stuck tombstone pending again.

        Returns:
            True if a stuck tombstone was reset.
        """
        stmt = (
            update(Tombstone)
            .where(Tombstone.id == tombstone_id, Tombstone.retry_count >= self._max_retries)
            .values(retry_count=0, last_error=None, last_attempted_at=None)
        )
        async with self._store.session() as session, session.begin():
            result = await session.execute(stmt)
        reset = result.rowcount > 0
        if reset:
            logger.info("Stuck tombstone reset for retry", tombstone_id=str(tombstone_id))
        return reset

    async def retry_all_stuck(self) -> int:
        """Make every stuck tombstone pending again.

        Returns:
            The number of tombstones reset.
        """
        stmt = (
            update(Tombstone)
            .where(Tombstone.retry_count >= self._max_retries)
            .values(retry_count=0, last_error=None, last_attempted_at=None)
        )
        async with self._store.session() as session, session.begin():
            result = await session.execute(stmt)
        logger.info("Stuck tombstones reset for retry", count=result.rowcount)
        return result.rowcount
