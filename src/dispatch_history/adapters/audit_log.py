"""Append-only repository for the audit log.

AuditLogRepository shares the session of the mutation it records, so the
entry commits or rolls back with the change itself.

IMPORTANT: There is no update() or delete() here. The only write besides
append() is backfill_restore_snapshot(), which fills the before snapshot of a
restore entry exactly once and refuses anything else.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, Select, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_history.core.models import AuditAction, AuditLogEntry, utcnow
from dispatch_history.errors import AuditLogImmutableError, NotFoundError
from dispatch_history.observability import get_logger

logger = get_logger(__name__)

# (caller_id, owner_field)
VisibilityFilter = tuple[uuid.UUID, str]

NEWEST_FIRST = (AuditLogEntry.occurred_at.desc(), AuditLogEntry.sequence.desc())


class AuditLogRepository:
    """Append-only repository for AuditLogEntry.

    Reads here are NOT authorized. Callers filter results through
    core.ownership before returning them to a user.

    Args:
        session: The unit-of-work session of the current mutation or request.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        action: AuditAction,
        actor_id: uuid.UUID | None,
        before_snapshot: dict[str, Any] | None,
        after_snapshot: dict[str, Any] | None,
        occurred_at: datetime | None = None,
    ) -> AuditLogEntry:
        """Append an immutable audit entry.

        Args:
            entity_type: Entity type of the affected record.
            record_id: Identifier of the affected record.
            action: insert | update | delete | restore.
            actor_id: User who caused the change, if known.
            before_snapshot: State before the change. Must be None for insert.
            after_snapshot: State after the change. Must be None for delete.
            occurred_at: Entry timestamp (defaults to now, UTC).

        Returns:
            The persisted AuditLogEntry.

        Raises:
            ValueError: If the snapshots contradict the action.
        """
        if action == AuditAction.INSERT and before_snapshot is not None:
            raise ValueError("An insert entry cannot carry a before snapshot")
        if action == AuditAction.DELETE and after_snapshot is not None:
            raise ValueError("A delete entry cannot carry an after snapshot")

        entry = AuditLogEntry(
            entity_type=entity_type,
            record_id=record_id,
            action=str(action),
            actor_id=actor_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
            occurred_at=occurred_at or utcnow(),
        )
        self._session.add(entry)
        await self._session.flush()

        logger.info(
            "Audit entry written",
            entry_id=str(entry.id),
            entity_type=entity_type,
            record_id=str(record_id),
            action=str(action),
        )
        return entry

    async def list_for_record(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        limit: int,
        offset: int = 0,
        visible_to: VisibilityFilter | None = None,
    ) -> list[AuditLogEntry]:
        """List every entry of one record, newest first.

        Args:
            entity_type: Entity type of the record.
            record_id: Identifier of the record.
            limit: Maximum rows to return.
            offset: Rows to skip.
            visible_to: Optional (caller_id, owner_field) prefilter.

        Returns:
            Entries ordered by occurred_at, then sequence, descending.
        """
        stmt = select(AuditLogEntry).where(
            AuditLogEntry.entity_type == entity_type,
            AuditLogEntry.record_id == record_id,
        )
        return await self._page(stmt, limit, offset, visible_to)

    async def list_for_parent(
        self,
        entity_type: str,
        parent_field: str,
        parent_id: uuid.UUID,
        limit: int,
        offset: int = 0,
        visible_to: VisibilityFilter | None = None,
    ) -> list[AuditLogEntry]:
        """List entries of records that point at a parent record, newest first.

        A record points at the parent when parent_field of either snapshot
        holds the parent's id.

        Args:
            entity_type: Entity type of the related records (e.g. note).
            parent_field: Snapshot field holding the parent id (e.g. parent_id).
            parent_id: Identifier of the parent record.
            limit: Maximum rows to return.
            offset: Rows to skip.
            visible_to: Optional (caller_id, owner_field) prefilter.

        Returns:
            Entries ordered by occurred_at, then sequence, descending.
        """
        stmt = select(AuditLogEntry).where(
            AuditLogEntry.entity_type == entity_type,
            or_(
                _snapshot_text(AuditLogEntry.before_snapshot, parent_field) == str(parent_id),
                _snapshot_text(AuditLogEntry.after_snapshot, parent_field) == str(parent_id),
            ),
        )
        return await self._page(stmt, limit, offset, visible_to)

    async def list_deletes(
        self,
        entity_type: str,
        limit: int,
        offset: int = 0,
        visible_to: VisibilityFilter | None = None,
    ) -> list[AuditLogEntry]:
        """List delete entries of one entity type, newest first.

        Args:
            entity_type: Entity type to read.
            limit: Maximum rows to return.
            offset: Rows to skip.
            visible_to: Optional (caller_id, owner_field) prefilter.

        Returns:
            Delete entries ordered by occurred_at, then sequence, descending.
        """
        stmt = select(AuditLogEntry).where(
            AuditLogEntry.entity_type == entity_type,
            AuditLogEntry.action == AuditAction.DELETE.value,
        )
        return await self._page(stmt, limit, offset, visible_to)

    async def latest_delete(self, entity_type: str, record_id: uuid.UUID) -> AuditLogEntry | None:
        """Return the most recent delete entry of a record, or None."""
        stmt = (
            select(AuditLogEntry)
            .where(
                AuditLogEntry.entity_type == entity_type,
                AuditLogEntry.record_id == record_id,
                AuditLogEntry.action == AuditAction.DELETE.value,
            )
            .order_by(*NEWEST_FIRST)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def backfill_restore_snapshot(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        actor_id: uuid.UUID | None,
        before_snapshot: dict[str, Any],
    ) -> AuditLogEntry:
        """Fill the before snapshot of the restore entry just written.

        The entry is located by record id, action, actor and the most recent
        occurred_at, the latest sequence breaking ties. This is the only sanctioned change to an existing entry.

        Args:
            entity_type: Entity type of the restored record.
            record_id: Identifier of the restored record.
            actor_id: The user who performed the restore.
            before_snapshot: The pre-deletion snapshot.

        Returns:
            The updated restore entry.

        Raises:
            NotFoundError: If no restore entry by this actor exists.
            AuditLogImmutableError: If the entry already has a before snapshot.
        """
        actor_clause = AuditLogEntry.actor_id.is_(None) if actor_id is None else AuditLogEntry.actor_id == actor_id
        stmt = (
            select(AuditLogEntry)
            .where(
                AuditLogEntry.entity_type == entity_type,
                AuditLogEntry.record_id == record_id,
                AuditLogEntry.action == AuditAction.RESTORE.value,
                actor_clause,
            )
            .order_by(*NEWEST_FIRST)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        entry = result.scalars().first()
        if entry is None:
            raise NotFoundError(resource="Restore entry", resource_id=str(record_id))
        if entry.action != AuditAction.RESTORE or entry.before_snapshot is not None:
            raise AuditLogImmutableError(f"Audit entry {entry.id} cannot be modified")

        entry.before_snapshot = dict(before_snapshot)
        await self._session.flush()

        logger.info(
            "Restore entry back-filled",
            entry_id=str(entry.id),
            entity_type=entity_type,
            record_id=str(record_id),
        )
        return entry

    async def _page(
        self,
        stmt: Select[tuple[AuditLogEntry]],
        limit: int,
        offset: int,
        visible_to: VisibilityFilter | None,
    ) -> list[AuditLogEntry]:
        if visible_to is not None:
            stmt = stmt.where(_visibility_clause(*visible_to))
        result = await self._session.execute(stmt.order_by(*NEWEST_FIRST).offset(offset).limit(limit))
        return list(result.scalars().all())


def _snapshot_text(column: Any, field: str) -> ColumnElement[str]:
    """A snapshot field as lower-case text; NULL when absent."""
    return func.lower(column[field].as_string())


def _visibility_clause(caller_id: uuid.UUID, owner_field: str) -> ColumnElement[bool]:
    """SQL form of the read rule: the caller is the actor or either snapshot's owner.

    Owner values are matched in canonical hyphenated form, case-insensitively.
    Callers still apply core.ownership.is_entry_visible to each row.
    """
    caller = str(caller_id)
    return or_(
        AuditLogEntry.actor_id == caller_id,
        _snapshot_text(AuditLogEntry.before_snapshot, owner_field) == caller,
        _snapshot_text(AuditLogEntry.after_snapshot, owner_field) == caller,
    )
