"""Abstract interfaces (Protocol classes) for dispatch-history.

Services in core/ depend on these protocols, never on the concrete adapters,
so they can be tested against mocks.

Protocols defined:
- IAuditLogRepository
- ILiveRecordRepository
- IRemoteStore
"""

import uuid
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, Protocol

from dispatch_history.core.models import AuditAction, AuditLogEntry, LiveRecord


class IAuditLogRepository(Protocol):
    """Repository contract for the append-only audit log."""

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
        """Append one immutable entry.

        Args:
            entity_type: Entity type of the affected record.
            record_id: Identifier of the affected record.
            action: The kind of change.
            actor_id: User who caused the change, if known.
            before_snapshot: State before the change.
            after_snapshot: State after the change.
            occurred_at: Override for the entry timestamp (defaults to now).

        Returns:
            The persisted entry.
        """
        ...

    async def list_for_record(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        limit: int,
        offset: int = 0,
        visible_to: tuple[uuid.UUID, str] | None = None,
    ) -> list[AuditLogEntry]:
        """List a record's entries, newest first.

        visible_to is an optional (caller_id, owner_field) prefilter; it
        narrows the rows but does not replace the per-entry authorization.
        """
        ...

    async def list_for_parent(
        self,
        entity_type: str,
        parent_field: str,
        parent_id: uuid.UUID,
        limit: int,
        offset: int = 0,
        visible_to: tuple[uuid.UUID, str] | None = None,
    ) -> list[AuditLogEntry]:
        """List entries of related records whose parent_field holds parent_id, newest first."""
        ...

    async def list_deletes(
        self,
        entity_type: str,
        limit: int,
        offset: int = 0,
        visible_to: tuple[uuid.UUID, str] | None = None,
    ) -> list[AuditLogEntry]:
        """List delete entries of one entity type, newest first, without authorization."""
        ...

    async def latest_delete(self, entity_type: str, record_id: uuid.UUID) -> AuditLogEntry | None:
        """Return the most recent delete entry of a record, if any."""
        ...

    async def backfill_restore_snapshot(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        actor_id: uuid.UUID | None,
        before_snapshot: dict[str, Any],
    ) -> AuditLogEntry:
        """Set the before snapshot of the restore entry just written for a record.

        Raises:
            NotFoundError: If no restore entry by this actor exists.
            AuditLogImmutableError: If the entry already carries a before snapshot.
        """
        ...


class ILiveRecordRepository(Protocol):
    """Repository contract for live records. Every mutation is audited."""

    async def get(self, entity_type: str, record_id: uuid.UUID) -> LiveRecord | None:
        """Return a live record, or None when absent."""
        ...

    async def insert(
        self,
        entity_type: str,
        data: dict[str, Any],
        actor_id: uuid.UUID | None,
        audit_action: AuditAction = AuditAction.INSERT,
    ) -> LiveRecord:
        """Insert a live record and audit it.

        Args:
            entity_type: Entity type of the record.
            data: The record document. Its "id" field is the record id.
            actor_id: User performing the insert.
            audit_action: INSERT, or RESTORE when re-inserting a deleted record.

        Raises:
            ConflictError: If the record exists, a natural key is taken, or a
                referenced record is not live.
        """
        ...

    async def update(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        changes: dict[str, Any],
        actor_id: uuid.UUID | None,
    ) -> LiveRecord:
        """Apply field changes to a live record and audit the effective change."""
        ...

    async def delete(self, entity_type: str, record_id: uuid.UUID, actor_id: uuid.UUID | None) -> bool:
        """Delete a live record. Returns False when it was already absent."""
        ...

    def savepoint(self) -> AbstractAsyncContextManager[Any]:
        """Open a SAVEPOINT that rolls back alone if its block raises."""
        ...


class IRemoteStore(Protocol):
    """Contract for the shared store as seen from an offline-capable client."""

    async def delete_record(self, entity_type: str, record_id: uuid.UUID) -> None:
        """Delete a record remotely. An already-absent record is success.

        Raises:
            RemoteDeleteError: If the store rejected the delete.
            TransientIOError: If the store could not be reached.
        """
        ...
