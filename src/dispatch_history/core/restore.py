"""Restore of deleted records from their last snapshot.

A restore moves through:

    requested -> authorization checked -> inserted -> history back-filled -> restored

with early exits for not_found, unauthorized and each conflict kind. Failures
are returned as RestoreFailed values, never raised, so callers branch on
the outcome kind.

The re-insert is an ordinary audited insert carrying audit_action=RESTORE.
The capture hook records it as a restore entry without a before snapshot, and
the orchestrator then back-fills that entry with the pre-deletion snapshot in
the same unit of work.
"""

import uuid
from dataclasses import dataclass
from enum import StrEnum

from dispatch_history.core.interfaces import IAuditLogRepository, ILiveRecordRepository
from dispatch_history.core.models import AuditAction
from dispatch_history.core.ownership import extract_owner
from dispatch_history.core.snapshots import apply_field_defaults
from dispatch_history.errors import ConflictError, ValidationError, storage_errors
from dispatch_history.observability import get_logger
from dispatch_history.settings import EntityTypeConfig

logger = get_logger(__name__)


class RestoreFailureKind(StrEnum):
    """Why a restore did not happen."""

    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    ALREADY_EXISTS = "already_exists"
    UNIQUE_CONFLICT = "unique_conflict"
    MISSING_REFERENCE = "missing_reference"


@dataclass(frozen=True)
class Restored:
    """The record is live again."""

    record_id: uuid.UUID


@dataclass(frozen=True)
class RestoreFailed:
    """The restore was refused.

    Attributes:
        kind: The failure category.
        entity_type: For missing_reference, the referenced entity type. For
            the other conflicts, the restored record's type.
        detail: The snapshot field involved, when known.
    """

    kind: RestoreFailureKind
    entity_type: str | None = None
    detail: str | None = None


RestoreOutcome = Restored | RestoreFailed


class RestoreOrchestrator:
    """Re-inserts a deleted record on behalf of its owner.

    Args:
        audit_log: Audit log repository on the request's session.
        live_records: Live record repository on the same session.
        entity_types: The entity type registry.
    """

    def __init__(
        self,
        audit_log: IAuditLogRepository,
        live_records: ILiveRecordRepository,
        entity_types: dict[str, EntityTypeConfig],
    ) -> None:
        self._audit_log = audit_log
        self._live_records = live_records
        self._entity_types = entity_types

    async def restore(self, entity_type: str, record_id: uuid.UUID, caller_id: uuid.UUID) -> RestoreOutcome:
        """Restore a deleted record from its most recent delete entry.

        Only the owner recorded in the pre-deletion snapshot may restore.
        Fields an older snapshot predates are filled from the entity type's
        field_defaults. A record that is live again is never overwritten.

        Args:
            entity_type: Entity type of the record.
            record_id: Identifier of the deleted record.
            caller_id: The requesting user.

        Returns:
            Restored, or RestoreFailed with the reason.

        Raises:
            ValidationError: If the entity type is unknown.
            TransientIOError: If storage fails mid-restore.
        """
        config = self._entity_types.get(entity_type)
        if config is None:
            raise ValidationError(f"Unknown entity type: {entity_type}", field="entity_type")

        with storage_errors("restore"):
            delete_entry = await self._audit_log.latest_delete(entity_type, record_id)
            if delete_entry is None or delete_entry.before_snapshot is None:
                return self._failed(RestoreFailureKind.NOT_FOUND, entity_type, record_id)

            snapshot = delete_entry.before_snapshot
            owner_id = extract_owner(snapshot, config.owner_field)
            if owner_id is None or owner_id != caller_id:
                return self._failed(RestoreFailureKind.UNAUTHORIZED, entity_type, record_id)

            payload = apply_field_defaults(snapshot, config.field_defaults)
            payload["id"] = str(record_id)
            try:
                async with self._live_records.savepoint():
                    await self._live_records.insert(
                        entity_type,
                        payload,
                        actor_id=caller_id,
                        audit_action=AuditAction.RESTORE,
                    )
            except ConflictError as exc:
                return self._failed(
                    RestoreFailureKind(exc.kind.value),
                    entity_type,
                    record_id,
                    conflict_entity_type=exc.entity_type,
                    detail=exc.field,
                )

            await self._audit_log.backfill_restore_snapshot(entity_type, record_id, caller_id, snapshot)

        logger.info("Record restored", entity_type=entity_type, record_id=str(record_id))
        return Restored(record_id=record_id)

    @staticmethod
    def _failed(
        kind: RestoreFailureKind,
        entity_type: str,
        record_id: uuid.UUID,
        conflict_entity_type: str | None = None,
        detail: str | None = None,
    ) -> RestoreFailed:
        logger.info(
            "Restore refused",
            entity_type=entity_type,
            record_id=str(record_id),
            reason=kind.value,
        )
        return RestoreFailed(kind=kind, entity_type=conflict_entity_type or entity_type, detail=detail)
