"""Repository for live records in the shared store.

Every mutation method calls the change capture hook in the same session
before returning, so there is no way to change a live record here without
writing its audit entry.
"""

import uuid
from collections.abc import Collection
from contextlib import AbstractAsyncContextManager
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_history.adapters.audit_log import AuditLogRepository
from dispatch_history.core.capture import ChangeCaptureHook
from dispatch_history.core.models import AuditAction, LiveRecord, utcnow
from dispatch_history.core.snapshots import to_snapshot
from dispatch_history.errors import ConflictError, ConflictKind, NotFoundError, ValidationError
from dispatch_history.observability import get_logger
from dispatch_history.settings import EntityTypeConfig

logger = get_logger(__name__)


class LiveRecordRepository:
    """Audited CRUD over the live_records table.

    Conflicts on insert are detected explicitly, in this order: the record
    already exists, a referenced record is not live, the natural key is taken.
    A concurrent writer that slips past the checks loses on the primary key
    and is reported as ALREADY_EXISTS.

    Args:
        session: The unit-of-work session.
        entity_types: The entity type registry.
        capture_hook: Hook writing audit entries. Defaults to one bound to
            an AuditLogRepository on the same session.
    """

    def __init__(
        self,
        session: AsyncSession,
        entity_types: dict[str, EntityTypeConfig],
        capture_hook: ChangeCaptureHook | None = None,
    ) -> None:
        self._session = session
        self._entity_types = entity_types
        self._capture = capture_hook or ChangeCaptureHook(AuditLogRepository(session))

    def savepoint(self) -> AbstractAsyncContextManager[Any]:
        """Open a SAVEPOINT on the session. A failing block rolls back alone."""
        return self._session.begin_nested()

    async def get(self, entity_type: str, record_id: uuid.UUID) -> LiveRecord | None:
        """Return a live record, or None when absent."""
        return await self._session.get(LiveRecord, (entity_type, record_id))

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
            data: The record document. A missing "id" is generated.
            actor_id: User performing the insert.
            audit_action: Recorded action, INSERT or RESTORE.

        Returns:
            The new LiveRecord.

        Raises:
            ValidationError: If the entity type is unknown or the id is malformed.
            ConflictError: If the insert collides with live state.
        """
        config = self._config_for(entity_type)
        document = to_snapshot(data)
        record_id = _parse_record_id(document.get("id")) if "id" in document else uuid.uuid4()
        document["id"] = str(record_id)

        if await self.get(entity_type, record_id) is not None:
            raise ConflictError(ConflictKind.ALREADY_EXISTS, entity_type=entity_type)
        await self._check_references(config, document, document.keys())
        natural_key = _natural_key(config, document)
        if natural_key is not None:
            await self._check_natural_key(entity_type, config, natural_key, exclude_id=None)

        now = utcnow()
        record = LiveRecord(
            entity_type=entity_type,
            id=record_id,
            data=document,
            natural_key=natural_key,
            created_at=now,
            updated_at=now,
        )
        self._session.add(record)
        try:
            await self._session.flush()
        except IntegrityError as exc:
            logger.info("Insert lost a concurrent race", entity_type=entity_type, record_id=str(record_id))
            raise ConflictError(ConflictKind.ALREADY_EXISTS, entity_type=entity_type) from exc

        await self._capture.capture(
            entity_type,
            record_id,
            AuditAction.INSERT,
            before=None,
            after=to_snapshot(document),
            actor_id=actor_id,
            override=audit_action,
        )
        return record

    async def update(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        changes: dict[str, Any],
        actor_id: uuid.UUID | None,
    ) -> LiveRecord:
        """Apply field changes to a live record.

        An update that changes nothing is not audited.

        Raises:
            NotFoundError: If the record is not live.
            ValidationError: If the changes try to alter the record id.
            ConflictError: If a changed reference or natural key collides.
        """
        config = self._config_for(entity_type)
        record = await self.get(entity_type, record_id)
        if record is None:
            raise NotFoundError(resource=entity_type, resource_id=str(record_id))

        patch = to_snapshot(changes)
        if "id" in patch and patch["id"] != str(record_id):
            raise ValidationError("The record id cannot be changed", field="id")

        before = to_snapshot(record.data)
        after = {**before, **patch}
        await self._check_references(config, after, patch.keys())
        natural_key = _natural_key(config, after)
        if natural_key is not None and natural_key != record.natural_key:
            await self._check_natural_key(entity_type, config, natural_key, exclude_id=record_id)

        record.data = after
        record.natural_key = natural_key
        record.updated_at = utcnow()
        await self._session.flush()

        await self._capture.capture(
            entity_type,
            record_id,
            AuditAction.UPDATE,
            before=before,
            after=to_snapshot(after),
            actor_id=actor_id,
        )
        return record

    async def delete(self, entity_type: str, record_id: uuid.UUID, actor_id: uuid.UUID | None) -> bool:
        """Delete a live record.

        Returns:
            True if a record was deleted, False if it was already absent. An
            absent record writes no audit entry.
        """
        self._config_for(entity_type)
        record = await self.get(entity_type, record_id)
        if record is None:
            return False

        before = to_snapshot(record.data)
        await self._session.delete(record)
        await self._session.flush()

        await self._capture.capture(
            entity_type,
            record_id,
            AuditAction.DELETE,
            before=before,
            after=None,
            actor_id=actor_id,
        )
        return True

    def _config_for(self, entity_type: str) -> EntityTypeConfig:
        config = self._entity_types.get(entity_type)
        if config is None:
            raise ValidationError(f"Unknown entity type: {entity_type}", field="entity_type")
        return config

    async def _check_references(
        self,
        config: EntityTypeConfig,
        document: dict[str, Any],
        fields: Collection[str],
    ) -> None:
        for field, referenced_type in config.references.items():
            if field not in fields:
                continue
            value = document.get(field)
            if value is None:
                continue
            try:
                referenced_id = uuid.UUID(str(value))
            except ValueError:
                raise ConflictError(ConflictKind.MISSING_REFERENCE, entity_type=referenced_type, field=field) from None
            if await self.get(referenced_type, referenced_id) is None:
                raise ConflictError(ConflictKind.MISSING_REFERENCE, entity_type=referenced_type, field=field)

    async def _check_natural_key(
        self,
        entity_type: str,
        config: EntityTypeConfig,
        natural_key: str,
        exclude_id: uuid.UUID | None,
    ) -> None:
        stmt = select(LiveRecord.id).where(
            LiveRecord.entity_type == entity_type,
            LiveRecord.natural_key == natural_key,
        )
        if exclude_id is not None:
            stmt = stmt.where(LiveRecord.id != exclude_id)
        result = await self._session.execute(stmt.limit(1))
        if result.scalar_one_or_none() is not None:
            raise ConflictError(ConflictKind.UNIQUE_CONFLICT, entity_type=entity_type, field=config.natural_key_field)


def _parse_record_id(value: Any) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError("Record id must be a UUID", field="id") from None


def _natural_key(config: EntityTypeConfig, document: dict[str, Any]) -> str | None:
    if config.natural_key_field is None:
        return None
    value = document.get(config.natural_key_field)
    return None if value is None else str(value)
