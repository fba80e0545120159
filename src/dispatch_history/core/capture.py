"""Change capture hook.

Every mutation of a live record passes through ChangeCaptureHook.capture()
in the mutation's own session, so the record change and its audit entry are
committed or rolled back together.

The restore marker is an explicit argument of the insert call that needs it.
There is no session-wide or process-wide "next insert is a restore" flag.
"""

import uuid
from typing import Any

from dispatch_history.core.interfaces import IAuditLogRepository
from dispatch_history.core.models import AuditAction, AuditLogEntry
from dispatch_history.core.snapshots import diff_snapshots
from dispatch_history.observability import get_logger

logger = get_logger(__name__)

_INSERT_OVERRIDES = frozenset({AuditAction.INSERT, AuditAction.RESTORE})


class ChangeCaptureHook:
    """Writes exactly one audit entry per effective mutation.

    Args:
        audit_log: Audit log repository bound to the mutation's session.
    """

    def __init__(self, audit_log: IAuditLogRepository) -> None:
        self._audit_log = audit_log

    async def capture(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        action: AuditAction,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        actor_id: uuid.UUID | None,
        override: AuditAction | str | None = None,
    ) -> AuditLogEntry | None:
        """Record one mutation.

        Args:
            entity_type: Entity type of the mutated record.
            record_id: Identifier of the mutated record.
            action: INSERT, UPDATE or DELETE.
            before: State before the mutation (ignored for inserts).
            after: State after the mutation (ignored for deletes).
            actor_id: User who caused the mutation.
            override: For inserts only, the action to record instead of
                INSERT. Only INSERT and RESTORE are accepted; anything else
                falls back to INSERT.

        Returns:
            The written entry, or None for an update that changed nothing.

        Raises:
            ValueError: If action is not INSERT, UPDATE or DELETE.
        """
        if action == AuditAction.INSERT:
            effective = self._resolve_insert_action(override, entity_type, record_id)
            return await self._audit_log.append(entity_type, record_id, effective, actor_id, None, after)

        if action == AuditAction.UPDATE:
            changed = diff_snapshots(before, after)
            if not changed:
                logger.debug("No-op update not audited", entity_type=entity_type, record_id=str(record_id))
                return None
            return await self._audit_log.append(entity_type, record_id, AuditAction.UPDATE, actor_id, before, after)

        if action == AuditAction.DELETE:
            return await self._audit_log.append(entity_type, record_id, AuditAction.DELETE, actor_id, before, None)

        raise ValueError(f"Cannot capture mutation of kind {action!r}")

    @staticmethod
    def _resolve_insert_action(
        override: AuditAction | str | None,
        entity_type: str,
        record_id: uuid.UUID,
    ) -> AuditAction:
        if override is None:
            return AuditAction.INSERT
        if override in _INSERT_OVERRIDES:
            return AuditAction(override)
        logger.warning(
            "Ignoring unsupported insert audit override",
            override=str(override),
            entity_type=entity_type,
            record_id=str(record_id),
        )
        return AuditAction.INSERT
