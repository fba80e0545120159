"""Authorized reads over the audit log.

Services:
- HistoryQueryService: every visible entry of one record, newest first, and
  the combined history of a record with its assignments or notes
- RecentlyDeletedQueryService: visible delete entries across one or all types

Authorization is evaluated per entry from the stored actor and snapshots, so
the history of a deleted record stays readable by its owner. Entries the
caller may not see are dropped silently; the query itself never fails on
them.
"""

import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime

from dispatch_history.core.interfaces import IAuditLogRepository
from dispatch_history.core.models import AuditLogEntry
from dispatch_history.core.ownership import is_entry_visible
from dispatch_history.errors import ValidationError, storage_errors
from dispatch_history.observability import get_logger
from dispatch_history.settings import EntityTypeConfig

logger = get_logger(__name__)

PageFetcher = Callable[[int, int], Awaitable[list[AuditLogEntry]]]


def newest_first_key(entry: AuditLogEntry) -> tuple[datetime, int]:
    """Sort key matching the audit log's newest-first order (use with reverse=True)."""
    return entry.occurred_at, entry.sequence or 0


def _config_for(entity_types: dict[str, EntityTypeConfig], entity_type: str) -> EntityTypeConfig:
    config = entity_types.get(entity_type)
    if config is None:
        raise ValidationError(f"Unknown entity type: {entity_type}", field="entity_type")
    return config


async def _collect_visible(
    fetch_page: PageFetcher,
    caller_id: uuid.UUID,
    owner_field: str,
    limit: int,
) -> list[AuditLogEntry]:
    """Scan pages newest first until limit visible entries are found or rows run out.

    Pages arrive prefiltered in SQL, so a scan touches about limit rows. The
    per-entry check stays authoritative.
    """
    visible: list[AuditLogEntry] = []
    offset = 0
    while len(visible) < limit:
        page = await fetch_page(limit, offset)
        visible.extend(entry for entry in page if is_entry_visible(entry, caller_id, owner_field))
        if len(page) < limit:
            break
        offset += limit
    return visible[:limit]


class HistoryQueryService:
    """Reads the change history of one record.

    Args:
        audit_log: Audit log repository.
        entity_types: The entity type registry.
    """

    def __init__(self, audit_log: IAuditLogRepository, entity_types: dict[str, EntityTypeConfig]) -> None:
        self._audit_log = audit_log
        self._entity_types = entity_types

    async def get_history(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        limit: int,
        caller_id: uuid.UUID,
    ) -> list[AuditLogEntry]:
        """Return up to limit entries of a record visible to the caller.

        An entry is visible if the caller made the change or owns the record
        according to the entry's before or after snapshot.

        Args:
            entity_type: Entity type of the record.
            record_id: Identifier of the record. It need not be live.
            limit: Maximum number of entries.
            caller_id: The requesting user.

        Returns:
            Visible entries, newest first.

        Raises:
            ValidationError: If the entity type is unknown.
            TransientIOError: If the audit log cannot be read.
        """
        config = _config_for(self._entity_types, entity_type)
        if limit <= 0:
            return []

        async def fetch_page(page_size: int, offset: int) -> list[AuditLogEntry]:
            return await self._audit_log.list_for_record(
                entity_type,
                record_id,
                limit=page_size,
                offset=offset,
                visible_to=(caller_id, config.owner_field),
            )

        with storage_errors("get_history"):
            entries = await _collect_visible(fetch_page, caller_id, config.owner_field, limit)

        logger.info(
            "History read",
            entity_type=entity_type,
            record_id=str(record_id),
            returned=len(entries),
        )
        return entries

    async def get_combined_history(
        self,
        entity_type: str,
        record_id: uuid.UUID,
        limit: int,
        caller_id: uuid.UUID,
    ) -> list[AuditLogEntry]:
        """Return a record's history merged with the history of its related records.

        Tasks and activities are merged with their assignments, listings and
        properties with their notes, as configured in each type's related
        mapping. Every source contributes up to limit visible entries; the
        union is sorted newest first and cut to limit. Related entries are
        authorized with the related type's own owner field.

        Args:
            entity_type: Entity type of the parent record.
            record_id: Identifier of the parent record. It need not be live.
            limit: Maximum number of entries.
            caller_id: The requesting user.

        Returns:
            Visible entries from all sources, newest first.

        Raises:
            ValidationError: If the entity type, or a related type, is unknown.
            TransientIOError: If the audit log cannot be read.
        """
        config = _config_for(self._entity_types, entity_type)
        related = {
            related_type: (_config_for(self._entity_types, related_type), parent_field)
            for related_type, parent_field in config.related.items()
        }
        if limit <= 0:
            return []

        entries = await self.get_history(entity_type, record_id, limit, caller_id)
        with storage_errors("get_combined_history"):
            for related_type, (related_config, parent_field) in related.items():
                entries.extend(
                    await _collect_visible(
                        self._related_pages(related_type, parent_field, record_id, caller_id, related_config),
                        caller_id,
                        related_config.owner_field,
                        limit,
                    )
                )
        entries.sort(key=newest_first_key, reverse=True)
        logger.info(
            "Combined history read",
            entity_type=entity_type,
            record_id=str(record_id),
            related_types=list(related),
        )
        return entries[:limit]

    def _related_pages(
        self,
        related_type: str,
        parent_field: str,
        parent_id: uuid.UUID,
        caller_id: uuid.UUID,
        related_config: EntityTypeConfig,
    ) -> PageFetcher:
        async def fetch_page(page_size: int, offset: int) -> list[AuditLogEntry]:
            return await self._audit_log.list_for_parent(
                related_type,
                parent_field,
                parent_id,
                limit=page_size,
                offset=offset,
                visible_to=(caller_id, related_config.owner_field),
            )

        return fetch_page


class RecentlyDeletedQueryService:
    """Reads recently deleted records a caller may restore or inspect.

    For a query across all types each type contributes at most
    per_source_limit candidates (the requested limit when unset) before the
    global merge. A type holding more than its window of the most recent
    deletes is truncated to that window.

    Args:
        audit_log: Audit log repository.
        entity_types: The entity type registry.
        per_source_limit: Optional fixed pre-limit per entity type.
    """

    def __init__(
        self,
        audit_log: IAuditLogRepository,
        entity_types: dict[str, EntityTypeConfig],
        per_source_limit: int | None = None,
    ) -> None:
        self._audit_log = audit_log
        self._entity_types = entity_types
        self._per_source_limit = per_source_limit

    async def get_recently_deleted(
        self,
        entity_type: str | None,
        limit: int,
        caller_id: uuid.UUID,
    ) -> list[AuditLogEntry]:
        """Return up to limit visible delete entries, newest first.

        Args:
            entity_type: One entity type, or None for every configured type.
            limit: Maximum number of entries.
            caller_id: The requesting user.

        Returns:
            Visible delete entries ordered by occurred_at descending.

        Raises:
            ValidationError: If the entity type is unknown.
            TransientIOError: If the audit log cannot be read.
        """
        sources = (
            {entity_type: _config_for(self._entity_types, entity_type)}
            if entity_type is not None
            else self._entity_types
        )
        if limit <= 0:
            return []

        window = limit if entity_type is not None else (self._per_source_limit or limit)
        candidates: list[AuditLogEntry] = []
        with storage_errors("get_recently_deleted"):
            for source_type, source_config in sources.items():
                candidates.extend(await self._visible_deletes(source_type, source_config, window, caller_id))
        candidates.sort(key=newest_first_key, reverse=True)
        entries = candidates[:limit]

        logger.info(
            "Recently deleted read",
            entity_type=entity_type or "all",
            returned=len(entries),
        )
        return entries

    async def _visible_deletes(
        self,
        entity_type: str,
        config: EntityTypeConfig,
        limit: int,
        caller_id: uuid.UUID,
    ) -> list[AuditLogEntry]:
        async def fetch_page(page_size: int, offset: int) -> list[AuditLogEntry]:
            return await self._audit_log.list_deletes(
                entity_type,
                limit=page_size,
                offset=offset,
                visible_to=(caller_id, config.owner_field),
            )

        return await _collect_visible(fetch_page, caller_id, config.owner_field, limit)
