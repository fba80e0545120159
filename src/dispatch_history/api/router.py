"""API router for dispatch-history.

All endpoints are registered here and included in main.py under the /api/v1
prefix. Routes are thin; the logic lives in core/ and adapters/.

Endpoints:
- GET     /history/{entity_type}/{record_id}   change history of one record
- GET     /history/{entity_type}/{record_id}/combined   with assignments or notes
- GET     /recently-deleted                    deleted records the caller may see
- POST    /restore/{entity_type}/{record_id}   restore a deleted record
- POST    /records/{entity_type}               insert a live record
- PATCH   /records/{entity_type}/{record_id}   update a live record
- DELETE  /records/{entity_type}/{record_id}   delete a live record (idempotent)
"""

import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch_history.adapters.audit_log import AuditLogRepository
from dispatch_history.adapters.live_records import LiveRecordRepository
from dispatch_history.api.schemas import (
    AuditEntryResponse,
    ErrorResponse,
    RecordCreateRequest,
    RecordResponse,
    RecordUpdateRequest,
    RestoreResponse,
)
from dispatch_history.auth import CallerContext, get_current_caller
from dispatch_history.core.history import HistoryQueryService, RecentlyDeletedQueryService
from dispatch_history.core.models import AuditLogEntry, LiveRecord
from dispatch_history.core.ownership import extract_owner
from dispatch_history.core.restore import RestoreFailed, RestoreFailureKind, RestoreOrchestrator
from dispatch_history.core.summaries import build_summary, changed_fields, display_title
from dispatch_history.database import get_db_session
from dispatch_history.errors import (
    ConflictError,
    ConflictKind,
    DispatchHistoryError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
    storage_errors,
)
from dispatch_history.observability import get_logger
from dispatch_history.settings import EntityTypeConfig, Settings, get_settings

logger = get_logger(__name__)

router = APIRouter(tags=["history"])

UNKNOWN_ACTOR_NAME = "Someone"

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    401: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# Dependency factories: wire repositories and services together
# ---------------------------------------------------------------------------


def get_audit_log(session: Annotated[AsyncSession, Depends(get_db_session)]) -> AuditLogRepository:
    return AuditLogRepository(session)


def get_live_records(
    session: Annotated[AsyncSession, Depends(get_db_session)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> LiveRecordRepository:
    return LiveRecordRepository(session, settings.entity_types)


def get_history_service(
    audit_log: Annotated[AuditLogRepository, Depends(get_audit_log)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> HistoryQueryService:
    return HistoryQueryService(audit_log, settings.entity_types)


def get_recently_deleted_service(
    audit_log: Annotated[AuditLogRepository, Depends(get_audit_log)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> RecentlyDeletedQueryService:
    return RecentlyDeletedQueryService(
        audit_log,
        settings.entity_types,
        per_source_limit=settings.recently_deleted_per_source_limit,
    )


def get_restore_orchestrator(
    audit_log: Annotated[AuditLogRepository, Depends(get_audit_log)],
    live_records: Annotated[LiveRecordRepository, Depends(get_live_records)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> RestoreOrchestrator:
    """Construct RestoreOrchestrator on the request's unit of work.

    The audit log and live record repositories share one session, so the
    re-insert, its restore entry and the back-fill commit together.
    """
    return RestoreOrchestrator(audit_log, live_records, settings.entity_types)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _entity_config(settings: Settings, entity_type: str) -> EntityTypeConfig:
    config = settings.entity_types.get(entity_type)
    if config is None:
        raise ValidationError(f"Unknown entity type: {entity_type}", field="entity_type")
    return config


def _clamp_limit(requested: int | None, default: int, maximum: int) -> int:
    return min(requested or default, maximum)


async def _resolve_user_names(
    entries: list[AuditLogEntry],
    live_records: LiveRecordRepository,
    settings: Settings,
) -> dict[uuid.UUID, str]:
    """Look up display names of actors and assignees from live user records."""
    if "user" not in settings.entity_types:
        return {}
    user_ids: set[uuid.UUID] = set()
    for entry in entries:
        if entry.actor_id is not None:
            user_ids.add(entry.actor_id)
        if entry.entity_type.endswith("_assignee"):
            assignee = extract_owner(entry.after_snapshot or entry.before_snapshot, "user_id")
            if assignee is not None:
                user_ids.add(assignee)

    names: dict[uuid.UUID, str] = {}
    for user_id in user_ids:
        user = await live_records.get("user", user_id)
        name = user.data.get("name") if user is not None else None
        if isinstance(name, str) and name:
            names[user_id] = name
    return names


async def _to_entry_responses(
    entries: list[AuditLogEntry],
    live_records: LiveRecordRepository,
    settings: Settings,
) -> list[AuditEntryResponse]:
    with storage_errors("resolve_user_names"):
        names = await _resolve_user_names(entries, live_records, settings)
    responses = []
    for entry in entries:
        config = settings.entity_types[entry.entity_type]
        actor_name = names.get(entry.actor_id, UNKNOWN_ACTOR_NAME) if entry.actor_id else UNKNOWN_ACTOR_NAME
        responses.append(
            AuditEntryResponse(
                id=entry.id,
                entity_type=entry.entity_type,
                record_id=entry.record_id,
                action=entry.action,
                occurred_at=entry.occurred_at,
                actor_id=entry.actor_id,
                before_snapshot=entry.before_snapshot,
                after_snapshot=entry.after_snapshot,
                changed_fields=changed_fields(entry),
                display_title=display_title(entry, config),
                summary=build_summary(entry, actor_name, config, user_lookup=names.get),
            )
        )
    return responses


def _record_response(record: LiveRecord) -> RecordResponse:
    return RecordResponse(
        entity_type=record.entity_type,
        id=record.id,
        data=record.data,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _restore_error(entity_type: str, record_id: uuid.UUID, failure: RestoreFailed) -> DispatchHistoryError:
    """Map a refused restore onto the error the API responds with."""
    if failure.kind is RestoreFailureKind.NOT_FOUND:
        return NotFoundError(
            resource=f"Deleted {entity_type}",
            resource_id=str(record_id),
            message="No deleted record found to restore",
        )
    if failure.kind is RestoreFailureKind.UNAUTHORIZED:
        return UnauthorizedError("You are not authorized to restore this item")
    if failure.kind is RestoreFailureKind.ALREADY_EXISTS:
        return ConflictError(
            ConflictKind.ALREADY_EXISTS,
            entity_type=failure.entity_type,
            message="This item already exists and cannot be restored",
        )
    if failure.kind is RestoreFailureKind.MISSING_REFERENCE:
        return ConflictError(
            ConflictKind.MISSING_REFERENCE,
            entity_type=failure.entity_type,
            field=failure.detail,
            message=f"Cannot restore - the {failure.entity_type or 'related item'} this was linked to no longer exists",
        )
    return ConflictError(
        ConflictKind.UNIQUE_CONFLICT,
        entity_type=failure.entity_type,
        field=failure.detail,
        message=f"Cannot restore - a record with this {failure.detail or 'field'} already exists",
    )


# ---------------------------------------------------------------------------
# History endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/history/{entity_type}/{record_id}",
    response_model=list[AuditEntryResponse],
    responses=_ERROR_RESPONSES,
)
async def get_entity_history(
    entity_type: str,
    record_id: uuid.UUID,
    caller: Annotated[CallerContext, Depends(get_current_caller)],
    service: Annotated[HistoryQueryService, Depends(get_history_service)],
    live_records: Annotated[LiveRecordRepository, Depends(get_live_records)],
    settings: Annotated[Settings, Depends(get_settings)],
    limit: int | None = Query(default=None, ge=1, description="Maximum entries; clamped to the configured maximum"),
) -> list[AuditEntryResponse]:
    """Return the change history of a record, newest first.

    Works for deleted records too. Entries the caller may not see are left
    out without an error.

    Args:
        entity_type: Entity type of the record.
        record_id: Record UUID.
        caller: Caller identity from the X-Caller-Id header.
        service: Injected HistoryQueryService.
        live_records: Used to resolve display names.
        settings: Service settings.
        limit: Maximum number of entries.

    Returns:
        Visible audit entries.
    """
    _entity_config(settings, entity_type)
    effective_limit = _clamp_limit(limit, settings.history_default_limit, settings.history_max_limit)
    entries = await service.get_history(entity_type, record_id, effective_limit, caller.user_id)
    return await _to_entry_responses(entries, live_records, settings)


@router.get(
    "/history/{entity_type}/{record_id}/combined",
    response_model=list[AuditEntryResponse],
    responses=_ERROR_RESPONSES,
)
async def get_combined_entity_history(
    entity_type: str,
    record_id: uuid.UUID,
    caller: Annotated[CallerContext, Depends(get_current_caller)],
    service: Annotated[HistoryQueryService, Depends(get_history_service)],
    live_records: Annotated[LiveRecordRepository, Depends(get_live_records)],
    settings: Annotated[Settings, Depends(get_settings)],
    limit: int | None = Query(default=None, ge=1, description="Maximum entries; clamped to the configured maximum"),
) -> list[AuditEntryResponse]:
    """Return a record's history together with its assignments or notes, newest first."""
    _entity_config(settings, entity_type)
    effective_limit = _clamp_limit(limit, settings.history_default_limit, settings.history_max_limit)
    entries = await service.get_combined_history(entity_type, record_id, effective_limit, caller.user_id)
    return await _to_entry_responses(entries, live_records, settings)


@router.get("/recently-deleted", response_model=list[AuditEntryResponse], responses=_ERROR_RESPONSES)
async def get_recently_deleted(
    caller: Annotated[CallerContext, Depends(get_current_caller)],
    service: Annotated[RecentlyDeletedQueryService, Depends(get_recently_deleted_service)],
    live_records: Annotated[LiveRecordRepository, Depends(get_live_records)],
    settings: Annotated[Settings, Depends(get_settings)],
    entity_type: str | None = Query(default=None, description="Restrict to one entity type; omit for all"),
    limit: int | None = Query(default=None, ge=1, description="Maximum entries; clamped to the configured maximum"),
) -> list[AuditEntryResponse]:
    """Return recently deleted records the caller may see, newest first.

    Args:
        caller: Caller identity from the X-Caller-Id header.
        service: Injected RecentlyDeletedQueryService.
        live_records: Used to resolve display names.
        settings: Service settings.
        entity_type: Optional entity type filter.
        limit: Maximum number of entries.

    Returns:
        Visible delete entries.
    """
    if entity_type is not None:
        _entity_config(settings, entity_type)
    effective_limit = _clamp_limit(
        limit,
        settings.recently_deleted_default_limit,
        settings.recently_deleted_max_limit,
    )
    entries = await service.get_recently_deleted(entity_type, effective_limit, caller.user_id)
    return await _to_entry_responses(entries, live_records, settings)


@router.post(
    "/restore/{entity_type}/{record_id}",
    response_model=RestoreResponse,
    responses={
        **_ERROR_RESPONSES,
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def restore_entity(
    entity_type: str,
    record_id: uuid.UUID,
    caller: Annotated[CallerContext, Depends(get_current_caller)],
    orchestrator: Annotated[RestoreOrchestrator, Depends(get_restore_orchestrator)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> RestoreResponse:
    """Restore a deleted record from its last snapshot.

    Only the owner recorded in the deleted snapshot may restore it. A record
    that is live again is never overwritten.

    Args:
        entity_type: Entity type of the record.
        record_id: Record UUID.
        caller: Caller identity from the X-Caller-Id header.
        orchestrator: Injected RestoreOrchestrator.
        settings: Service settings.

    Returns:
        The restored record's id.

    Raises:
        NotFoundError: No delete entry exists (404).
        UnauthorizedError: The caller does not own the record (403).
        ConflictError: The record exists, a natural key is taken or a
            referenced record is gone (409).
    """
    _entity_config(settings, entity_type)
    outcome = await orchestrator.restore(entity_type, record_id, caller.user_id)
    if isinstance(outcome, RestoreFailed):
        raise _restore_error(entity_type, record_id, outcome)
    return RestoreResponse(record_id=outcome.record_id)


# ---------------------------------------------------------------------------
# Live record endpoints (every write passes through the change capture hook)
# ---------------------------------------------------------------------------


@router.post(
    "/records/{entity_type}",
    response_model=RecordResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**_ERROR_RESPONSES, 409: {"model": ErrorResponse}},
)
async def create_record(
    entity_type: str,
    request: RecordCreateRequest,
    caller: Annotated[CallerContext, Depends(get_current_caller)],
    live_records: Annotated[LiveRecordRepository, Depends(get_live_records)],
) -> RecordResponse:
    """Insert a live record on behalf of the caller."""
    with storage_errors("create_record"):
        record = await live_records.insert(entity_type, request.data, actor_id=caller.user_id)
    return _record_response(record)


@router.patch(
    "/records/{entity_type}/{record_id}",
    response_model=RecordResponse,
    responses={**_ERROR_RESPONSES, 404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def update_record(
    entity_type: str,
    record_id: uuid.UUID,
    request: RecordUpdateRequest,
    caller: Annotated[CallerContext, Depends(get_current_caller)],
    live_records: Annotated[LiveRecordRepository, Depends(get_live_records)],
) -> RecordResponse:
    """Apply field changes to a live record. A no-op change is not audited."""
    with storage_errors("update_record"):
        record = await live_records.update(entity_type, record_id, request.changes, actor_id=caller.user_id)
    return _record_response(record)


@router.delete(
    "/records/{entity_type}/{record_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_ERROR_RESPONSES,
)
async def delete_record(
    entity_type: str,
    record_id: uuid.UUID,
    caller: Annotated[CallerContext, Depends(get_current_caller)],
    live_records: Annotated[LiveRecordRepository, Depends(get_live_records)],
) -> Response:
    """Delete a live record.

    Idempotent: responds 204 whether or not the record was live, which is
    what lets the tombstone drain loop retry safely.
    """
    with storage_errors("delete_record"):
        deleted = await live_records.delete(entity_type, record_id, actor_id=caller.user_id)
    if not deleted:
        logger.info("Delete of absent record ignored", entity_type=entity_type, record_id=str(record_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
