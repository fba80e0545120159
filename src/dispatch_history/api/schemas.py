"""Pydantic request and response schemas for the dispatch-history API.

All API inputs and outputs use Pydantic models, never raw dicts.

Resources:
- AuditEntry: history and recently-deleted reads
- Restore: restore outcome
- LiveRecord: audited record mutations
- Error: typed error bodies
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# AuditEntry schemas
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    """Response schema for one audit log entry."""

    id: uuid.UUID = Field(description="Audit entry UUID")
    entity_type: str = Field(description="Entity type of the affected record")
    record_id: uuid.UUID = Field(description="UUID of the affected record")
    action: str = Field(description="insert | update | delete | restore")
    occurred_at: datetime = Field(description="Mutation timestamp (UTC)")
    actor_id: uuid.UUID | None = Field(description="User who made the change, if known")
    before_snapshot: dict[str, Any] | None = Field(description="Record state before the change")
    after_snapshot: dict[str, Any] | None = Field(description="Record state after the change")
    changed_fields: list[str] = Field(
        default_factory=list,
        description="User-visible fields an update changed",
    )
    display_title: str = Field(description="Short title of the record, from its snapshot")
    summary: str = Field(description="One-sentence description of the change")


# ---------------------------------------------------------------------------
# Restore schemas
# ---------------------------------------------------------------------------


class RestoreResponse(BaseModel):
    """Response schema for a successful restore."""

    record_id: uuid.UUID = Field(description="UUID of the restored record")


# ---------------------------------------------------------------------------
# LiveRecord schemas
# ---------------------------------------------------------------------------


class RecordCreateRequest(BaseModel):
    """Request body for inserting a live record."""

    data: dict[str, Any] = Field(
        description="The record document. An 'id' field is generated when absent.",
    )


class RecordUpdateRequest(BaseModel):
    """Request body for updating a live record."""

    changes: dict[str, Any] = Field(
        description="Fields to set. Omitted fields keep their values.",
    )


class RecordResponse(BaseModel):
    """Response schema for a live record."""

    entity_type: str = Field(description="Entity type of the record")
    id: uuid.UUID = Field(description="Record UUID")
    data: dict[str, Any] = Field(description="The record document")
    created_at: datetime = Field(description="Insert timestamp (UTC)")
    updated_at: datetime = Field(description="Last update timestamp (UTC)")


# ---------------------------------------------------------------------------
# Error and health schemas
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Typed error body returned for every handled failure."""

    error_code: str = Field(description="Stable machine-readable code")
    message: str = Field(description="Human-readable description")
    entity_type: str | None = Field(default=None, description="Entity type involved in a conflict")
    field: str | None = Field(default=None, description="Snapshot field involved in a conflict")


class HealthResponse(BaseModel):
    """Response schema for the health check."""

    status: str = Field(description="ok | degraded")
    database: bool = Field(description="Whether the shared store answered")
