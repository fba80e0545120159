"""SQLAlchemy ORM models for the shared store.

Models:
- AuditLogEntry: IMMUTABLE change log, one row per mutation of one record
- LiveRecord: the live (non-deleted) records the change capture hook watches

Both tables live in the same database so that a mutation and its audit entry
commit in one transaction. The audit log is partitioned logically by
entity_type: one table keyed by (entity_type, record_id) with compound
indexes, rather than one table per type.

IMPORTANT: AuditLogEntry rows are written ONLY by ChangeCaptureHook through
AuditLogRepository.append(). The single sanctioned mutation is the restore
back-fill in AuditLogRepository.backfill_restore_snapshot().
"""

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, BigInteger, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from dispatch_history.database import Base, UTCDateTime

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests and on clients)
SnapshotType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


class AuditAction(StrEnum):
    """The kind of change an audit entry records."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    RESTORE = "restore"


class AuditLogEntry(Base):
    """Immutable record of a single change to a single record.

    This table has NO UPDATE or DELETE path except the restore back-fill.
    Retention is an external policy; the core never removes rows.

    Attributes:
        sequence: Monotonic insertion order. Breaks ties between entries with
            the same occurred_at.
        id: Unique identifier of the log entry itself.
        entity_type: Discriminator selecting the ownership-field mapping.
        record_id: Identifier of the affected record.
        action: insert | update | delete | restore.
        occurred_at: When the mutation happened (UTC).
        actor_id: User who caused the change. Nullable and deliberately NOT a
            foreign key, so removing an account never blocks writing history.
        before_snapshot: Full record state before the change. None for insert.
        after_snapshot: Full record state after the change. None for delete.
    """

    __tablename__ = "audit_log_entries"
    __table_args__ = (
        Index("ix_audit_log_entity_record_time", "entity_type", "record_id", "occurred_at"),
        Index("ix_audit_log_entity_action_time", "entity_type", "action", "occurred_at"),
    )

    # INTEGER PRIMARY KEY is the autoincrementing rowid on SQLite
    sequence: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Entity type discriminator: listing | task | note | ...",
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        nullable=False,
        comment="Identifier of the affected record",
    )
    action: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="insert | update | delete | restore",
    )
    occurred_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="Mutation timestamp (UTC)",
    )
    actor_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        nullable=True,
        comment="User who caused the change; NULL for system changes. Not a foreign key.",
    )
    before_snapshot: Mapped[dict[str, Any] | None] = mapped_column(
        SnapshotType,
        nullable=True,
        comment="Record state before the change. NULL for insert.",
    )
    after_snapshot: Mapped[dict[str, Any] | None] = mapped_column(
        SnapshotType,
        nullable=True,
        comment="Record state after the change. NULL for delete.",
    )

    def __repr__(self) -> str:
        return (
            f"AuditLogEntry(id={self.id}, entity_type={self.entity_type!r}, "
            f"record_id={self.record_id}, action={self.action!r})"
        )


class LiveRecord(Base):
    """A live record in the shared store.

    The record body is a semi-structured document; the columns outside it
    exist for the constraints the core relies on.

    Attributes:
        entity_type: Entity type of the record.
        id: Record identifier, unique within its entity type.
        data: The full record document (the value snapshots copy).
        natural_key: Value of the entity type's natural key field, if any.
            Unique per entity type.
        created_at: Insert time (UTC).
        updated_at: Last update time (UTC).
    """

    __tablename__ = "live_records"
    __table_args__ = (
        UniqueConstraint("entity_type", "natural_key", name="uq_live_records_natural_key"),
    )

    entity_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    data: Mapped[dict[str, Any]] = mapped_column(SnapshotType, nullable=False)
    natural_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
