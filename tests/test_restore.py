"""Tests for RestoreOrchestrator.

Runs against a real in-memory SQLite shared store: the live record
repository, its capture hook and the audit log share one session, as they do
inside a request.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_history.adapters.audit_log import AuditLogRepository
from dispatch_history.adapters.live_records import LiveRecordRepository
from dispatch_history.core.models import AuditAction
from dispatch_history.core.restore import (
    Restored,
    RestoreFailed,
    RestoreFailureKind,
    RestoreOrchestrator,
    RestoreOutcome,
)
from dispatch_history.database import Base, build_engine
from dispatch_history.errors import TransientIOError, ValidationError
from dispatch_history.settings import EntityTypeConfig
from tests.conftest import make_listing, make_task, make_user


@pytest.fixture()
def orchestrator(
    audit_log: AuditLogRepository,
    live_records: LiveRecordRepository,
    entity_types: dict[str, EntityTypeConfig],
) -> RestoreOrchestrator:
    return RestoreOrchestrator(audit_log, live_records, entity_types)


@pytest_asyncio.fixture()
async def deleted_listing(live_records: LiveRecordRepository, owner_id: uuid.UUID) -> dict:
    """Insert the owner and a listing, then delete the listing. Returns its last state."""
    await live_records.insert("user", make_user(owner_id), owner_id)
    listing = await live_records.insert("listing", make_listing(owner_id), owner_id)
    await live_records.update("listing", listing.id, {"price": 425000}, owner_id)
    last_state = dict((await live_records.get("listing", listing.id)).data)
    await live_records.delete("listing", listing.id, owner_id)
    return last_state


class TestRestoreOrchestrator:
    """Tests for RestoreOrchestrator.restore()."""

    @pytest.mark.asyncio()
    async def test_delete_then_restore_round_trips(
        self,
        orchestrator: RestoreOrchestrator,
        live_records: LiveRecordRepository,
        audit_log: AuditLogRepository,
        owner_id: uuid.UUID,
        deleted_listing: dict,
    ) -> None:
        record_id = uuid.UUID(deleted_listing["id"])

        outcome = await orchestrator.restore("listing", record_id, owner_id)

        restored = await live_records.get("listing", record_id)
        entries = await audit_log.list_for_record("listing", record_id, limit=10)
        assert outcome == Restored(record_id=record_id)
        assert restored is not None
        assert restored.data == deleted_listing
        assert [e.action for e in entries] == [
            AuditAction.RESTORE,
            AuditAction.DELETE,
            AuditAction.UPDATE,
            AuditAction.INSERT,
        ]
        assert entries[0].before_snapshot == deleted_listing
        assert entries[0].after_snapshot == deleted_listing
        assert entries[0].actor_id == owner_id

    @pytest.mark.asyncio()
    async def test_second_restore_reports_already_exists(
        self,
        orchestrator: RestoreOrchestrator,
        audit_log: AuditLogRepository,
        owner_id: uuid.UUID,
        deleted_listing: dict,
    ) -> None:
        record_id = uuid.UUID(deleted_listing["id"])
        await orchestrator.restore("listing", record_id, owner_id)

        outcome = await orchestrator.restore("listing", record_id, owner_id)

        entries = await audit_log.list_for_record("listing", record_id, limit=10)
        assert isinstance(outcome, RestoreFailed)
        assert outcome.kind is RestoreFailureKind.ALREADY_EXISTS
        assert [e.action for e in entries].count(AuditAction.RESTORE) == 1

    @pytest.mark.asyncio()
    async def test_never_deleted_record_is_not_found(
        self,
        orchestrator: RestoreOrchestrator,
        owner_id: uuid.UUID,
    ) -> None:
        outcome = await orchestrator.restore("listing", uuid.uuid4(), owner_id)

        assert outcome == RestoreFailed(kind=RestoreFailureKind.NOT_FOUND, entity_type="listing")

    @pytest.mark.asyncio()
    async def test_non_owner_is_unauthorized(
        self,
        orchestrator: RestoreOrchestrator,
        live_records: LiveRecordRepository,
        other_user_id: uuid.UUID,
        deleted_listing: dict,
    ) -> None:
        record_id = uuid.UUID(deleted_listing["id"])

        outcome = await orchestrator.restore("listing", record_id, other_user_id)

        assert isinstance(outcome, RestoreFailed)
        assert outcome.kind is RestoreFailureKind.UNAUTHORIZED
        assert await live_records.get("listing", record_id) is None

    @pytest.mark.asyncio()
    async def test_malformed_owner_is_unauthorized(
        self,
        orchestrator: RestoreOrchestrator,
        audit_log: AuditLogRepository,
        owner_id: uuid.UUID,
    ) -> None:
        record_id = uuid.uuid4()
        snapshot = {"id": str(record_id), "content": "x", "created_by": "nobody"}
        await audit_log.append("note", record_id, AuditAction.DELETE, owner_id, snapshot, None)

        outcome = await orchestrator.restore("note", record_id, owner_id)

        assert isinstance(outcome, RestoreFailed)
        assert outcome.kind is RestoreFailureKind.UNAUTHORIZED

    @pytest.mark.asyncio()
    async def test_missing_reference_names_referenced_type(
        self,
        orchestrator: RestoreOrchestrator,
        live_records: LiveRecordRepository,
        owner_id: uuid.UUID,
    ) -> None:
        await live_records.insert("user", make_user(owner_id), owner_id)
        listing = await live_records.insert("listing", make_listing(owner_id), owner_id)
        task = await live_records.insert("task", make_task(owner_id, listing_id=listing.id), owner_id)
        await live_records.delete("task", task.id, owner_id)
        await live_records.delete("listing", listing.id, owner_id)

        outcome = await orchestrator.restore("task", task.id, owner_id)

        assert outcome == RestoreFailed(
            kind=RestoreFailureKind.MISSING_REFERENCE,
            entity_type="listing",
            detail="listing",
        )
        assert await live_records.get("task", task.id) is None

    @pytest.mark.asyncio()
    async def test_natural_key_collision_is_unique_conflict(
        self,
        orchestrator: RestoreOrchestrator,
        live_records: LiveRecordRepository,
        owner_id: uuid.UUID,
        other_user_id: uuid.UUID,
    ) -> None:
        await live_records.insert("user", make_user(owner_id, email="taken@example.com"), owner_id)
        await live_records.delete("user", owner_id, owner_id)
        await live_records.insert("user", make_user(other_user_id, name="Bob", email="taken@example.com"), other_user_id)

        outcome = await orchestrator.restore("user", owner_id, owner_id)

        assert isinstance(outcome, RestoreFailed)
        assert outcome.kind is RestoreFailureKind.UNIQUE_CONFLICT
        assert outcome.detail == "email"

    @pytest.mark.asyncio()
    async def test_failed_restore_leaves_unit_of_work_usable(
        self,
        orchestrator: RestoreOrchestrator,
        live_records: LiveRecordRepository,
        db_session: AsyncSession,
        owner_id: uuid.UUID,
        other_user_id: uuid.UUID,
    ) -> None:
        await live_records.insert("user", make_user(owner_id, email="taken@example.com"), owner_id)
        await live_records.delete("user", owner_id, owner_id)
        await live_records.insert("user", make_user(other_user_id, name="Bob", email="taken@example.com"), other_user_id)
        await orchestrator.restore("user", owner_id, owner_id)

        note = await live_records.insert("note", {"content": "still fine", "created_by": str(owner_id)}, owner_id)
        await db_session.commit()

        assert await live_records.get("note", note.id) is not None

    @pytest.mark.asyncio()
    async def test_older_snapshot_gains_field_defaults(
        self,
        orchestrator: RestoreOrchestrator,
        audit_log: AuditLogRepository,
        live_records: LiveRecordRepository,
        owner_id: uuid.UUID,
    ) -> None:
        """A task deleted before status existed comes back with the default status."""
        record_id = uuid.uuid4()
        old_snapshot = {"id": str(record_id), "title": "Order sign", "declared_by": str(owner_id), "listing": None}
        await audit_log.append("task", record_id, AuditAction.DELETE, owner_id, old_snapshot, None)

        outcome = await orchestrator.restore("task", record_id, owner_id)

        restored = await live_records.get("task", record_id)
        entries = await audit_log.list_for_record("task", record_id, limit=10)
        assert outcome == Restored(record_id=record_id)
        assert restored.data["status"] == "open"
        assert entries[0].action == AuditAction.RESTORE
        assert entries[0].before_snapshot == old_snapshot
        assert entries[0].after_snapshot["status"] == "open"

    @pytest.mark.asyncio()
    async def test_unknown_entity_type_is_rejected(
        self,
        orchestrator: RestoreOrchestrator,
        owner_id: uuid.UUID,
    ) -> None:
        with pytest.raises(ValidationError):
            await orchestrator.restore("spaceship", uuid.uuid4(), owner_id)

    @pytest.mark.asyncio()
    async def test_storage_failure_surfaces_as_transient(
        self,
        entity_types: dict[str, EntityTypeConfig],
        owner_id: uuid.UUID,
    ) -> None:
        audit_log = AsyncMock()
        audit_log.latest_delete.side_effect = OperationalError("SELECT", {}, Exception("disk I/O error"))
        orchestrator = RestoreOrchestrator(audit_log, MagicMock(), entity_types)

        with pytest.raises(TransientIOError):
            await orchestrator.restore("listing", uuid.uuid4(), owner_id)


@pytest_asyncio.fixture()
async def file_store(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """A shared store in a SQLite file, so sessions get their own connections."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'shared.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


class TestConcurrentRestore:
    """Two restores of one record racing on a file-backed shared store."""

    @pytest.mark.asyncio()
    async def test_exactly_one_concurrent_restore_wins(
        self,
        file_store: async_sessionmaker[AsyncSession],
        entity_types: dict[str, EntityTypeConfig],
        owner_id: uuid.UUID,
    ) -> None:
        async with file_store() as session:
            live_records = LiveRecordRepository(session, entity_types)
            await live_records.insert("user", make_user(owner_id), owner_id)
            listing = await live_records.insert("listing", make_listing(owner_id), owner_id)
            await live_records.delete("listing", listing.id, owner_id)
            await session.commit()

        async def restore_in_own_session() -> RestoreOutcome:
            async with file_store() as session:
                orchestrator = RestoreOrchestrator(
                    AuditLogRepository(session),
                    LiveRecordRepository(session, entity_types),
                    entity_types,
                )
                outcome = await orchestrator.restore("listing", listing.id, owner_id)
                await session.commit()
                return outcome

        outcomes = await asyncio.gather(restore_in_own_session(), restore_in_own_session())

        async with file_store() as session:
            entries = await AuditLogRepository(session).list_for_record("listing", listing.id, limit=10)
        assert outcomes.count(Restored(record_id=listing.id)) == 1
        assert RestoreFailed(kind=RestoreFailureKind.ALREADY_EXISTS, entity_type="listing") in outcomes
        assert [e.action for e in entries] == [AuditAction.RESTORE, AuditAction.DELETE, AuditAction.INSERT]
