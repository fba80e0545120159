"""Tests for the change capture hook and snapshot helpers.

The audit log repository is mocked; these tests only check which entry the
hook asks for.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from dispatch_history.core.capture import ChangeCaptureHook
from dispatch_history.core.models import AuditAction
from dispatch_history.core.snapshots import apply_field_defaults, diff_snapshots, to_snapshot


@pytest.fixture()
def mock_audit_log() -> AsyncMock:
    audit_log = AsyncMock()
    audit_log.append.return_value = MagicMock()
    return audit_log


@pytest.fixture()
def hook(mock_audit_log: AsyncMock) -> ChangeCaptureHook:
    return ChangeCaptureHook(mock_audit_log)


class TestChangeCaptureHook:
    """Tests for ChangeCaptureHook.capture()."""

    @pytest.mark.asyncio()
    async def test_insert_writes_entry_without_before(self, hook: ChangeCaptureHook, mock_audit_log: AsyncMock) -> None:
        record_id = uuid.uuid4()
        actor_id = uuid.uuid4()
        after = {"id": str(record_id), "title": "Call seller"}

        await hook.capture("task", record_id, AuditAction.INSERT, before={"ignored": 1}, after=after, actor_id=actor_id)

        mock_audit_log.append.assert_awaited_once_with("task", record_id, AuditAction.INSERT, actor_id, None, after)

    @pytest.mark.asyncio()
    async def test_insert_with_restore_override_records_restore(
        self,
        hook: ChangeCaptureHook,
        mock_audit_log: AsyncMock,
    ) -> None:
        record_id = uuid.uuid4()

        await hook.capture("task", record_id, AuditAction.INSERT, None, {"id": str(record_id)}, None, override="restore")

        assert mock_audit_log.append.await_args.args[2] == AuditAction.RESTORE

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("override", [AuditAction.DELETE, AuditAction.UPDATE, "bogus"])
    async def test_unsupported_override_falls_back_to_insert(
        self,
        hook: ChangeCaptureHook,
        mock_audit_log: AsyncMock,
        override: str,
    ) -> None:
        record_id = uuid.uuid4()

        await hook.capture("task", record_id, AuditAction.INSERT, None, {"id": str(record_id)}, None, override=override)

        assert mock_audit_log.append.await_args.args[2] == AuditAction.INSERT

    @pytest.mark.asyncio()
    async def test_override_applies_to_one_call_only(self, hook: ChangeCaptureHook, mock_audit_log: AsyncMock) -> None:
        """There is no lingering restore flag: the next plain insert is an insert."""
        first, second = uuid.uuid4(), uuid.uuid4()

        await hook.capture("note", first, AuditAction.INSERT, None, {"id": str(first)}, None, override=AuditAction.RESTORE)
        await hook.capture("note", second, AuditAction.INSERT, None, {"id": str(second)}, None)

        actions = [call.args[2] for call in mock_audit_log.append.await_args_list]
        assert actions == [AuditAction.RESTORE, AuditAction.INSERT]

    @pytest.mark.asyncio()
    async def test_update_with_changes_records_both_snapshots(
        self,
        hook: ChangeCaptureHook,
        mock_audit_log: AsyncMock,
    ) -> None:
        record_id = uuid.uuid4()
        before = {"id": str(record_id), "price": 450000}
        after = {"id": str(record_id), "price": 425000}

        await hook.capture("listing", record_id, AuditAction.UPDATE, before, after, None)

        mock_audit_log.append.assert_awaited_once_with("listing", record_id, AuditAction.UPDATE, None, before, after)

    @pytest.mark.asyncio()
    async def test_noop_update_writes_nothing(self, hook: ChangeCaptureHook, mock_audit_log: AsyncMock) -> None:
        record_id = uuid.uuid4()
        state = {"id": str(record_id), "price": 450000}

        result = await hook.capture("listing", record_id, AuditAction.UPDATE, state, dict(state), None)

        assert result is None
        mock_audit_log.append.assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_delete_writes_entry_without_after(self, hook: ChangeCaptureHook, mock_audit_log: AsyncMock) -> None:
        record_id = uuid.uuid4()
        before = {"id": str(record_id), "content": "Gate code 1234"}

        await hook.capture("note", record_id, AuditAction.DELETE, before, {"ignored": 1}, None)

        mock_audit_log.append.assert_awaited_once_with("note", record_id, AuditAction.DELETE, None, before, None)

    @pytest.mark.asyncio()
    async def test_restore_is_not_a_mutation_kind(self, hook: ChangeCaptureHook) -> None:
        with pytest.raises(ValueError):
            await hook.capture("note", uuid.uuid4(), AuditAction.RESTORE, None, {}, None)


class TestSnapshots:
    """Tests for snapshot helpers."""

    def test_diff_reports_changed_added_and_removed_fields(self) -> None:
        before = {"a": 1, "b": 2, "c": 3}
        after = {"a": 1, "b": 20, "d": 4}

        assert diff_snapshots(before, after) == ["b", "c", "d"]

    def test_diff_of_equal_snapshots_is_empty(self) -> None:
        assert diff_snapshots({"a": [1, 2]}, {"a": [1, 2]}) == []

    def test_diff_treats_explicit_null_and_missing_as_different(self) -> None:
        assert diff_snapshots({"a": None}, {}) == ["a"]

    def test_to_snapshot_stringifies_uuids_and_detaches(self) -> None:
        record_id = uuid.uuid4()
        data = {"id": record_id, "tags": ["x"], "nested": {"owner": record_id}}

        snapshot = to_snapshot(data)
        data["tags"].append("y")

        assert snapshot == {"id": str(record_id), "tags": ["x"], "nested": {"owner": str(record_id)}}

    def test_apply_field_defaults_fills_only_missing_fields(self) -> None:
        snapshot = {"title": "Old task", "priority": None}

        restored = apply_field_defaults(snapshot, {"status": "open", "priority": "high"})

        assert restored == {"title": "Old task", "priority": None, "status": "open"}
        assert "status" not in snapshot
