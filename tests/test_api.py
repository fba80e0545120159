"""Tests for API endpoints (router layer).

Runs the FastAPI router over a real in-memory shared store through
dependency overrides. Each request gets its own unit-of-work session, as in
production.

Tests verify:
- Caller identity enforcement
- HTTP status codes and typed error bodies
- Response schema shapes, summaries and display titles
- Limit defaults and clamping
"""

import uuid
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dispatch_history.api.router import router
from dispatch_history.database import get_db_session
from dispatch_history.errors import register_exception_handlers
from dispatch_history.main import create_app
from dispatch_history.settings import Settings, get_settings
from tests.conftest import make_listing, make_task, make_user


@pytest.fixture()
def settings() -> Settings:
    return Settings(history_default_limit=2, history_max_limit=3, recently_deleted_max_limit=5)


@pytest.fixture()
def app(session_factory: async_sessionmaker[AsyncSession], settings: Settings) -> FastAPI:
    """Create a test FastAPI app bound to the in-memory shared store."""
    test_app = FastAPI()
    register_exception_handlers(test_app)
    test_app.include_router(router, prefix="/api/v1")

    async def override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_app.dependency_overrides[get_db_session] = override_session
    test_app.dependency_overrides[get_settings] = lambda: settings
    return test_app


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


def caller(user_id: uuid.UUID) -> dict[str, str]:
    return {"X-Caller-Id": str(user_id)}


async def create(client: AsyncClient, entity_type: str, data: dict[str, Any], user_id: uuid.UUID) -> dict[str, Any]:
    response = await client.post(f"/api/v1/records/{entity_type}", json={"data": data}, headers=caller(user_id))
    assert response.status_code == 201, response.text
    return response.json()


class TestCallerIdentity:
    """Tests for the X-Caller-Id dependency."""

    @pytest.mark.asyncio()
    async def test_missing_header_is_401(self, client: AsyncClient) -> None:
        response = await client.get(f"/api/v1/history/listing/{uuid.uuid4()}")

        assert response.status_code == 401
        assert response.json()["error_code"] == "unauthenticated"

    @pytest.mark.asyncio()
    async def test_malformed_header_is_401(self, client: AsyncClient) -> None:
        response = await client.get("/api/v1/recently-deleted", headers={"X-Caller-Id": "alice"})

        assert response.status_code == 401


class TestHistoryEndpoints:
    """Tests for GET /history and GET /recently-deleted."""

    @pytest.mark.asyncio()
    async def test_history_carries_summaries(self, client: AsyncClient, owner_id: uuid.UUID) -> None:
        await create(client, "user", make_user(owner_id, name="Alice"), owner_id)
        listing = await create(client, "listing", make_listing(owner_id, address="12 Birch Rd"), owner_id)
        patch_response = await client.patch(
            f"/api/v1/records/listing/{listing['id']}",
            json={"changes": {"price": 425000}},
            headers=caller(owner_id),
        )

        response = await client.get(f"/api/v1/history/listing/{listing['id']}", headers=caller(owner_id))

        assert patch_response.status_code == 200
        assert response.status_code == 200
        body = response.json()
        assert [e["action"] for e in body] == ["update", "insert"]
        assert body[0]["summary"] == "Alice changed price from $450,000 to $425,000"
        assert body[0]["changed_fields"] == ["price"]
        assert body[0]["display_title"] == "12 Birch Rd"
        assert body[1]["summary"] == "Alice created this listing"

    @pytest.mark.asyncio()
    async def test_history_hidden_from_non_owner(
        self,
        client: AsyncClient,
        owner_id: uuid.UUID,
        other_user_id: uuid.UUID,
    ) -> None:
        note = await create(client, "note", {"content": "Alarm code", "created_by": str(owner_id)}, owner_id)

        response = await client.get(f"/api/v1/history/note/{note['id']}", headers=caller(other_user_id))

        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio()
    async def test_unknown_entity_type_is_422(self, client: AsyncClient, owner_id: uuid.UUID) -> None:
        response = await client.get(f"/api/v1/history/spaceship/{uuid.uuid4()}", headers=caller(owner_id))

        assert response.status_code == 422
        assert response.json()["error_code"] == "validation_error"

    @pytest.mark.asyncio()
    async def test_limit_defaults_and_clamps(self, client: AsyncClient, owner_id: uuid.UUID) -> None:
        note = await create(client, "note", {"content": "v0", "created_by": str(owner_id)}, owner_id)
        for version in range(1, 5):
            await client.patch(
                f"/api/v1/records/note/{note['id']}",
                json={"changes": {"content": f"v{version}"}},
                headers=caller(owner_id),
            )
        url = f"/api/v1/history/note/{note['id']}"

        default_page = await client.get(url, headers=caller(owner_id))
        clamped_page = await client.get(url, params={"limit": 50}, headers=caller(owner_id))

        assert len(default_page.json()) == 2
        assert len(clamped_page.json()) == 3

    @pytest.mark.asyncio()
    async def test_combined_history_includes_assignments(self, client: AsyncClient, owner_id: uuid.UUID) -> None:
        await create(client, "user", make_user(owner_id, name="Alice"), owner_id)
        task = await create(client, "task", make_task(owner_id), owner_id)
        await create(
            client,
            "task_assignee",
            {"task_id": task["id"], "user_id": str(owner_id), "assigned_by": str(owner_id)},
            owner_id,
        )

        plain = await client.get(f"/api/v1/history/task/{task['id']}", headers=caller(owner_id))
        combined = await client.get(f"/api/v1/history/task/{task['id']}/combined", headers=caller(owner_id))

        assert [e["entity_type"] for e in plain.json()] == ["task"]
        assert combined.status_code == 200
        assert [e["entity_type"] for e in combined.json()] == ["task_assignee", "task"]
        assert combined.json()[0]["summary"] == "Alice claimed this"

    @pytest.mark.asyncio()
    async def test_recently_deleted_lists_owned_deletes(
        self,
        client: AsyncClient,
        owner_id: uuid.UUID,
        other_user_id: uuid.UUID,
    ) -> None:
        await create(client, "user", make_user(owner_id), owner_id)
        listing = await create(client, "listing", make_listing(owner_id, address="7 Pine Ct"), owner_id)
        note = await create(client, "note", {"content": "Seller away", "created_by": str(owner_id)}, owner_id)
        await client.delete(f"/api/v1/records/listing/{listing['id']}", headers=caller(owner_id))
        await client.delete(f"/api/v1/records/note/{note['id']}", headers=caller(owner_id))

        mine = await client.get("/api/v1/recently-deleted", headers=caller(owner_id))
        listings_only = await client.get(
            "/api/v1/recently-deleted",
            params={"entity_type": "listing"},
            headers=caller(owner_id),
        )
        theirs = await client.get("/api/v1/recently-deleted", headers=caller(other_user_id))

        assert [e["record_id"] for e in mine.json()] == [note["id"], listing["id"]]
        assert mine.json()[1]["summary"] == "Alice deleted this listing"
        assert mine.json()[1]["display_title"] == "7 Pine Ct"
        assert [e["record_id"] for e in listings_only.json()] == [listing["id"]]
        assert theirs.json() == []


class TestRecordEndpoints:
    """Tests for the audited live record endpoints."""

    @pytest.mark.asyncio()
    async def test_delete_is_idempotent(self, client: AsyncClient, owner_id: uuid.UUID) -> None:
        note = await create(client, "note", {"content": "x", "created_by": str(owner_id)}, owner_id)
        url = f"/api/v1/records/note/{note['id']}"

        first = await client.delete(url, headers=caller(owner_id))
        second = await client.delete(url, headers=caller(owner_id))
        history = await client.get(f"/api/v1/history/note/{note['id']}", headers=caller(owner_id))

        assert first.status_code == 204
        assert second.status_code == 204
        assert [e["action"] for e in history.json()] == ["delete", "insert"]

    @pytest.mark.asyncio()
    async def test_update_of_absent_record_is_404(self, client: AsyncClient, owner_id: uuid.UUID) -> None:
        response = await client.patch(
            f"/api/v1/records/note/{uuid.uuid4()}",
            json={"changes": {"content": "x"}},
            headers=caller(owner_id),
        )

        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"

    @pytest.mark.asyncio()
    async def test_missing_reference_on_insert_is_409(self, client: AsyncClient, owner_id: uuid.UUID) -> None:
        response = await client.post(
            "/api/v1/records/task",
            json={"data": make_task(owner_id, listing_id=uuid.uuid4())},
            headers=caller(owner_id),
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "missing_reference"
        assert response.json()["entity_type"] == "listing"

    @pytest.mark.asyncio()
    async def test_failed_write_is_rolled_back(self, client: AsyncClient, owner_id: uuid.UUID) -> None:
        bob_id = uuid.uuid4()
        await create(client, "user", make_user(owner_id, email="a@example.com"), owner_id)

        response = await client.post(
            "/api/v1/records/user",
            json={"data": make_user(bob_id, name="Bob", email="a@example.com")},
            headers=caller(bob_id),
        )
        history = await client.get(f"/api/v1/history/user/{bob_id}", headers=caller(bob_id))

        assert response.status_code == 409
        assert response.json()["field"] == "email"
        assert history.json() == []


class TestRestoreEndpoint:
    """Tests for POST /restore."""

    @pytest.mark.asyncio()
    async def test_restore_flow(self, client: AsyncClient, owner_id: uuid.UUID, other_user_id: uuid.UUID) -> None:
        await create(client, "user", make_user(owner_id), owner_id)
        listing = await create(client, "listing", make_listing(owner_id), owner_id)
        await client.delete(f"/api/v1/records/listing/{listing['id']}", headers=caller(owner_id))
        url = f"/api/v1/restore/listing/{listing['id']}"

        refused = await client.post(url, headers=caller(other_user_id))
        restored = await client.post(url, headers=caller(owner_id))
        repeated = await client.post(url, headers=caller(owner_id))
        history = await client.get(f"/api/v1/history/listing/{listing['id']}", headers=caller(owner_id))

        assert refused.status_code == 403
        assert refused.json()["error_code"] == "unauthorized"
        assert restored.status_code == 200
        assert restored.json() == {"record_id": listing["id"]}
        assert repeated.status_code == 409
        assert repeated.json()["error_code"] == "already_exists"
        assert repeated.json()["message"] == "This item already exists and cannot be restored"
        assert [e["action"] for e in history.json()] == ["restore", "delete", "insert"]
        assert history.json()[0]["before_snapshot"] == listing["data"]
        assert history.json()[0]["summary"] == "Alice restored this listing"

    @pytest.mark.asyncio()
    async def test_restore_without_delete_is_404(self, client: AsyncClient, owner_id: uuid.UUID) -> None:
        response = await client.post(f"/api/v1/restore/note/{uuid.uuid4()}", headers=caller(owner_id))

        assert response.status_code == 404
        assert response.json()["message"] == "No deleted record found to restore"

    @pytest.mark.asyncio()
    async def test_restore_with_missing_reference_is_409(self, client: AsyncClient, owner_id: uuid.UUID) -> None:
        await create(client, "user", make_user(owner_id), owner_id)
        listing = await create(client, "listing", make_listing(owner_id), owner_id)
        task = await create(client, "task", make_task(owner_id, listing_id=uuid.UUID(listing["id"])), owner_id)
        await client.delete(f"/api/v1/records/task/{task['id']}", headers=caller(owner_id))
        await client.delete(f"/api/v1/records/listing/{listing['id']}", headers=caller(owner_id))

        response = await client.post(f"/api/v1/restore/task/{task['id']}", headers=caller(owner_id))

        assert response.status_code == 409
        assert response.json() == {
            "error_code": "missing_reference",
            "message": "Cannot restore - the listing this was linked to no longer exists",
            "entity_type": "listing",
            "field": "listing",
        }


class TestHealth:
    """Tests for GET /health."""

    @pytest.mark.asyncio()
    async def test_health_degraded_without_database(self) -> None:
        transport = ASGITransport(app=create_app())
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            response = await http_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "degraded", "database": False}
