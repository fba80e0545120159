"""HTTP client for the shared store, used by the tombstone drain loop.

Deletes are issued against DELETE {base_url}/records/{entity_type}/{record_id}.
The endpoint is idempotent, and a 404 or 410 is treated as success too: the
record the tombstone points at is gone either way.
"""

import uuid

import httpx

from dispatch_history.errors import TransientIOError
from dispatch_history.observability import get_logger

logger = get_logger(__name__)

# Statuses meaning "the record is already gone"
_ALREADY_ABSENT = frozenset({404, 410})

# Statuses worth retrying without any change on our side
_RETRYABLE = frozenset({408, 425, 429})


class RemoteDeleteError(Exception):
    """Raised when the shared store rejects a delete.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the store (if available).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Initialize RemoteDeleteError.

        Args:
            message: Error description.
            status_code: Optional HTTP status code.
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class HttpRemoteStore:
    """Async client for record deletion on the shared store.

    Args:
        base_url: Shared store API base URL (e.g. http://host/api/v1).
        caller_id: Identity sent in the X-Caller-Id header.
        timeout_seconds: Timeout for a single request.
        transport: Optional httpx transport, for tests.
    """

    def __init__(
        self,
        base_url: str,
        caller_id: uuid.UUID,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._caller_id = caller_id
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def delete_record(self, entity_type: str, record_id: uuid.UUID) -> None:
        """Delete a record on the shared store.

        Args:
            entity_type: Entity type of the record.
            record_id: Identifier of the record.

        Raises:
            TransientIOError: If the store is unreachable, times out or
                answers with a server error.
            RemoteDeleteError: If the store rejects the delete outright.
        """
        url = f"{self._base_url}/records/{entity_type}/{record_id}"

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.delete(url, headers={"X-Caller-Id": str(self._caller_id)})
        except httpx.TimeoutException as exc:
            logger.warning("Remote delete timed out", entity_type=entity_type, record_id=str(record_id))
            raise TransientIOError(f"Remote delete timed out after {self._timeout_seconds}s") from exc
        except httpx.RequestError as exc:
            logger.warning(
                "Remote delete request failed",
                entity_type=entity_type,
                record_id=str(record_id),
                error=type(exc).__name__,
            )
            raise TransientIOError(f"Remote delete request error: {exc}") from exc

        if response.is_success:
            logger.info("Remote record deleted", entity_type=entity_type, record_id=str(record_id))
            return

        if response.status_code in _ALREADY_ABSENT:
            # Already gone remotely; nothing left to delete
            logger.info(
                "Remote record already absent",
                entity_type=entity_type,
                record_id=str(record_id),
                status_code=response.status_code,
            )
            return

        if response.status_code >= 500 or response.status_code in _RETRYABLE:
            raise TransientIOError(f"Remote delete failed with status {response.status_code}")

        logger.error(
            "Remote store rejected delete",
            entity_type=entity_type,
            record_id=str(record_id),
            status_code=response.status_code,
        )
        raise RemoteDeleteError(
            message=f"Remote delete rejected with status {response.status_code}: {response.text[:200]}",
            status_code=response.status_code,
        )
