"""Error taxonomy for dispatch-history.

Every error raised across a service boundary derives from DispatchHistoryError
and carries a stable error_code plus the HTTP status the API maps it to.
register_exception_handlers() installs the JSON handler for the hierarchy.

Restore failures are not raised by RestoreOrchestrator. They are returned as
RestoreFailed outcomes, and api/router.py turns them into the matching error
so callers still receive a precise, typed body.

A malformed ownership value inside a snapshot never becomes an error: the
extraction helpers in core/ownership.py downgrade it to "field absent".
"""

from collections.abc import Iterator
from contextlib import contextmanager
from enum import StrEnum

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError, IntegrityError

from dispatch_history.observability import get_logger

logger = get_logger(__name__)


class ConflictKind(StrEnum):
    """Why a restore could not re-insert the record."""

    ALREADY_EXISTS = "already_exists"
    UNIQUE_CONFLICT = "unique_conflict"
    MISSING_REFERENCE = "missing_reference"


class DispatchHistoryError(Exception):
    """Base error for dispatch-history.

    Attributes:
        message: Human-readable error description.
        error_code: Stable machine-readable code.
        status_code: HTTP status the API responds with.
    """

    error_code = "internal_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        """Initialize DispatchHistoryError.

        Args:
            message: Error description.
        """
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict[str, str | None]:
        """Return the JSON error body for this error."""
        return {"error_code": self.error_code, "message": self.message}


class NotFoundError(DispatchHistoryError):
    """Raised when a record or log entry does not exist."""

    error_code = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: str, message: str | None = None) -> None:
        super().__init__(message or f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class UnauthorizedError(DispatchHistoryError):
    """Raised when the caller does not match the recorded ownership."""

    error_code = "unauthorized"
    status_code = 403


class UnauthenticatedError(DispatchHistoryError):
    """Raised when no usable caller identity accompanies a request."""

    error_code = "unauthenticated"
    status_code = 401


class ConflictError(DispatchHistoryError):
    """Raised when a write collides with existing live state.

    Attributes:
        kind: The conflict category.
        entity_type: The entity type involved: the referenced type for missing
            references, the conflicting type for uniqueness conflicts.
        field: The snapshot field involved, when known.
    """

    status_code = 409

    def __init__(
        self,
        kind: ConflictKind,
        entity_type: str | None = None,
        field: str | None = None,
        message: str | None = None,
    ) -> None:
        super().__init__(message or _conflict_message(kind, entity_type, field))
        self.kind = kind
        self.entity_type = entity_type
        self.field = field

    @property
    def error_code(self) -> str:  # type: ignore[override]
        return self.kind.value

    def to_body(self) -> dict[str, str | None]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "entity_type": self.entity_type,
            "field": self.field,
        }


class ValidationError(DispatchHistoryError):
    """Raised when a request names an unknown entity type or bad input."""

    error_code = "validation_error"
    status_code = 422

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class TransientIOError(DispatchHistoryError):
    """Raised when storage or the network fails in a way worth retrying.

    History and restore calls surface it immediately (503). The tombstone
    drain loop catches it and schedules a retry.
    """

    error_code = "transient_io"
    status_code = 503


class AuditLogImmutableError(DispatchHistoryError):
    """Raised when a write would alter an audit entry outside the restore back-fill."""

    error_code = "audit_log_immutable"


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Translate database driver failures into TransientIOError.

    Integrity errors are not transient and pass through untouched.

    Args:
        operation: Name of the operation, for the log and the error message.

    Raises:
        TransientIOError: If the block raises OperationalError or another DBAPIError.
    """
    try:
        yield
    except DBAPIError as exc:
        if isinstance(exc, IntegrityError):
            raise
        logger.warning("Storage failure", operation=operation, error=type(exc.orig).__name__)
        raise TransientIOError(f"Storage unavailable during {operation}") from exc


def _conflict_message(kind: ConflictKind, entity_type: str | None, field: str | None) -> str:
    if kind is ConflictKind.ALREADY_EXISTS:
        return "This item already exists"
    if kind is ConflictKind.MISSING_REFERENCE:
        return f"The {entity_type or 'related item'} this is linked to no longer exists"
    return f"A record with this {field or 'field'} already exists"


async def _handle_dispatch_error(request: Request, exc: DispatchHistoryError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "Request failed",
            method=request.method,
            path=request.url.path,
            error_code=exc.error_code,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


def register_exception_handlers(app: FastAPI) -> None:
    """Install the JSON error handler for every DispatchHistoryError.

    Args:
        app: The FastAPI application.
    """
    app.add_exception_handler(DispatchHistoryError, _handle_dispatch_error)
