"""Ownership extraction and read-path authorization.

The owner of a record is read from a configured field of its snapshot. The
extraction never raises: a missing field, a non-string value or a string that
is not a UUID all mean "no owner", which simply fails the match.
"""

import uuid
from typing import Any

from dispatch_history.core.models import AuditLogEntry
from dispatch_history.observability import get_logger

logger = get_logger(__name__)


def extract_owner(snapshot: dict[str, Any] | None, owner_field: str) -> uuid.UUID | None:
    """Read the owning user's id from a snapshot.

    Args:
        snapshot: The stored snapshot, or None.
        owner_field: Field holding the owner id.

    Returns:
        The owner id, or None when absent or malformed.
    """
    if not snapshot:
        return None
    value = snapshot.get(owner_field)
    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str):
        if value is not None:
            logger.debug("Ignoring non-string owner field", owner_field=owner_field)
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        logger.debug("Ignoring malformed owner field", owner_field=owner_field)
        return None


def is_entry_visible(entry: AuditLogEntry, caller_id: uuid.UUID, owner_field: str) -> bool:
    """Decide whether a caller may read an audit entry.

    Visible when the caller made the change, or owns the record according to
    either snapshot.

    Args:
        entry: The audit entry.
        caller_id: The requesting user.
        owner_field: The entity type's owner field.

    Returns:
        True if the entry is visible to the caller.
    """
    if entry.actor_id is not None and entry.actor_id == caller_id:
        return True
    if extract_owner(entry.before_snapshot, owner_field) == caller_id:
        return True
    return extract_owner(entry.after_snapshot, owner_field) == caller_id
