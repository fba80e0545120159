"""Human-readable summaries and titles for audit entries.

Summaries are built at read time, when the actor's display name is known:

    "Alice created this listing"
    "Alice changed price from $450,000 to $425,000"
    "Alice changed title and status"
    "Bob unassigned Carol"

Only snapshot metadata is read here; nothing in this module logs values.
"""

import uuid
from collections.abc import Callable
from typing import Any

from dispatch_history.core.models import AuditAction, AuditLogEntry
from dispatch_history.core.snapshots import diff_snapshots
from dispatch_history.settings import EntityTypeConfig

# Bookkeeping fields that never count as a user-visible change
SYSTEM_FIELDS = frozenset({"id", "sync_status", "pending_changes", "created_at", "updated_at"})

# When several fields change, the first of these present leads the summary
PRIORITY_FIELDS = ("status", "stage", "price", "assigned_to", "title", "name")

FIELD_LABELS: dict[str, str] = {
    "stage": "Status",
    "price": "Price",
    "assigned_to": "Assignment",
    "due_date": "Due date",
    "address": "Address",
    "mls_number": "MLS number",
    "owned_by": "Owner",
    "listing_date": "Listing date",
    "expiration_date": "Expiration date",
    "listing_type": "Listing type",
    "commission_rate": "Commission rate",
    "notes": "Notes",
    "real_dirt": "Real dirt",
    "owner_id": "Owner",
    "property_type": "Property type",
    "bedrooms": "Bedrooms",
    "bathrooms": "Bathrooms",
    "square_feet": "Square feet",
    "lot_size": "Lot size",
    "year_built": "Year built",
    "title": "Title",
    "description": "Description",
    "status": "Status",
    "priority": "Priority",
    "completed_at": "Completed at",
    "listing_id": "Listing",
    "property_id": "Property",
    "declared_by": "Created by",
    "activity_type": "Type",
    "outcome": "Outcome",
    "contact_method": "Contact method",
    "name": "Name",
    "email": "Email",
    "phone": "Phone",
    "license_number": "License number",
    "brokerage": "Brokerage",
    "user_id": "Assignee",
    "assigned_by": "Assigned by",
    "assigned_at": "Assigned at",
    "task_id": "Task",
    "activity_id": "Activity",
}

NOTE_TITLE_LENGTH = 30

UserLookup = Callable[[uuid.UUID], str | None]


def changed_fields(entry: AuditLogEntry) -> list[str]:
    """Return the user-visible fields an update entry changed.

    Args:
        entry: The audit entry.

    Returns:
        Sorted changed field names, excluding bookkeeping fields. Empty for
        anything other than an update with both snapshots.
    """
    if entry.action != AuditAction.UPDATE or entry.before_snapshot is None or entry.after_snapshot is None:
        return []
    return [field for field in diff_snapshots(entry.before_snapshot, entry.after_snapshot) if field not in SYSTEM_FIELDS]


def display_title(entry: AuditLogEntry, config: EntityTypeConfig) -> str:
    """Return a short title for an entry, read from its newest snapshot.

    Args:
        entry: The audit entry.
        config: The entity type's configuration.

    Returns:
        The configured title field's value, or the type's display name.
    """
    row = entry.after_snapshot or entry.before_snapshot or {}
    if config.title_field:
        value = row.get(config.title_field)
        if isinstance(value, str) and value:
            if entry.entity_type == "note" and len(value) > NOTE_TITLE_LENGTH:
                return f"{value[:NOTE_TITLE_LENGTH]}..."
            return value
    return config.display_name


def build_summary(
    entry: AuditLogEntry,
    actor_name: str,
    config: EntityTypeConfig,
    user_lookup: UserLookup | None = None,
) -> str:
    """Build a one-sentence summary of an entry.

    Args:
        entry: The audit entry.
        actor_name: Display name of the user who made the change.
        config: The entity type's configuration.
        user_lookup: Optional resolver of user ids to display names, used for
            assignment entries.

    Returns:
        The summary sentence.
    """
    if entry.entity_type.endswith("_assignee"):
        return _assignment_summary(entry, actor_name, user_lookup)
    if entry.entity_type == "note":
        return _note_summary(entry, actor_name)

    noun = config.display_name.lower()
    if entry.action == AuditAction.INSERT:
        return f"{actor_name} created this {noun}"
    if entry.action == AuditAction.DELETE:
        return f"{actor_name} deleted this {noun}"
    if entry.action == AuditAction.RESTORE:
        return f"{actor_name} restored this {noun}"
    return _update_summary(entry, actor_name)


def _note_summary(entry: AuditLogEntry, actor_name: str) -> str:
    verbs = {
        AuditAction.INSERT: "added",
        AuditAction.UPDATE: "edited",
        AuditAction.DELETE: "deleted",
        AuditAction.RESTORE: "restored",
    }
    return f"{actor_name} {verbs[AuditAction(entry.action)]} a note"


def _assignment_summary(entry: AuditLogEntry, actor_name: str, user_lookup: UserLookup | None) -> str:
    row = entry.after_snapshot or entry.before_snapshot or {}
    assignee_raw = row.get("user_id")
    assigned_by_raw = row.get("assigned_by")

    assignee_id = _parse_uuid(assignee_raw)
    assignee_name = user_lookup(assignee_id) if (user_lookup and assignee_id) else None
    is_self_assignment = assignee_raw is not None and assignee_raw == assigned_by_raw

    if entry.action == AuditAction.INSERT:
        if is_self_assignment:
            return f"{actor_name} claimed this"
        return f"{actor_name} assigned {assignee_name or 'someone'}"
    if entry.action == AuditAction.DELETE:
        actor_is_assignee = entry.actor_id is not None and entry.actor_id == assignee_id
        if actor_is_assignee or is_self_assignment:
            return f"{actor_name} removed themselves"
        return f"{actor_name} unassigned {assignee_name or 'someone'}"
    if entry.action == AuditAction.RESTORE:
        if assignee_name:
            return f"{actor_name} restored {assignee_name}'s assignment"
        return f"{actor_name} restored assignment"
    return f"{actor_name} updated assignment"


def _update_summary(entry: AuditLogEntry, actor_name: str) -> str:
    before = entry.before_snapshot
    after = entry.after_snapshot
    fields = changed_fields(entry)
    if before is None or after is None or not fields:
        return f"{actor_name} made changes"

    top_field = next((field for field in PRIORITY_FIELDS if field in fields), fields[0])
    if len(fields) == 1:
        return _single_field_summary(actor_name, top_field, before, after)

    labels = [human_label(field) for field in fields]
    if len(labels) == 2:
        return f"{actor_name} changed {labels[0]} and {labels[1]}"
    if len(labels) == 3:
        return f"{actor_name} changed {labels[0]}, {labels[1]}, and {labels[2]}"
    others = len(fields) - 1
    lead = _single_field_summary(actor_name, top_field, before, after)
    return f"{lead} and {others} other field{'' if others == 1 else 's'}"


def _single_field_summary(actor_name: str, field: str, before: dict[str, Any], after: dict[str, Any]) -> str:
    label = human_label(field).lower()
    new_value = format_value(after.get(field), field)
    if field in ("status", "stage"):
        return f"{actor_name} changed {label} to {new_value}"
    old_value = format_value(before.get(field), field)
    return f"{actor_name} changed {label} from {old_value} to {new_value}"


def human_label(field: str) -> str:
    """Return the display label of a snapshot field."""
    return FIELD_LABELS.get(field) or field.replace("_", " ").title()


def format_value(value: Any, field: str) -> str:
    """Render a snapshot value for a summary sentence."""
    if value is None or value == "":
        return "none"
    if field == "price" and isinstance(value, int | float) and not isinstance(value, bool):
        return f"${value:,.0f}"
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if field in ("status", "stage"):
        return text.replace("_", " ").title()
    return text


def _parse_uuid(value: Any) -> uuid.UUID | None:
    if not isinstance(value, str):
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None
