"""Helpers for record snapshots.

A snapshot is the full JSON document of a record at one point in time. Values
are JSON-native; identifiers are stored as their canonical string form.
"""

import copy
import uuid
from typing import Any

Snapshot = dict[str, Any]

_MISSING = object()


def to_snapshot(data: dict[str, Any]) -> Snapshot:
    """Return a detached, JSON-native copy of a record document.

    UUID values are converted to strings so the snapshot survives a round trip
    through a JSON column unchanged.

    Args:
        data: The record document.

    Returns:
        A deep copy safe to store in the audit log.
    """
    return {key: _json_native(value) for key, value in copy.deepcopy(data).items()}


def _json_native(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {key: _json_native(inner) for key, inner in value.items()}
    if isinstance(value, list):
        return [_json_native(inner) for inner in value]
    return value


def diff_snapshots(before: Snapshot | None, after: Snapshot | None) -> list[str]:
    """Return the sorted names of fields whose values differ.

    A field present on one side only counts as changed.

    Args:
        before: State before the change, or None.
        after: State after the change, or None.

    Returns:
        Field names that changed, sorted. Empty when both sides are equal.
    """
    before = before or {}
    after = after or {}
    changed = {key for key in before.keys() | after.keys() if before.get(key, _MISSING) != after.get(key, _MISSING)}
    return sorted(changed)


def apply_field_defaults(snapshot: Snapshot, defaults: dict[str, Any]) -> Snapshot:
    """Fill fields an older snapshot predates with their configured defaults.

    Fields already present, including explicit nulls, are left alone.

    Args:
        snapshot: The stored snapshot.
        defaults: Mapping of field name to default value.

    Returns:
        A new snapshot with the missing fields filled in.
    """
    restored = copy.deepcopy(snapshot)
    for field, default in defaults.items():
        if field not in restored:
            restored[field] = copy.deepcopy(default)
    return restored
