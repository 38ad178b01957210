"""Field-level change detection between a stored mirror and a fresh fetch.

Values are compared as strings: None becomes "", booleans become
"true"/"false", numbers use ``str`` (so 100 and 100.0 differ), and nested
dicts/lists are serialized as sorted JSON.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from src.recordsync.records.schemas import ChangeEvent, ChangeType, EntityType, FieldChange


def coerce_to_string(value: Any) -> str:
    """String form used for comparison and stored in change events."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def detect_changes(
    existing: dict[str, Any],
    incoming: dict[str, Any],
    tracked_fields: Iterable[str],
) -> list[FieldChange]:
    """Compare tracked fields, one FieldChange per differing field.

    Fields outside ``tracked_fields`` never produce a change. Order follows
    ``tracked_fields``.
    """
    changes: list[FieldChange] = []
    for field in tracked_fields:
        old = coerce_to_string(existing.get(field))
        new = coerce_to_string(incoming.get(field))
        if old != new:
            changes.append(FieldChange(field_name=field, old_value=old, new_value=new))
    return changes


def build_change_events(
    entity_type: EntityType,
    remote_id: str,
    existing: dict[str, Any] | None,
    incoming: dict[str, Any],
    tracked_fields: Iterable[str],
    snapshot: dict[str, Any] | None = None,
) -> list[ChangeEvent]:
    """History events for one fetched record.

    A record with no stored mirror yields exactly one ``created`` event
    carrying the full snapshot. Otherwise one ``field_update`` event per
    differing tracked field; identical records yield nothing.
    """
    snapshot = snapshot if snapshot is not None else dict(incoming)
    if existing is None:
        return [
            ChangeEvent(
                entity_type=entity_type,
                remote_id=remote_id,
                change_type=ChangeType.CREATED,
                full_snapshot=snapshot,
            )
        ]

    return [
        ChangeEvent(
            entity_type=entity_type,
            remote_id=remote_id,
            change_type=ChangeType.FIELD_UPDATE,
            field_name=change.field_name,
            old_value=change.old_value,
            new_value=change.new_value,
            full_snapshot=snapshot,
        )
        for change in detect_changes(existing, incoming, tracked_fields)
    ]
