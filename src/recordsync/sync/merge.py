"""Non-destructive field merge for cross-system linking.

Incoming values only fill fields the target leaves empty; a populated field
in the target is never overwritten.
"""

from __future__ import annotations

from typing import Any


def is_empty(value: Any) -> bool:
    """None and the empty string count as absent."""
    return value is None or value == ""


def non_destructive_merge(
    existing: dict[str, Any], incoming: dict[str, Any]
) -> dict[str, Any]:
    """Return the subset of ``incoming`` that fills empty fields of ``existing``.

    Args:
        existing: Current field values of the target record.
        incoming: Values proposed from the source record.

    Returns:
        Field updates to apply. An empty dict means the target already has
        every field the source could supply (the "no updates needed" outcome).

    >>> non_destructive_merge({"phone": None, "city": "Austin"}, {"phone": "555", "city": "Dallas"})
    {'phone': '555'}
    """
    updates: dict[str, Any] = {}
    for key, value in incoming.items():
        if is_empty(value):
            continue
        if is_empty(existing.get(key)):
            updates[key] = value
    return updates
