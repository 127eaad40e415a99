from __future__ import annotations

from typing import Any, Iterable

# (old type, new type) pairs whose existing column cannot hold the new values.
# Deliberately asymmetric; compatible pairs such as number <-> calculation are absent.
BREAKING_PAIRS: frozenset[tuple[str, str]] = frozenset(
    {
        ("text", "number"),
        ("text", "date"),
        ("text", "datetime"),
        ("text", "time"),
        ("text", "boolean"),
        ("textbox", "number"),
        ("textbox", "date"),
        ("number", "text"),
        ("number", "textbox"),
        ("date", "text"),
        ("datetime", "text"),
        ("boolean", "text"),
        ("calculation", "text"),
        # a DECIMAL column cannot store temporal values, nor the reverse
        ("number", "date"),
        ("number", "datetime"),
        ("number", "time"),
        ("calculation", "date"),
        ("calculation", "datetime"),
        ("calculation", "time"),
        ("date", "number"),
        ("datetime", "number"),
        ("time", "number"),
        ("date", "calculation"),
        ("datetime", "calculation"),
        ("time", "calculation"),
        ("time", "text"),
        # a BOOLEAN column holds neither numbers nor temporal values, nor the reverse
        ("boolean", "number"),
        ("boolean", "calculation"),
        ("boolean", "date"),
        ("boolean", "datetime"),
        ("boolean", "time"),
        ("number", "boolean"),
        ("calculation", "boolean"),
        ("date", "boolean"),
        ("datetime", "boolean"),
        ("time", "boolean"),
    }
)


def is_breaking_change(old_type: str, new_type: str) -> bool:
    return (old_type, new_type) in BREAKING_PAIRS


def detect_schema_changes(
    old_fields: Iterable[dict[str, Any]],
    new_fields: Iterable[dict[str, Any]],
) -> list[dict[str, Any]]:
    """Compare stored field types with an incoming field set by instance id.

    Added fields are never reported; removed fields are ignored.
    """
    old_types = {field["instance_id"]: field["field_type"] for field in old_fields}
    changes: list[dict[str, Any]] = []
    for field in new_fields:
        field_id = field["instance_id"]
        old_type = old_types.get(field_id)
        new_type = field["field_type"]
        if old_type is None or old_type == new_type:
            continue
        changes.append(
            {
                "fieldId": field_id,
                "fieldName": field.get("field_name") or field_id,
                "oldType": old_type,
                "newType": new_type,
                "breakingChange": is_breaking_change(old_type, new_type),
            }
        )
    return changes


def has_breaking_changes(changes: Iterable[dict[str, Any]]) -> bool:
    return any(change["breakingChange"] for change in changes)
