from __future__ import annotations

import re
from typing import Any, Iterable

from sqlalchemy import Boolean, Date, DateTime, Numeric, Text, Time
from sqlalchemy.sql import sqltypes
from sqlalchemy.types import TypeEngine

_INVALID_CHARS = re.compile(r"[^a-z0-9_]")
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")

NUMERIC_TYPES = frozenset({"number", "calculation"})
TEMPORAL_TYPES = frozenset({"date", "datetime", "time"})


def sanitize_identifier(name: Any) -> str:
    text = str(name or "").lower()
    text = _INVALID_CHARS.sub("_", text)
    text = _REPEATED_UNDERSCORES.sub("_", text)
    return text.strip("_")


def column_type(field_type: str | None) -> TypeEngine:
    if field_type in NUMERIC_TYPES:
        return Numeric(12, 4)
    if field_type == "date":
        return Date()
    if field_type == "datetime":
        return DateTime()
    if field_type == "time":
        return Time()
    if field_type == "boolean":
        return Boolean()
    return Text()


def column_name_for(field: dict[str, Any]) -> str:
    return sanitize_identifier(field.get("field_name") or field.get("instance_id"))


def translate_fields(
    fields: Iterable[dict[str, Any]],
    reserved: Iterable[str] = (),
) -> tuple[list[tuple[str, TypeEngine, dict[str, Any]]], list[str]]:
    """Map field definitions to physical ``(column, type, field)`` triples.

    Fields whose identifier sanitizes to nothing, or collides with a column
    already claimed (including ``reserved`` metadata columns), are left out of
    the physical schema; a human-readable warning is returned for each.
    """
    columns: list[tuple[str, TypeEngine, dict[str, Any]]] = []
    warnings: list[str] = []
    taken = set(reserved)
    for field in fields:
        source = field.get("field_name") or field.get("instance_id") or ""
        name = column_name_for(field)
        if not name:
            warnings.append(
                f"Field '{source}' has no usable column name and cannot be submitted"
            )
            continue
        if name in taken:
            warnings.append(
                f"Field '{source}' maps to column '{name}' which is already in use"
            )
            continue
        taken.add(name)
        columns.append((name, column_type(field.get("field_type")), field))
    return columns, warnings


def simple_type(type_: TypeEngine) -> str:
    """Collapse a reflected column type to the family used for compatibility checks."""
    if isinstance(type_, (sqltypes.String, sqltypes.Text)):
        return "text"
    if isinstance(type_, sqltypes.Boolean):
        return "boolean"
    if isinstance(type_, sqltypes.Integer):
        return "integer"
    if isinstance(type_, (sqltypes.Numeric, sqltypes.Float)):
        return "decimal"
    if isinstance(type_, sqltypes.DateTime):
        return "timestamp"
    if isinstance(type_, sqltypes.Date):
        return "date"
    if isinstance(type_, sqltypes.Time):
        return "time"
    return str(type_).lower()
