from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field as dc_field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session
from sqlalchemy.types import TypeEngine

from checksheet import store, tables
from checksheet.errors import NotFoundError, ValidationError
from checksheet.translator import NUMERIC_TYPES, TEMPORAL_TYPES, column_name_for, simple_type
from checksheet.utils import dumps_json, now_utc

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "on", "yes", "y", "checked"}
_FALSE_VALUES = {"0", "false", "off", "no", "n", "unchecked"}


@dataclass
class ColumnPlan:
    values: dict[str, Any] = dc_field(default_factory=dict)
    mappings: list[dict[str, Any]] = dc_field(default_factory=list)
    unmatched: list[str] = dc_field(default_factory=list)


def parse_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_boolean(value: Any) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return None
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return None


def coerce_value(field_type: str | None, value: Any) -> Any:
    """Normalize a submitted value according to the field's declared type."""
    if field_type in NUMERIC_TYPES:
        return parse_number(value)
    if field_type in TEMPORAL_TYPES:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return value
    if field_type == "boolean":
        return parse_boolean(value)
    return value


def _parse_temporal(kind: str, value: Any) -> Any:
    if kind == "timestamp":
        if isinstance(value, datetime):
            return value
        return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if kind == "date":
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        text = str(value).strip()
        if "T" in text or " " in text:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        return date.fromisoformat(text)
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value).strip())


def to_column_value(column: str, type_: TypeEngine, value: Any) -> Any:
    """Adapt an already coerced value to the physical column it lands in."""
    if value is None:
        return None
    kind = simple_type(type_)
    if kind in {"decimal", "integer"}:
        number = parse_number(value)
        if number is not None and kind == "integer":
            return int(number)
        return number
    if kind == "boolean":
        return parse_boolean(value)
    if kind in {"timestamp", "date", "time"}:
        try:
            return _parse_temporal(kind, value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(
                f"Invalid {kind} value for field '{column}'", field=column, value=str(value)
            ) from exc
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return dumps_json(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (date, time, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def build_field_lookup(fields: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Map field_name and instance_id, as given and lowercased, to their field."""
    lookup: dict[str, dict[str, Any]] = {}
    for field in fields:
        for key in (field["field_name"], field["instance_id"]):
            if not key:
                continue
            lookup.setdefault(key, field)
            lookup.setdefault(key.lower(), field)
    return lookup


def resolve_submission(
    columns: dict[str, TypeEngine],
    fields: list[dict[str, Any]],
    data: dict[str, Any],
) -> ColumnPlan:
    """Reconcile submitted keys with physical columns and coerce their values."""
    column_map = {
        name.lower(): name for name in columns if name.lower() not in tables.METADATA_COLUMNS
    }
    field_lookup = build_field_lookup(fields)
    field_by_column: dict[str, dict[str, Any]] = {}
    for field in fields:
        field_by_column.setdefault(column_name_for(field), field)

    plan = ColumnPlan()
    for key, raw_value in data.items():
        lowered = str(key).lower()
        matched = column_map.get(lowered)
        strategy = "column"
        field = field_lookup.get(key) or field_lookup.get(lowered)
        if matched is None and field is not None:
            for candidate in (
                field["field_name"].lower(),
                field["instance_id"].lower(),
                column_name_for(field),
            ):
                if candidate and candidate in column_map:
                    matched = column_map[candidate]
                    strategy = "field"
                    break
        if matched is None:
            logger.warning("No column found for submitted field %r", key)
            plan.unmatched.append(key)
            continue
        if matched in plan.values:
            logger.warning("Submitted field %r duplicates column %s; ignored", key, matched)
            plan.unmatched.append(key)
            continue

        if field is None:
            field = field_by_column.get(matched.lower())
        field_type = field["field_type"] if field else None
        value = coerce_value(field_type, raw_value)
        plan.values[matched] = to_column_value(matched, columns[matched], value)
        plan.mappings.append(
            {"submitted": key, "column": matched, "type": field_type, "strategy": strategy}
        )
    return plan


def _coerce_id(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer") from exc


def submit(
    session: Session,
    template_id: Any,
    user_id: Any,
    data: dict[str, Any],
    report_artifacts: bool = False,
) -> dict[str, Any]:
    template_id = _coerce_id(template_id, "template_id")
    user_id = _coerce_id(user_id, "user_id")
    row = store.get_template(session, template_id)
    if row is None or not row.is_active or not row.table_name:
        raise NotFoundError("Template not found or not active")

    conn = session.connection()
    columns = tables.table_columns(conn, row.table_name)
    fields = store.list_fields(session, row.id)
    plan = resolve_submission(columns, fields, data)
    logger.info(
        "Submission for template %s v%s: %d of %d keys mapped",
        row.id,
        row.version,
        len(plan.values),
        len(data),
    )

    if not plan.values:
        raise ValidationError(
            "No valid fields to insert. Check field names.",
            debug={
                "template_id": row.id,
                "template_name": row.name,
                "version": row.version,
                "table": row.table_name,
                "existing_columns": list(columns),
                "submitted_keys": list(data),
                "mappings": plan.mappings,
            },
        )

    table = tables.reflect_table(conn, row.table_name)
    submitted_at = now_utc()
    values = {
        "user_id": user_id,
        "template_version": row.version,
        "submitted_at": submitted_at,
        **plan.values,
    }
    result = conn.execute(table.insert().values(values))
    submission_id = result.inserted_primary_key[0]

    if report_artifacts:
        template = store.template_to_dict(row)
        tables.create_report_artifacts(conn, row.table_name, fields)
        tables.write_report_row(
            conn, row.table_name, template, submission_id, user_id, submitted_at, plan.values
        )

    return {
        "submission_id": submission_id,
        "submitted_at": submitted_at,
        "template_name": row.name,
        "template_version": row.version,
        "fields_mapped": len(plan.values),
        "total_fields": len(data),
        "unmatched_fields": plan.unmatched,
    }
