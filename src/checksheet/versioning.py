from __future__ import annotations

import logging
import re
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from checksheet import store, tables
from checksheet.errors import VersionConflictError
from checksheet.models import TemplateModel
from checksheet.translator import sanitize_identifier, simple_type
from checksheet.utils import now_utc

logger = logging.getLogger(__name__)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def types_compatible(old_kind: str, new_kind: str) -> bool:
    if new_kind == "text" or old_kind == new_kind:
        return True
    return {old_kind, new_kind} == {"integer", "decimal"}


def convert_value(value: Any, old_kind: str, new_kind: str) -> Any:
    if value is None:
        return None
    if new_kind == "text":
        if isinstance(value, str):
            return value
        if old_kind == "boolean" or isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, datetime):
            return value.strftime("%Y-%m-%d %H:%M:%S")
        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")
        if isinstance(value, time):
            return value.strftime("%H:%M:%S")
        if isinstance(value, Decimal):
            return format(value, "f")
        return str(value)
    if old_kind == "text" and new_kind == "date":
        text = str(value).strip()
        if not _ISO_DATE.match(text):
            return None
        try:
            return date.fromisoformat(text)
        except ValueError:
            return None
    if new_kind == "integer":
        return int(value)
    if new_kind == "decimal":
        return float(value)
    return value


def migratable_columns(
    old_columns: dict[str, Any],
    new_columns: dict[str, Any],
    changes: list[dict[str, Any]],
) -> list[tuple[str, str, str]]:
    """Columns that can be carried into the new table, as ``(name, old, new)`` kinds.

    Breaking-changed fields are always excluded, whatever their types.
    """
    breaking = {
        sanitize_identifier(change["fieldName"])
        for change in changes
        if change["breakingChange"]
    }
    result: list[tuple[str, str, str]] = []
    for name, old_type in old_columns.items():
        if name in tables.METADATA_COLUMNS:
            continue
        if name.lower() in breaking:
            logger.debug("Skipping %s: breaking change", name)
            continue
        if name not in new_columns:
            logger.debug("Skipping %s: not in new table", name)
            continue
        old_kind = simple_type(old_type)
        new_kind = simple_type(new_columns[name])
        if not types_compatible(old_kind, new_kind):
            logger.debug("Skipping %s: type mismatch (%s -> %s)", name, old_kind, new_kind)
            continue
        result.append((name, old_kind, new_kind))
    return result


def migrate_compatible_rows(
    conn: Connection,
    old_table_name: str,
    new_table_name: str,
    changes: list[dict[str, Any]],
    version: int,
    limit: int = 1000,
) -> int:
    """Copy the most recent rows of compatible columns into a forked table.

    Failures are logged and reported as zero migrated rows; the savepoint keeps
    the surrounding fork intact.
    """
    try:
        with conn.begin_nested():
            old_columns = tables.table_columns(conn, old_table_name)
            new_columns = tables.table_columns(conn, new_table_name)
            if not old_columns or not new_columns:
                return 0
            plan = migratable_columns(old_columns, new_columns, changes)
            if not plan:
                logger.info("No migratable columns from %s", old_table_name)
                return 0

            old_table = tables.reflect_table(conn, old_table_name)
            new_table = tables.reflect_table(conn, new_table_name)
            query = (
                select(old_table)
                .order_by(old_table.c.submitted_at.desc(), old_table.c.id.desc())
                .limit(limit)
            )
            rows = []
            for record in conn.execute(query).mappings():
                row = {
                    "user_id": record["user_id"],
                    "submitted_at": record["submitted_at"],
                    "template_version": version,
                    "original_submission_id": record["id"],
                }
                for name, old_kind, new_kind in plan:
                    row[name] = convert_value(record[name], old_kind, new_kind)
                rows.append(row)
            if rows:
                conn.execute(new_table.insert(), rows)
    except (SQLAlchemyError, ValueError, TypeError) as exc:
        logger.warning("Migration failed from %s to %s: %s", old_table_name, new_table_name, exc)
        return 0

    logger.info("Migrated %d records from %s to %s", len(rows), old_table_name, new_table_name)
    return len(rows)


def fork_version(
    session: Session,
    current: TemplateModel,
    content: dict[str, Any],
    fields: list[dict[str, Any]],
    changes: list[dict[str, Any]],
    row_limit: int = 1000,
) -> dict[str, Any]:
    """Archive ``current`` and create the next version of its lineage with a new table."""
    root_id = store.lineage_root_id(current)
    now = now_utc()
    current.is_active = False
    current.archived_at = now
    current.updated_at = now
    session.flush()

    new_version = store.next_version(session, root_id)
    new_table_name = tables.version_table_name(root_id, new_version)
    values = {
        **content,
        "table_name": new_table_name,
        "version": new_version,
        "parent_template_id": root_id,
        "is_active": True,
    }
    values.setdefault("folder_id", current.folder_id)
    try:
        with session.begin_nested():
            new_row = store.insert_template(session, values)
    except IntegrityError as exc:
        raise VersionConflictError(
            "Version number already allocated for this template",
            root_id=root_id,
            version=new_version,
        ) from exc

    conn = session.connection()
    warnings = tables.create_submission_table(conn, new_table_name, fields)

    migrated = 0
    if current.table_name:
        migrated = migrate_compatible_rows(
            conn, current.table_name, new_table_name, changes, new_version, row_limit
        )

    store.copy_images(session, current.id, new_row.id)
    store.copy_fields(session, current.id, new_row.id)
    if fields:
        store.replace_fields(session, new_row.id, fields)

    logger.info(
        "Forked template %s into %s (lineage %s, version %d, %d rows migrated)",
        current.id,
        new_row.id,
        root_id,
        new_version,
        migrated,
    )
    return {
        "row": new_row,
        "template_id": new_row.id,
        "parent_template_id": root_id,
        "version": new_version,
        "table_name": new_table_name,
        "migrated_rows": migrated,
        "warnings": warnings,
    }
