from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    func,
    inspect,
    select,
    text,
)
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeEngine

from checksheet.translator import translate_fields
from checksheet.utils import dumps_json

logger = logging.getLogger(__name__)

METADATA_COLUMNS = ("id", "user_id", "submitted_at", "template_version", "original_submission_id")
REPORT_METADATA_COLUMNS = (
    "id",
    "submission_id",
    "template_id",
    "template_name",
    "template_version",
    "user_id",
    "submitted_at",
)


def version_table_name(root_id: int, version: int) -> str:
    return f"checksheet_{root_id}_{version}"


def report_table_name(table_name: str) -> str:
    return f"{table_name}_report"


def report_view_name(table_name: str) -> str:
    return f"{table_name}_report_view"


def _index_prefix(table_name: str) -> str:
    return re.sub(r"[^a-z0-9]", "_", table_name.lower())


def _quote(conn: Connection, identifier: str) -> str:
    return conn.dialect.identifier_preparer.quote_identifier(identifier)


def build_submission_table(
    table_name: str, fields: Iterable[dict[str, Any]]
) -> tuple[Table, list[str]]:
    columns, warnings = translate_fields(fields, reserved=METADATA_COLUMNS)
    table = Table(
        table_name,
        MetaData(),
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_id", Integer),
        Column("submitted_at", DateTime(timezone=True), server_default=func.now()),
        Column("template_version", Integer, server_default=text("1")),
        Column("original_submission_id", Integer, nullable=True),
        *[Column(name, type_) for name, type_, _ in columns],
    )
    prefix = _index_prefix(table_name)
    Index(f"idx_{prefix}_user", table.c.user_id)
    Index(f"idx_{prefix}_date", table.c.submitted_at.desc())
    Index(f"idx_{prefix}_version", table.c.template_version)
    return table, warnings


def create_submission_table(
    conn: Connection, table_name: str, fields: Iterable[dict[str, Any]]
) -> list[str]:
    """Create the physical table backing one template version.

    Runs on the caller's connection so the DDL commits or rolls back together
    with the template row. Existing tables are left untouched.
    """
    table, warnings = build_submission_table(table_name, fields)
    table.metadata.create_all(conn, checkfirst=True)
    logger.info("Created submission table %s with %d columns", table_name, len(table.columns))
    for warning in warnings:
        logger.warning("%s: %s", table_name, warning)
    return warnings


def has_table(conn: Connection, table_name: str) -> bool:
    return inspect(conn).has_table(table_name)


def table_columns(conn: Connection, table_name: str) -> dict[str, TypeEngine]:
    """Actual column names of a table, in ordinal order, with their reflected types."""
    return {column["name"]: column["type"] for column in inspect(conn).get_columns(table_name)}


def reflect_table(conn: Connection, table_name: str) -> Table:
    return Table(table_name, MetaData(), autoload_with=conn)


def add_missing_columns(
    conn: Connection, table_name: str, fields: Iterable[dict[str, Any]]
) -> tuple[list[str], list[str]]:
    existing = {name.lower() for name in table_columns(conn, table_name)}
    columns, warnings = translate_fields(fields, reserved=METADATA_COLUMNS)
    added: list[str] = []
    for name, type_, _ in columns:
        if name in existing:
            continue
        ddl = (
            f"ALTER TABLE {_quote(conn, table_name)} "
            f"ADD COLUMN {_quote(conn, name)} {type_.compile(dialect=conn.dialect)}"
        )
        try:
            with conn.begin_nested():
                conn.exec_driver_sql(ddl)
        except SQLAlchemyError as exc:
            logger.warning("Could not add column %s to %s: %s", name, table_name, exc)
            warnings.append(f"Column '{name}' could not be added")
            continue
        added.append(name)
        logger.info("Added column %s to %s", name, table_name)
    return added, warnings


def drop_table(conn: Connection, table_name: str) -> None:
    conn.exec_driver_sql(f"DROP VIEW IF EXISTS {_quote(conn, report_view_name(table_name))}")
    conn.exec_driver_sql(f"DROP TABLE IF EXISTS {_quote(conn, report_table_name(table_name))}")
    conn.exec_driver_sql(f"DROP TABLE IF EXISTS {_quote(conn, table_name)}")
    logger.info("Dropped table %s", table_name)


def create_report_artifacts(
    conn: Connection, table_name: str, fields: Iterable[dict[str, Any]]
) -> bool:
    """Create the denormalized report table and its labelled view, once.

    Returns False when the report table already exists.
    """
    report_name = report_table_name(table_name)
    if has_table(conn, report_name):
        return False

    columns, _ = translate_fields(fields, reserved=REPORT_METADATA_COLUMNS)
    report = Table(
        report_name,
        MetaData(),
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("submission_id", Integer),
        Column("template_id", Integer),
        Column("template_name", Text),
        Column("template_version", Integer),
        Column("user_id", Integer),
        Column("submitted_at", DateTime(timezone=True)),
        *[Column(name, Text) for name, _, _ in columns],
    )
    report.create(conn)

    used = set(REPORT_METADATA_COLUMNS)
    projections = [_quote(conn, name) for name in REPORT_METADATA_COLUMNS]
    for name, _, field in columns:
        label = str(field.get("label") or "").strip() or name
        alias = label
        suffix = 2
        while alias.lower() in used:
            alias = f"{label} ({suffix})"
            suffix += 1
        used.add(alias.lower())
        projections.append(f"{_quote(conn, name)} AS {_quote(conn, alias)}")
    conn.exec_driver_sql(
        f"CREATE VIEW {_quote(conn, report_view_name(table_name))} AS "
        f"SELECT {', '.join(projections)} FROM {_quote(conn, report_name)}"
    )
    logger.info("Created report artifacts for %s", table_name)
    return True


def write_report_row(
    conn: Connection,
    table_name: str,
    template: dict[str, Any],
    submission_id: int,
    user_id: Any,
    submitted_at: datetime,
    values: dict[str, Any],
) -> None:
    report = reflect_table(conn, report_table_name(table_name))
    row: dict[str, Any] = {
        "submission_id": submission_id,
        "template_id": template["id"],
        "template_name": template.get("name"),
        "template_version": template.get("version"),
        "user_id": user_id,
        "submitted_at": submitted_at,
    }
    for column, value in values.items():
        if column not in report.c or column in REPORT_METADATA_COLUMNS:
            continue
        if value is None or isinstance(value, str):
            row[column] = value
        elif isinstance(value, bool):
            row[column] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            row[column] = dumps_json(value)
        elif hasattr(value, "isoformat"):
            row[column] = value.isoformat()
        else:
            row[column] = str(value)
    conn.execute(report.insert().values(**row))


def fetch_rows(
    conn: Connection, table_name: str, limit: int | None = None
) -> list[dict[str, Any]]:
    table = reflect_table(conn, table_name)
    query = select(table).order_by(table.c.submitted_at.desc(), table.c.id.desc())
    if limit is not None:
        query = query.limit(limit)
    return [dict(row._mapping) for row in conn.execute(query)]


def count_rows(conn: Connection, table_name: str) -> int:
    table = reflect_table(conn, table_name)
    return conn.execute(select(func.count()).select_from(table)).scalar_one()
