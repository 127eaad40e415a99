from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal

import pytest
from sqlalchemy import Boolean, Date, Integer, Numeric, Text

from checksheet import tables
from checksheet.versioning import (
    convert_value,
    migratable_columns,
    migrate_compatible_rows,
    types_compatible,
)


@pytest.mark.parametrize(
    "old, new, expected",
    [
        ("text", "text", True),
        ("boolean", "text", True),
        ("date", "text", True),
        ("integer", "decimal", True),
        ("decimal", "integer", True),
        ("text", "decimal", False),
        ("boolean", "decimal", False),
        ("text", "date", False),
        ("decimal", "date", False),
    ],
)
def test_types_compatible(old, new, expected):
    assert types_compatible(old, new) is expected


def test_convert_value_to_text():
    assert convert_value(date(2024, 1, 2), "date", "text") == "2024-01-02"
    assert convert_value(datetime(2024, 1, 2, 3, 4, 5), "timestamp", "text") == "2024-01-02 03:04:05"
    assert convert_value(True, "boolean", "text") == "true"
    assert convert_value(False, "boolean", "text") == "false"
    assert convert_value(Decimal("12.5000"), "decimal", "text") == "12.5000"
    assert convert_value(time(7, 0), "time", "text") == "07:00:00"
    assert convert_value(None, "date", "text") is None


def test_convert_text_to_date_requires_strict_iso():
    assert convert_value("2024-03-09", "text", "date") == date(2024, 3, 9)
    assert convert_value("09/03/2024", "text", "date") is None
    assert convert_value("2024-13-45", "text", "date") is None


def test_migratable_columns_excludes_breaking_and_incompatible():
    old = {
        "id": Integer(),
        "user_id": Integer(),
        "lot_number": Text(),
        "passed": Boolean(),
        "weight": Numeric(12, 4),
        "removed": Text(),
    }
    new = {
        "id": Integer(),
        "user_id": Integer(),
        "lot_number": Text(),
        "passed": Text(),
        "weight": Date(),
    }
    changes = [
        {"fieldId": "f1", "fieldName": "Passed", "oldType": "boolean", "newType": "text", "breakingChange": True},
        {"fieldId": "f2", "fieldName": "weight", "oldType": "number", "newType": "date", "breakingChange": True},
    ]

    assert migratable_columns(old, new, changes) == [("lot_number", "text", "text")]


def test_migrate_compatible_rows_copies_newest_rows(storage):
    old_fields = [
        {"instance_id": "a", "field_name": "lot", "field_type": "text"},
        {"instance_id": "b", "field_name": "weight", "field_type": "number"},
        {"instance_id": "c", "field_name": "ok", "field_type": "boolean"},
    ]
    new_fields = [
        {"instance_id": "a", "field_name": "lot", "field_type": "text"},
        {"instance_id": "b", "field_name": "weight", "field_type": "calculation"},
        {"instance_id": "c", "field_name": "ok", "field_type": "text"},
    ]
    changes = [
        {"fieldId": "c", "fieldName": "ok", "oldType": "boolean", "newType": "text", "breakingChange": True},
    ]
    with storage.transaction() as session:
        conn = session.connection()
        tables.create_submission_table(conn, "checksheet_90_1", old_fields)
        tables.create_submission_table(conn, "checksheet_90_2", new_fields)
        old_table = tables.reflect_table(conn, "checksheet_90_1")
        conn.execute(
            old_table.insert(),
            [
                {"user_id": 1, "submitted_at": datetime(2024, 1, day), "lot": f"L{day}", "weight": day, "ok": True}
                for day in range(1, 6)
            ],
        )

        migrated = migrate_compatible_rows(conn, "checksheet_90_1", "checksheet_90_2", changes, 2, limit=3)
        rows = tables.fetch_rows(conn, "checksheet_90_2")

    assert migrated == 3
    assert [row["lot"] for row in rows] == ["L5", "L4", "L3"]
    assert all(row["template_version"] == 2 for row in rows)
    assert all(row["ok"] is None for row in rows)
    assert [float(row["weight"]) for row in rows] == [5.0, 4.0, 3.0]
    assert {row["original_submission_id"] for row in rows} == {3, 4, 5}


def test_migrate_missing_table_counts_zero(storage):
    with storage.transaction() as session:
        conn = session.connection()
        tables.create_submission_table(
            conn, "checksheet_91_2", [{"instance_id": "a", "field_name": "lot", "field_type": "text"}]
        )
        assert migrate_compatible_rows(conn, "checksheet_91_1", "checksheet_91_2", [], 2) == 0
