from __future__ import annotations

import pytest

from checksheet.changes import detect_schema_changes, has_breaking_changes, is_breaking_change

LISTED_BREAKING = [
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
]


def _field(instance_id, field_type, field_name=None):
    return {"instance_id": instance_id, "field_type": field_type, "field_name": field_name or instance_id}


@pytest.mark.parametrize("old, new", LISTED_BREAKING)
def test_listed_pairs_are_breaking(old, new):
    assert is_breaking_change(old, new)


@pytest.mark.parametrize(
    "old, new",
    [
        ("number", "calculation"),
        ("calculation", "number"),
        ("text", "textbox"),
        ("textbox", "text"),
        ("textbox", "datetime"),
        ("date", "datetime"),
        ("dropdown", "text"),
    ],
)
def test_unlisted_pairs_are_not_breaking(old, new):
    assert not is_breaking_change(old, new)


@pytest.mark.parametrize("temporal", ["date", "datetime", "time"])
@pytest.mark.parametrize("numeric", ["number", "calculation"])
def test_numeric_temporal_pairs_are_breaking_both_ways(numeric, temporal):
    assert is_breaking_change(numeric, temporal)
    assert is_breaking_change(temporal, numeric)


@pytest.mark.parametrize("other", ["number", "calculation", "date", "datetime", "time"])
def test_boolean_pairs_are_breaking_both_ways(other):
    assert is_breaking_change("boolean", other)
    assert is_breaking_change(other, "boolean")


def test_time_to_text_is_breaking():
    assert is_breaking_change("time", "text")


def test_table_is_asymmetric():
    assert is_breaking_change("textbox", "number")
    assert not is_breaking_change("text", "textbox")
    assert is_breaking_change("boolean", "text")
    assert not is_breaking_change("boolean", "textbox")


def test_detect_changes_reports_type_changes_only():
    old = [_field("f1", "text", "Lot"), _field("f2", "number", "Weight"), _field("f3", "text")]
    new = [
        _field("f1", "number", "Lot"),
        _field("f2", "calculation", "Weight"),
        _field("f4", "date"),
    ]
    changes = detect_schema_changes(old, new)

    assert changes == [
        {"fieldId": "f1", "fieldName": "Lot", "oldType": "text", "newType": "number", "breakingChange": True},
        {
            "fieldId": "f2",
            "fieldName": "Weight",
            "oldType": "number",
            "newType": "calculation",
            "breakingChange": False,
        },
    ]
    assert has_breaking_changes(changes)


def test_additions_and_removals_are_not_breaking():
    old = [_field("f1", "text")]
    new = [_field("f2", "number"), _field("f3", "boolean")]
    changes = detect_schema_changes(old, new)

    assert changes == []
    assert not has_breaking_changes(changes)
