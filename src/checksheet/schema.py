from __future__ import annotations

import math
from typing import Any

from jsonschema import Draft7Validator

from checksheet.errors import ValidationError
from checksheet.utils import dumps_json, loads_json, to_iso

# (column, configuration key, default)
FIELD_ATTRIBUTES: list[tuple[str, str, Any]] = [
    ("label", "label", ""),
    ("decimal_places", "decimal_places", None),
    ("options", "options", None),
    ("bg_color", "bgColor", "#ffffff"),
    ("text_color", "textColor", "#000000"),
    ("exact_match_text", "exactMatchText", ""),
    ("exact_match_bg_color", "exactMatchBgColor", "#d4edda"),
    ("min_length", "minLength", None),
    ("min_length_mode", "minLengthMode", "warning"),
    ("min_length_warning_bg", "minLengthWarningBg", "#ffebee"),
    ("max_length", "maxLength", None),
    ("max_length_mode", "maxLengthMode", "warning"),
    ("max_length_warning_bg", "maxLengthWarningBg", "#fff3cd"),
    ("multiline", "multiline", False),
    ("auto_shrink_font", "autoShrinkFont", True),
    ("min_value", "min", None),
    ("max_value", "max", None),
    ("bg_color_in_range", "bgColorInRange", "#ffffff"),
    ("bg_color_below_min", "bgColorBelowMin", "#e3f2fd"),
    ("bg_color_above_max", "bgColorAboveMax", "#ffebee"),
    ("border_color_in_range", "borderColorInRange", "#cccccc"),
    ("border_color_below_min", "borderColorBelowMin", "#2196f3"),
    ("border_color_above_max", "borderColorAboveMax", "#f44336"),
    ("formula", "formula", ""),
    ("position", "position", ""),
    ("sheet_index", "sheetIndex", 0),
    ("date_format", "dateFormat", "yyyy-MMMM-dd"),
    ("show_time_select", "showTimeSelect", False),
    ("datetime_format", "DatetimeFormat", "HH:mm"),
    ("min_date", "minDate", None),
    ("max_date", "maxDate", None),
    ("allow_camera", "allowCamera", False),
    ("allow_upload", "allowUpload", False),
    ("allow_drawing", "allowDrawing", False),
    ("allow_cropping", "allowCropping", False),
    ("max_file_size", "maxFileSize", None),
    ("aspect_ratio_width", "aspectRatioWidth", None),
    ("aspect_ratio_height", "aspectRatioHeight", None),
    ("time_format", "timeFormat", "HH:mm:ss"),
    ("allow_seconds", "allowSeconds", False),
    ("min_time", "minTime", None),
    ("max_time", "maxTime", None),
    ("required", "required", False),
    ("disabled", "disabled", False),
    ("mode", "mode", "signature_over_text"),
    ("allow_text_input", "allowTextInput", True),
    ("allow_signature", "allowSignature", True),
    ("allow_signature_over_text", "allowSignatureOverText", True),
    ("text_font_size", "textFontSize", 16),
]

JSON_ATTRIBUTES = frozenset({"options", "position"})
INT_ATTRIBUTES = frozenset(
    {"decimal_places", "min_length", "max_length", "sheet_index", "max_file_size", "text_font_size"}
)
FLOAT_ATTRIBUTES = frozenset({"min_value", "max_value", "aspect_ratio_width", "aspect_ratio_height"})

TEMPLATE_PAYLOAD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "html_content": {"type": ["string", "null"]},
        "original_html_content": {"type": ["string", "null"]},
        "field_configurations": {
            "type": ["object", "null"],
            "additionalProperties": {"type": "object"},
        },
        "field_positions": {"type": ["object", "array", "null"]},
        "sheets": {"type": ["array", "null"]},
        "css_content": {"type": ["string", "null"]},
        "images": {
            "type": ["object", "null"],
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "filename": {"type": "string"},
                    "mimeType": {"type": "string"},
                    "base64": {"type": "string"},
                    "size": {"type": ["integer", "null"]},
                    "position": {"type": ["integer", "null"]},
                    "order": {"type": ["integer", "null"]},
                    "originalSrc": {"type": ["string", "null"]},
                },
            },
        },
        "access_control": {"type": ["object", "null"]},
        "folder_id": {"type": ["integer", "null"]},
        "is_update": {"type": "boolean"},
        "original_template_id": {"type": ["integer", "string", "null"]},
    },
}

SUBMISSION_PAYLOAD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["template_id", "user_id", "data"],
    "properties": {
        "template_id": {"type": ["integer", "string"]},
        "user_id": {"type": ["integer", "string"]},
        "data": {"type": "object"},
    },
}

_template_validator = Draft7Validator(TEMPLATE_PAYLOAD_SCHEMA)
_submission_validator = Draft7Validator(SUBMISSION_PAYLOAD_SCHEMA)


def _validation_messages(validator: Draft7Validator, payload: Any) -> list[str]:
    errors = sorted(validator.iter_errors(payload), key=lambda err: list(err.path))
    messages = []
    for err in errors:
        location = ".".join(str(part) for part in err.path)
        messages.append(f"{location}: {err.message}" if location else err.message)
    return messages


def validate_template_payload(payload: Any) -> dict[str, Any]:
    messages = _validation_messages(_template_validator, payload)
    if messages:
        raise ValidationError("Invalid template payload", errors=messages)
    if not str(payload.get("name") or "").strip():
        raise ValidationError("Form name is required")
    return payload


def validate_submission_payload(payload: Any) -> dict[str, Any]:
    messages = _validation_messages(_submission_validator, payload)
    if messages or any(payload.get(key) in (None, "") for key in ("template_id", "user_id")):
        raise ValidationError("Invalid submission data", errors=messages)
    return payload


def _attribute_value(column: str, value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if column in INT_ATTRIBUTES or column in FLOAT_ATTRIBUTES:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return default
        if not math.isfinite(number):
            return default
        return int(number) if column in INT_ATTRIBUTES else number
    return value


def normalize_field_configurations(
    field_configurations: dict[str, Any] | None,
) -> list[dict[str, Any]]:
    """Turn the client's ``{field_id: config}`` mapping into field definitions."""
    fields: list[dict[str, Any]] = []
    seen: set[str] = set()
    for field_id, config in (field_configurations or {}).items():
        config = config or {}
        instance_id = str(config.get("instanceId") or field_id)
        if instance_id in seen:
            raise ValidationError(f"Duplicate field instance id ({instance_id})")
        seen.add(instance_id)
        field: dict[str, Any] = {
            "instance_id": instance_id,
            "field_name": str(config.get("field_name") or field_id),
            "field_type": str(config.get("type") or "text"),
        }
        for column, key, default in FIELD_ATTRIBUTES:
            field[column] = _attribute_value(column, config.get(key), default)
        fields.append(field)
    return fields


def field_row_values(field: dict[str, Any]) -> dict[str, Any]:
    """Column values for a ``TemplateFieldModel`` row."""
    values = {
        "instance_id": field["instance_id"],
        "field_name": field["field_name"],
        "field_type": field["field_type"],
    }
    for column, _, default in FIELD_ATTRIBUTES:
        value = field.get(column, default)
        if column in JSON_ATTRIBUTES:
            value = None if value in (None, "") else dumps_json(value)
        values[column] = value
    return values


def field_from_row(row: Any) -> dict[str, Any]:
    field = {
        "instance_id": row.instance_id,
        "field_name": row.field_name,
        "field_type": row.field_type,
    }
    for column, _, default in FIELD_ATTRIBUTES:
        value = getattr(row, column)
        if column in JSON_ATTRIBUTES and isinstance(value, str):
            parsed = loads_json(value)
            value = parsed if parsed is not None else value
        field[column] = default if value is None and default is not None else value
    return field


def field_config_output(field: dict[str, Any]) -> dict[str, Any]:
    """Client (camelCase) shape, as accepted by publish and update."""
    output = {
        "field_name": field["field_name"],
        "type": field["field_type"],
        "instanceId": field["instance_id"],
    }
    for column, key, _ in FIELD_ATTRIBUTES:
        output[key] = field.get(column)
    return output


def template_output(template: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": template["id"],
        "name": template.get("name", ""),
        "html_content": template.get("html_content", ""),
        "original_html_content": template.get("original_html_content", ""),
        "field_configurations": template.get("field_configurations") or {},
        "field_positions": template.get("field_positions") or {},
        "sheets": template.get("sheets") or [],
        "css_content": template.get("css_content", ""),
        "access_control": template.get("access_control"),
        "table_name": template.get("table_name"),
        "version": template.get("version", 1),
        "parent_template_id": template.get("parent_template_id"),
        "is_active": bool(template.get("is_active")),
        "folder_id": template.get("folder_id"),
        "created_at": to_iso(template.get("created_at")),
        "updated_at": to_iso(template.get("updated_at")),
        "archived_at": to_iso(template.get("archived_at")),
    }
