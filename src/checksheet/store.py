from __future__ import annotations

from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from checksheet.errors import NotFoundError
from checksheet.models import FolderModel, TemplateFieldModel, TemplateImageModel, TemplateModel
from checksheet.schema import FIELD_ATTRIBUTES, field_from_row, field_row_values
from checksheet.utils import dumps_json, loads_json, now_utc

JSON_TEMPLATE_COLUMNS = ("field_configurations", "field_positions", "sheets", "access_control")

IMAGE_COPY_COLUMNS = (
    "original_path",
    "filename",
    "mime_type",
    "image_data",
    "size",
    "position_index",
    "original_src",
    "element_id",
)


def template_to_dict(row: TemplateModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "html_content": row.html_content or "",
        "original_html_content": row.original_html_content or "",
        "field_configurations": loads_json(row.field_configurations) or {},
        "field_positions": loads_json(row.field_positions) or {},
        "sheets": loads_json(row.sheets) or [],
        "css_content": row.css_content or "",
        "access_control": loads_json(row.access_control),
        "table_name": row.table_name,
        "version": row.version or 1,
        "parent_template_id": row.parent_template_id,
        "is_active": bool(row.is_active),
        "folder_id": row.folder_id,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "archived_at": row.archived_at,
    }


def image_to_dict(row: TemplateImageModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "template_id": row.template_id,
        "original_path": row.original_path,
        "filename": row.filename,
        "mime_type": row.mime_type,
        "size": row.size,
        "position_index": row.position_index,
        "original_src": row.original_src,
        "element_id": row.element_id,
        "created_at": row.created_at,
    }


def content_values(payload: dict[str, Any]) -> dict[str, Any]:
    """Template columns carried by a publish/update payload."""
    values: dict[str, Any] = {
        "name": str(payload.get("name") or "").strip(),
        "html_content": payload.get("html_content") or "",
        "original_html_content": payload.get("original_html_content") or "",
        "css_content": payload.get("css_content") or "",
    }
    for column in JSON_TEMPLATE_COLUMNS:
        value = payload.get(column)
        values[column] = dumps_json(value) if value else None
    return values


def get_template(session: Session, template_id: int) -> TemplateModel | None:
    return session.get(TemplateModel, template_id)


def require_template(session: Session, template_id: int) -> TemplateModel:
    row = get_template(session, template_id)
    if row is None:
        raise NotFoundError("Template not found")
    return row


def lineage_root_id(row: TemplateModel) -> int:
    return row.parent_template_id or row.id


def lineage_rows(session: Session, root_id: int) -> list[TemplateModel]:
    query = (
        select(TemplateModel)
        .where(or_(TemplateModel.id == root_id, TemplateModel.parent_template_id == root_id))
        .order_by(TemplateModel.version.asc())
    )
    return list(session.scalars(query))


def next_version(session: Session, root_id: int) -> int:
    query = select(func.coalesce(func.max(TemplateModel.version), 0)).where(
        or_(TemplateModel.id == root_id, TemplateModel.parent_template_id == root_id)
    )
    return int(session.execute(query).scalar_one()) + 1


def insert_template(session: Session, values: dict[str, Any]) -> TemplateModel:
    now = now_utc()
    row = TemplateModel(created_at=now, updated_at=now, **values)
    session.add(row)
    session.flush()
    return row


def list_templates(session: Session, include_archived: bool = False) -> list[dict[str, Any]]:
    query = (
        select(TemplateModel, FolderModel.name)
        .outerjoin(FolderModel, TemplateModel.folder_id == FolderModel.id)
        .order_by(TemplateModel.created_at.desc(), TemplateModel.id.desc())
    )
    if not include_archived:
        query = query.where(TemplateModel.is_active.is_(True))
    result = []
    for row, folder_name in session.execute(query):
        result.append(
            {
                "id": row.id,
                "name": row.name,
                "table_name": row.table_name,
                "version": row.version,
                "parent_template_id": row.parent_template_id,
                "is_active": bool(row.is_active),
                "created_at": row.created_at,
                "folder_id": row.folder_id,
                "folder_name": folder_name,
                "access_control": loads_json(row.access_control),
            }
        )
    return result


def list_fields(session: Session, template_id: int) -> list[dict[str, Any]]:
    query = (
        select(TemplateFieldModel)
        .where(TemplateFieldModel.template_id == template_id)
        .order_by(TemplateFieldModel.id)
    )
    return [field_from_row(row) for row in session.scalars(query)]


def replace_fields(session: Session, template_id: int, fields: list[dict[str, Any]]) -> None:
    session.execute(delete(TemplateFieldModel).where(TemplateFieldModel.template_id == template_id))
    for field in fields:
        session.add(TemplateFieldModel(template_id=template_id, **field_row_values(field)))
    session.flush()


def copy_fields(session: Session, source_id: int, target_id: int) -> int:
    rows = session.scalars(
        select(TemplateFieldModel)
        .where(TemplateFieldModel.template_id == source_id)
        .order_by(TemplateFieldModel.id)
    ).all()
    columns = ["instance_id", "field_name", "field_type"] + [column for column, _, _ in FIELD_ATTRIBUTES]
    for row in rows:
        session.add(
            TemplateFieldModel(
                template_id=target_id,
                **{column: getattr(row, column) for column in columns},
            )
        )
    session.flush()
    return len(rows)


def list_images(session: Session, template_id: int) -> list[TemplateImageModel]:
    query = (
        select(TemplateImageModel)
        .where(TemplateImageModel.template_id == template_id)
        .order_by(TemplateImageModel.position_index.asc().nulls_last(), TemplateImageModel.filename)
    )
    return list(session.scalars(query))


def get_image(session: Session, template_id: int, image_id: int) -> TemplateImageModel | None:
    row = session.get(TemplateImageModel, image_id)
    if row is None or row.template_id != template_id:
        return None
    return row


def copy_images(session: Session, source_id: int, target_id: int) -> int:
    rows = list_images(session, source_id)
    for row in rows:
        session.add(
            TemplateImageModel(
                template_id=target_id,
                created_at=now_utc(),
                **{column: getattr(row, column) for column in IMAGE_COPY_COLUMNS},
            )
        )
    session.flush()
    return len(rows)


def delete_lineage(session: Session, root_id: int) -> list[TemplateModel]:
    """Delete the template rows of a lineage with their fields and images.

    Physical tables are the caller's responsibility.
    """
    rows = lineage_rows(session, root_id)
    ids = [row.id for row in rows]
    if not ids:
        return rows
    session.execute(delete(TemplateImageModel).where(TemplateImageModel.template_id.in_(ids)))
    session.execute(delete(TemplateFieldModel).where(TemplateFieldModel.template_id.in_(ids)))
    session.execute(delete(TemplateModel).where(TemplateModel.id.in_(ids)))
    return rows
