from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from checksheet.errors import ConflictError, NotFoundError, ValidationError
from checksheet.models import FolderModel, TemplateModel
from checksheet.utils import now_utc, to_iso

logger = logging.getLogger(__name__)


def _folder_output(row: FolderModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "parent_id": row.parent_id,
        "user_id": row.user_id,
        "created_at": to_iso(row.created_at),
        "updated_at": to_iso(row.updated_at),
    }


def _optional_id(value: Any, name: str) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer") from exc


def _clean_name(value: Any) -> str:
    name = str(value or "").strip()
    if not name:
        raise ValidationError("Folder name is required")
    return name


def _name_taken(
    session: Session,
    name: str,
    parent_id: int | None,
    user_id: int | None,
    exclude_id: int | None = None,
) -> bool:
    query = select(FolderModel.id).where(FolderModel.name == name)
    if parent_id is None:
        query = query.where(FolderModel.parent_id.is_(None))
    else:
        query = query.where(FolderModel.parent_id == parent_id)
    if user_id is None:
        query = query.where(FolderModel.user_id.is_(None))
    else:
        query = query.where(FolderModel.user_id == user_id)
    if exclude_id is not None:
        query = query.where(FolderModel.id != exclude_id)
    return session.execute(query.limit(1)).first() is not None


def require_folder(session: Session, folder_id: int) -> FolderModel:
    row = session.get(FolderModel, folder_id)
    if row is None:
        raise NotFoundError("Folder not found")
    return row


def create_folder(session: Session, payload: dict[str, Any]) -> dict[str, Any]:
    name = _clean_name(payload.get("name"))
    parent_id = _optional_id(payload.get("parent_id"), "parent_id")
    user_id = _optional_id(payload.get("user_id"), "user_id")
    if parent_id is not None:
        require_folder(session, parent_id)
    if _name_taken(session, name, parent_id, user_id):
        raise ConflictError("A folder with this name already exists in this location")

    now = now_utc()
    row = FolderModel(name=name, parent_id=parent_id, user_id=user_id, created_at=now, updated_at=now)
    session.add(row)
    session.flush()
    logger.info("Created folder %s (%s)", row.id, name)
    return _folder_output(row)


def folder_tree(session: Session, user_id: int | None = None) -> list[dict[str, Any]]:
    """Folders as nested nodes; ``itemCount`` includes active forms of all descendants."""
    query = select(FolderModel).order_by(FolderModel.name, FolderModel.id)
    if user_id is not None:
        query = query.where(FolderModel.user_id == user_id)
    rows = list(session.scalars(query))

    counts = dict(
        session.execute(
            select(TemplateModel.folder_id, func.count())
            .where(TemplateModel.is_active.is_(True), TemplateModel.folder_id.is_not(None))
            .group_by(TemplateModel.folder_id)
        ).all()
    )

    nodes = {row.id: {**_folder_output(row), "directCount": counts.get(row.id, 0), "children": []} for row in rows}
    roots: list[dict[str, Any]] = []
    for row in rows:
        node = nodes[row.id]
        parent = nodes.get(row.parent_id) if row.parent_id is not None else None
        if parent is None:
            roots.append(node)
        else:
            parent["children"].append(node)

    def total(node: dict[str, Any]) -> int:
        node["itemCount"] = node["directCount"] + sum(total(child) for child in node["children"])
        return node["itemCount"]

    for node in roots:
        total(node)
    return roots


def rename_folder(session: Session, folder_id: int, payload: dict[str, Any]) -> dict[str, Any]:
    row = require_folder(session, folder_id)
    name = _clean_name(payload.get("name"))
    if _name_taken(session, name, row.parent_id, row.user_id, exclude_id=row.id):
        raise ConflictError("A folder with this name already exists in this location")
    row.name = name
    row.updated_at = now_utc()
    session.flush()
    return _folder_output(row)


def _descendant_ids(session: Session, folder_id: int) -> list[int]:
    children: dict[int | None, list[int]] = {}
    for fid, parent_id in session.execute(select(FolderModel.id, FolderModel.parent_id)):
        children.setdefault(parent_id, []).append(fid)
    result = [folder_id]
    stack = [folder_id]
    while stack:
        for child in children.get(stack.pop(), []):
            result.append(child)
            stack.append(child)
    return result


def delete_folder(session: Session, folder_id: int) -> None:
    row = require_folder(session, folder_id)
    ids = _descendant_ids(session, row.id)
    forms = session.execute(
        select(func.count())
        .select_from(TemplateModel)
        .where(TemplateModel.folder_id.in_(ids), TemplateModel.is_active.is_(True))
    ).scalar_one()
    if forms:
        raise ConflictError(
            "Cannot delete folder that contains forms. Move or delete the forms first.",
            item_count=forms,
        )
    session.delete(row)
    session.flush()
    logger.info("Deleted folder %s", folder_id)


def move_forms(session: Session, payload: dict[str, Any]) -> int:
    form_ids = payload.get("formIds") or payload.get("form_ids")
    if not isinstance(form_ids, list) or not form_ids:
        raise ValidationError("formIds must be a non-empty list")
    ids = [_optional_id(value, "formIds") for value in form_ids]
    folder_id = _optional_id(payload.get("folderId", payload.get("folder_id")), "folderId")
    if folder_id is not None:
        require_folder(session, folder_id)
    result = session.execute(
        update(TemplateModel)
        .where(TemplateModel.id.in_([fid for fid in ids if fid is not None]))
        .values(folder_id=folder_id, updated_at=now_utc())
    )
    logger.info("Moved %d forms to folder %s", result.rowcount, folder_id)
    return result.rowcount
