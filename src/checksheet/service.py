from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from checksheet import images, store, submissions, tables, versioning
from checksheet.changes import detect_schema_changes, has_breaking_changes
from checksheet.config import Settings
from checksheet.errors import NotFoundError, ValidationError, VersionConflictError
from checksheet.folders import require_folder
from checksheet.models import TemplateModel
from checksheet.schema import (
    field_config_output,
    normalize_field_configurations,
    template_output,
    validate_submission_payload,
    validate_template_payload,
)
from checksheet.storage import Storage
from checksheet.utils import dumps_json, loads_json, now_utc, to_iso

logger = logging.getLogger(__name__)

PERMISSION_KEY_SEPARATOR = "|||"


def _template_id(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Template id must be an integer") from exc


def _folder_id(session: Session, payload: dict[str, Any]) -> int | None:
    value = payload.get("folder_id")
    if value in (None, ""):
        return None
    try:
        folder_id = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("folder_id must be an integer") from exc
    require_folder(session, folder_id)
    return folder_id


def _image_meta(row: Any, api_prefix: str) -> dict[str, Any]:
    meta = store.image_to_dict(row)
    meta["created_at"] = to_iso(meta["created_at"])
    meta["url"] = f"{api_prefix}/templates/{row.template_id}/images/{row.id}"
    return meta


def normalize_access_control(payload: dict[str, Any]) -> dict[str, Any]:
    """Stored access policy: selected groups plus per-field permissions by group."""
    groups = []
    for value in payload.get("groups") or []:
        try:
            groups.append(int(value))
        except (TypeError, ValueError):
            logger.warning("Invalid group id %r in access control (skipping)", value)

    permissions: dict[str, dict[str, bool]] = {}
    for key, permission in (payload.get("field_permissions") or {}).items():
        parts = str(key).split(PERMISSION_KEY_SEPARATOR)
        if len(parts) != 2 or not parts[0]:
            logger.warning("Invalid permission key format (skipping): %s", key)
            continue
        try:
            group_id = int(parts[1])
        except ValueError:
            logger.warning("Invalid group id in permission key (skipping): %s", key)
            continue
        permission = permission if isinstance(permission, dict) else {}
        view = permission.get("canView")
        edit = permission.get("canEdit")
        permissions[f"{parts[0]}{PERMISSION_KEY_SEPARATOR}{group_id}"] = {
            "canView": True if view is None else bool(view),
            "canEdit": True if edit is None else bool(edit),
            "canDelete": bool(permission.get("canDelete")),
        }

    return {
        "groups": groups,
        "field_permissions": permissions,
        "default_access": payload.get("default_access"),
        "updated_at": to_iso(now_utc()),
    }


class ChecksheetService:
    def __init__(self, storage: Storage, settings: Settings) -> None:
        self.storage = storage
        self.settings = settings

    def _store_images(
        self,
        session: Session,
        row: TemplateModel,
        uploads: dict[str, Any] | None,
    ) -> list[dict[str, Any]]:
        taken = [image.position_index for image in store.list_images(session, row.id)]
        saved = images.save_images(session, row.id, uploads, row.html_content, taken)
        if saved:
            row.html_content = images.rewrite_markup(
                row.html_content, row.id, saved, self.settings.api_prefix
            )
            session.flush()
        return saved

    # -- templates -------------------------------------------------------

    def publish(self, payload: dict[str, Any]) -> dict[str, Any]:
        validate_template_payload(payload)
        fields = normalize_field_configurations(payload.get("field_configurations"))
        with self.storage.transaction() as session:
            values = store.content_values(payload)
            values["folder_id"] = _folder_id(session, payload)
            row = store.insert_template(session, {**values, "version": 1, "is_active": True})
            store.replace_fields(session, row.id, fields)

            table_name = tables.version_table_name(row.id, 1)
            warnings = tables.create_submission_table(session.connection(), table_name, fields)
            row.table_name = table_name
            session.flush()
            saved = self._store_images(session, row, payload.get("images"))
            template_id = row.id

        logger.info(
            "Published template %s as %s (%d fields, %d images)",
            template_id,
            table_name,
            len(fields),
            len(saved),
        )
        return {
            "template_id": template_id,
            "version": 1,
            "table_name": table_name,
            "warnings": warnings,
            "images_saved": len(saved),
        }

    def update(self, template_id: Any, payload: dict[str, Any]) -> dict[str, Any]:
        template_id = _template_id(template_id)
        validate_template_payload(payload)
        fields = normalize_field_configurations(payload.get("field_configurations"))
        attempts = self.settings.version_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                with self.storage.transaction() as session:
                    return self._update(session, template_id, payload, fields)
            except VersionConflictError as exc:
                logger.warning(
                    "Version conflict updating template %s (attempt %d/%d): %s",
                    template_id,
                    attempt,
                    attempts,
                    exc.details,
                )
        raise VersionConflictError("Could not allocate a new version, please retry")

    def _update(
        self,
        session: Session,
        template_id: int,
        payload: dict[str, Any],
        fields: list[dict[str, Any]],
    ) -> dict[str, Any]:
        current = store.require_template(session, template_id)
        if not current.is_active:
            raise ValidationError(
                "Template version is archived; update the active version",
                active_template_id=self._active_id(session, current),
            )

        content = {
            key: value
            for key, value in store.content_values(payload).items()
            if key == "name" or key in payload
        }
        if "folder_id" in payload:
            content["folder_id"] = _folder_id(session, payload)
        replace = payload.get("field_configurations") is not None

        old_fields = store.list_fields(session, current.id)
        changes = detect_schema_changes(old_fields, fields) if replace else []

        if has_breaking_changes(changes):
            carried = {
                column: getattr(current, column)
                for column in store.content_values({})
                if column not in content
            }
            result = versioning.fork_version(
                session,
                current,
                {**carried, **content},
                fields,
                changes,
                self.settings.migration_row_limit,
            )
            new_row = result.pop("row")
            self._store_images(session, new_row, payload.get("images"))
            logger.info(
                "Template %s forked to version %d (%s)",
                template_id,
                result["version"],
                result["table_name"],
            )
            return {**result, "changes": changes, "is_new_version": True}

        for column, value in content.items():
            setattr(current, column, value)
        current.updated_at = now_utc()
        if replace:
            store.replace_fields(session, current.id, fields)

        added: list[str] = []
        warnings: list[str] = []
        if replace and current.table_name:
            conn = session.connection()
            if tables.has_table(conn, current.table_name):
                added, warnings = tables.add_missing_columns(conn, current.table_name, fields)
            else:
                warnings = tables.create_submission_table(conn, current.table_name, fields)
        session.flush()
        self._store_images(session, current, payload.get("images"))
        logger.info(
            "Template %s updated in place (%d changes, %d columns added)",
            template_id,
            len(changes),
            len(added),
        )
        return {
            "template_id": current.id,
            "version": current.version,
            "table_name": current.table_name,
            "changes": changes,
            "is_new_version": False,
            "added_columns": added,
            "warnings": warnings,
        }

    def _active_id(self, session: Session, row: TemplateModel) -> int | None:
        for member in store.lineage_rows(session, store.lineage_root_id(row)):
            if member.is_active:
                return member.id
        return None

    def list_templates(self, include_archived: bool = False) -> list[dict[str, Any]]:
        with self.storage.session() as session:
            rows = store.list_templates(session, include_archived)
        for row in rows:
            row["created_at"] = to_iso(row["created_at"])
        return rows

    def get_template(self, template_id: Any) -> dict[str, Any]:
        template_id = _template_id(template_id)
        with self.storage.session() as session:
            row = store.require_template(session, template_id)
            output = template_output(store.template_to_dict(row))
            output["fields"] = store.list_fields(session, row.id)
            output["images"] = [
                _image_meta(image, self.settings.api_prefix)
                for image in store.list_images(session, row.id)
            ]
            output["image_count"] = len(output["images"])
            output["version_count"] = len(store.lineage_rows(session, store.lineage_root_id(row)))
        return output

    def get_template_full(self, template_id: Any) -> dict[str, Any]:
        """Template in the editor's shape: configurations by instance id, images by filename."""
        template_id = _template_id(template_id)
        with self.storage.session() as session:
            row = store.require_template(session, template_id)
            output = template_output(store.template_to_dict(row))
            fields = store.list_fields(session, row.id)
            if fields:
                output["field_configurations"] = {
                    field["instance_id"]: field_config_output(field) for field in fields
                }
            output["images"] = {
                image.filename: _image_meta(image, self.settings.api_prefix)
                for image in store.list_images(session, row.id)
            }
        return output

    def versions(self, template_id: Any) -> list[dict[str, Any]]:
        template_id = _template_id(template_id)
        with self.storage.session() as session:
            row = store.require_template(session, template_id)
            conn = session.connection()
            result = []
            for member in store.lineage_rows(session, store.lineage_root_id(row)):
                count = 0
                if member.table_name and tables.has_table(conn, member.table_name):
                    count = tables.count_rows(conn, member.table_name)
                result.append(
                    {
                        "id": member.id,
                        "name": member.name,
                        "version": member.version,
                        "table_name": member.table_name,
                        "is_active": bool(member.is_active),
                        "parent_template_id": member.parent_template_id,
                        "created_at": to_iso(member.created_at),
                        "archived_at": to_iso(member.archived_at),
                        "submission_count": count,
                    }
                )
        return result

    def all_submissions(self, template_id: Any, limit: int = 100, offset: int = 0) -> dict[str, Any]:
        """Submissions across every version of the lineage, newest first."""
        template_id = _template_id(template_id)
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        with self.storage.session() as session:
            row = store.require_template(session, template_id)
            conn = session.connection()
            records: list[dict[str, Any]] = []
            total = 0
            for member in store.lineage_rows(session, store.lineage_root_id(row)):
                if not member.table_name or not tables.has_table(conn, member.table_name):
                    continue
                total += tables.count_rows(conn, member.table_name)
                for record in tables.fetch_rows(conn, member.table_name, limit=offset + limit):
                    record["template_id"] = member.id
                    record["version"] = member.version
                    records.append(record)

        records.sort(key=lambda record: record["id"], reverse=True)
        records.sort(key=lambda record: to_iso(record["submitted_at"]) or "", reverse=True)
        for record in records:
            record["submitted_at"] = to_iso(record["submitted_at"])
        return {
            "submissions": records[offset : offset + limit],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    def delete(self, template_id: Any) -> dict[str, Any]:
        """Delete the whole lineage of ``template_id``: tables, images, fields, rows."""
        template_id = _template_id(template_id)
        with self.storage.transaction() as session:
            row = store.require_template(session, template_id)
            root_id = store.lineage_root_id(row)
            members = store.lineage_rows(session, root_id)
            conn = session.connection()
            dropped = []
            for member in members:
                if not member.table_name:
                    continue
                try:
                    with conn.begin_nested():
                        tables.drop_table(conn, member.table_name)
                except SQLAlchemyError as exc:
                    logger.warning("Could not drop table %s: %s", member.table_name, exc)
                    continue
                dropped.append(member.table_name)
            store.delete_lineage(session, root_id)
        logger.info("Deleted lineage %s (%d versions)", root_id, len(members))
        return {"versions_deleted": len(members), "tables_dropped": dropped}

    # -- submissions -----------------------------------------------------

    def submit(self, payload: Any) -> dict[str, Any]:
        validate_submission_payload(payload)
        with self.storage.transaction() as session:
            result = submissions.submit(
                session,
                payload["template_id"],
                payload["user_id"],
                payload["data"],
                report_artifacts=self.settings.report_artifacts,
            )
        result["submitted_at"] = to_iso(result["submitted_at"])
        return result

    # -- images ----------------------------------------------------------

    def list_images(self, template_id: Any) -> list[dict[str, Any]]:
        template_id = _template_id(template_id)
        with self.storage.session() as session:
            store.require_template(session, template_id)
            return [
                _image_meta(image, self.settings.api_prefix)
                for image in store.list_images(session, template_id)
            ]

    def image_content(self, template_id: Any, image_id: Any) -> dict[str, Any]:
        template_id = _template_id(template_id)
        try:
            image_id = int(image_id)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Image id must be an integer") from exc
        with self.storage.session() as session:
            row = store.get_image(session, template_id, image_id)
            if row is None:
                raise NotFoundError("Image not found")
            try:
                content = base64.b64decode(row.image_data or "")
            except (binascii.Error, ValueError) as exc:
                raise ValidationError("Stored image data is corrupt") from exc
            return {
                "id": row.id,
                "filename": row.filename,
                "mime_type": row.mime_type or "application/octet-stream",
                "content": content,
            }

    # -- access control --------------------------------------------------

    def save_access_control(self, template_id: Any, payload: dict[str, Any]) -> dict[str, Any]:
        template_id = _template_id(template_id)
        policy = normalize_access_control(payload)
        with self.storage.transaction() as session:
            row = store.require_template(session, template_id)
            row.access_control = dumps_json(policy)
            row.updated_at = now_utc()
        logger.info("Saved access control for template %s", template_id)
        return policy

    def get_access_control(self, template_id: Any) -> dict[str, Any]:
        template_id = _template_id(template_id)
        with self.storage.session() as session:
            row = store.require_template(session, template_id)
            policy = loads_json(row.access_control) or {}
        return {
            **policy,
            "groups": policy.get("groups") or [],
            "field_permissions": policy.get("field_permissions") or {},
            "default_access": policy.get("default_access"),
        }
