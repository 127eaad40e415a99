from __future__ import annotations

import base64
import binascii
import logging
import re
import time
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from checksheet.models import TemplateImageModel
from checksheet.utils import now_utc

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "IMAGE_PLACEHOLDER:"
_IMG_TAG = re.compile(r"""<img[^>]+src=["']([^"']+)["'][^>]*>""", re.IGNORECASE)


class InvalidImageError(ValueError):
    pass


def image_filename(src: str) -> str:
    if PLACEHOLDER_PREFIX in src:
        return src.split(PLACEHOLDER_PREFIX, 1)[1].strip("\"'")
    return src.split("?", 1)[0].rsplit("/", 1)[-1]


def scan_image_positions(html: str | None) -> list[dict[str, Any]]:
    """Image tags in document order with their source and derived filename."""
    positions: list[dict[str, Any]] = []
    for index, match in enumerate(_IMG_TAG.finditer(html or "")):
        src = match.group(1)
        positions.append(
            {
                "position": index,
                "original_src": src,
                "filename": image_filename(src),
                "full_tag": match.group(0),
            }
        )
    return positions


def _decoded_size(encoded: str) -> int:
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    try:
        return len(base64.b64decode(encoded, validate=True))
    except (binascii.Error, ValueError) as exc:
        raise InvalidImageError("image payload is not valid base64") from exc


def _sort_key(item: tuple[int, tuple[str, dict[str, Any]]]) -> tuple[int, int]:
    index, (_, data) = item
    explicit = data.get("position")
    if explicit is None:
        explicit = data.get("order")
    return (explicit if explicit is not None else index, index)


def save_images(
    session: Session,
    template_id: int,
    images: dict[str, dict[str, Any]] | None,
    html: str | None,
    taken_positions: Iterable[int] = (),
) -> list[dict[str, Any]]:
    """Persist uploaded images with unique positions.

    An image that fails to persist is logged and skipped; the rest are kept.
    """
    if not images:
        return []
    scanned = scan_image_positions(html)
    used = set(taken_positions)
    ordered = sorted(enumerate(images.items()), key=_sort_key)
    saved: list[dict[str, Any]] = []

    for upload_index, (original_path, data) in ordered:
        position = data.get("position")
        if position is None:
            position = upload_index
        while position in used:
            position += 1

        filename = data.get("filename") or original_path.rsplit("/", 1)[-1]
        original_src = data.get("originalSrc") or ""
        if not original_src:
            simple_name = original_path.rsplit("/", 1)[-1]
            match = next((pos for pos in scanned if pos["filename"] == simple_name), None)
            if match:
                original_src = match["original_src"]
        element_id = f"img_{template_id}_{position}_{int(time.time() * 1000)}"

        try:
            encoded = data.get("base64") or ""
            size = data.get("size")
            decoded_size = _decoded_size(encoded)
            with session.begin_nested():
                row = TemplateImageModel(
                    template_id=template_id,
                    original_path=original_path,
                    filename=filename,
                    mime_type=data.get("mimeType") or "application/octet-stream",
                    image_data=encoded.split(",", 1)[1] if encoded.startswith("data:") else encoded,
                    size=size if size is not None else decoded_size,
                    position_index=position,
                    original_src=original_src,
                    element_id=element_id,
                    created_at=now_utc(),
                )
                session.add(row)
                session.flush()
        except (InvalidImageError, SQLAlchemyError):
            logger.exception("Failed to save image %s for template %s", original_path, template_id)
            continue

        used.add(position)
        saved.append(
            {
                "id": row.id,
                "path": original_path,
                "filename": filename,
                "position": position,
                "element_id": element_id,
            }
        )
    return saved


def rewrite_markup(
    html: str | None,
    template_id: int,
    saved_images: list[dict[str, Any]],
    api_prefix: str,
) -> str:
    """Point placeholder and blob image sources at the stored images.

    Images sharing a filename claim occurrences one at a time in position
    order; the last of them takes any remaining occurrences.
    """
    processed = html or ""
    ordered = sorted(saved_images, key=lambda item: item["position"])
    remaining: dict[str, int] = {}
    for image in ordered:
        filename = image["filename"] or image["path"].rsplit("/", 1)[-1]
        remaining[filename] = remaining.get(filename, 0) + 1

    for image in ordered:
        filename = image["filename"] or image["path"].rsplit("/", 1)[-1]
        remaining[filename] -= 1
        count = 1 if remaining[filename] > 0 else 0
        escaped = re.escape(filename)
        replacement = f'src="{api_prefix}/templates/{template_id}/images/{image["id"]}"'
        patterns = (
            re.compile(rf"""src=["']{re.escape(PLACEHOLDER_PREFIX)}{escaped}["']""", re.IGNORECASE),
            re.compile(rf"""src=["']blob:[^"']*{escaped}[^"']*["']""", re.IGNORECASE),
        )
        for pattern in patterns:
            processed, replaced = pattern.subn(lambda _: replacement, processed, count=count)
            if replaced and count:
                break
    return processed
