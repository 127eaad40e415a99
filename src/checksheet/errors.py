from __future__ import annotations

from typing import Any


class ChecksheetError(Exception):
    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(ChecksheetError):
    status_code = 400


class NotFoundError(ChecksheetError):
    status_code = 404


class ConflictError(ChecksheetError):
    status_code = 400


class VersionConflictError(ChecksheetError):
    """Another fork claimed the same version number for this lineage."""

    status_code = 409
