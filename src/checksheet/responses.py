from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from checksheet.errors import ValidationError
from checksheet.utils import dumps_response


class ChecksheetJSONResponse(JSONResponse):
    """orjson rendering that also covers Decimal and time columns of submission rows."""

    def render(self, content: Any) -> bytes:
        return dumps_response(content)


async def read_payload(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload
