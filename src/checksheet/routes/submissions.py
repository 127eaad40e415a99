from __future__ import annotations

from fastapi import APIRouter, Query, Request

from checksheet.responses import ChecksheetJSONResponse, read_payload

router = APIRouter(tags=["submissions"], default_response_class=ChecksheetJSONResponse)


@router.post("/submissions")
async def create_submission(request: Request) -> ChecksheetJSONResponse:
    service = request.app.state.service
    payload = await read_payload(request)
    result = service.submit(payload)
    return ChecksheetJSONResponse(
        {"success": True, **result, "message": "Submission saved successfully"}
    )


@router.get("/templates/{template_id}/submissions/all")
async def list_all_submissions(
    template_id: str,
    request: Request,
    limit: int = Query(100, ge=1, le=10000),
    offset: int = Query(0, ge=0),
) -> ChecksheetJSONResponse:
    service = request.app.state.service
    result = service.all_submissions(template_id, limit=limit, offset=offset)
    return ChecksheetJSONResponse({"success": True, **result})
