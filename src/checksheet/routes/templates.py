from __future__ import annotations

from typing import Any
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from checksheet.auth import admin_guard
from checksheet.responses import ChecksheetJSONResponse, read_payload

router = APIRouter(tags=["templates"], default_response_class=ChecksheetJSONResponse)


@router.post("/templates")
async def publish_template(request: Request, _: Any = Depends(admin_guard)) -> ChecksheetJSONResponse:
    service = request.app.state.service
    payload = await read_payload(request)
    result = service.publish(payload)
    return ChecksheetJSONResponse(
        {"success": True, **result, "message": "Form published successfully"}
    )


@router.put("/templates/{template_id}")
async def update_template(
    template_id: str, request: Request, _: Any = Depends(admin_guard)
) -> ChecksheetJSONResponse:
    service = request.app.state.service
    payload = await read_payload(request)
    result = service.update(template_id, payload)
    if result["is_new_version"]:
        message = f"New version {result['version']} created due to breaking changes"
    else:
        message = "Template updated successfully"
    return ChecksheetJSONResponse({"success": True, **result, "message": message})


@router.get("/templates")
async def list_templates(request: Request, include_archived: bool = False) -> ChecksheetJSONResponse:
    service = request.app.state.service
    return ChecksheetJSONResponse(
        {"success": True, "templates": service.list_templates(include_archived)}
    )


@router.get("/templates/{template_id}")
async def get_template(template_id: str, request: Request) -> ChecksheetJSONResponse:
    service = request.app.state.service
    return ChecksheetJSONResponse({"success": True, "template": service.get_template(template_id)})


@router.get("/templates/{template_id}/full")
async def get_template_full(template_id: str, request: Request) -> ChecksheetJSONResponse:
    service = request.app.state.service
    return ChecksheetJSONResponse(
        {"success": True, "template": service.get_template_full(template_id)}
    )


@router.get("/templates/{template_id}/versions")
async def list_versions(template_id: str, request: Request) -> ChecksheetJSONResponse:
    service = request.app.state.service
    return ChecksheetJSONResponse({"success": True, "versions": service.versions(template_id)})


@router.delete("/templates/{template_id}")
async def delete_template(
    template_id: str, request: Request, _: Any = Depends(admin_guard)
) -> ChecksheetJSONResponse:
    service = request.app.state.service
    result = service.delete(template_id)
    return ChecksheetJSONResponse(
        {"success": True, **result, "message": "Template and all versions deleted"}
    )


@router.get("/templates/{template_id}/images")
async def list_images(template_id: str, request: Request) -> ChecksheetJSONResponse:
    service = request.app.state.service
    return ChecksheetJSONResponse({"success": True, "images": service.list_images(template_id)})


@router.get("/templates/{template_id}/images/{image_id}")
async def get_image(template_id: str, image_id: str, request: Request) -> Response:
    service = request.app.state.service
    image = service.image_content(template_id, image_id)
    content = image["content"]
    return Response(
        content=content,
        media_type=image["mime_type"],
        headers={
            "Content-Length": str(len(content)),
            "Content-Disposition": f"inline; filename*=UTF-8''{quote(image['filename'] or '')}",
            "Cache-Control": "public, max-age=31536000",
            "ETag": f'"{image["id"]}-{len(content)}"',
        },
    )


@router.post("/templates/{template_id}/access-control")
async def save_access_control(
    template_id: str, request: Request, _: Any = Depends(admin_guard)
) -> ChecksheetJSONResponse:
    service = request.app.state.service
    payload = await read_payload(request)
    policy = service.save_access_control(template_id, payload)
    return ChecksheetJSONResponse(
        {
            "success": True,
            "access_control": policy,
            "message": "Access control settings saved successfully",
        }
    )


@router.get("/templates/{template_id}/access-control")
async def get_access_control(template_id: str, request: Request) -> ChecksheetJSONResponse:
    service = request.app.state.service
    return ChecksheetJSONResponse(
        {"success": True, "access_control": service.get_access_control(template_id)}
    )
