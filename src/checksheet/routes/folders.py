from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from checksheet import folders
from checksheet.auth import admin_guard
from checksheet.responses import ChecksheetJSONResponse, read_payload

router = APIRouter(tags=["folders"], default_response_class=ChecksheetJSONResponse)


@router.post("/folders")
async def create_folder(request: Request, _: Any = Depends(admin_guard)) -> ChecksheetJSONResponse:
    storage = request.app.state.storage
    payload = await read_payload(request)
    with storage.transaction() as session:
        folder = folders.create_folder(session, payload)
    return ChecksheetJSONResponse({"success": True, "folder": folder})


@router.get("/folders")
async def list_folders(request: Request, user_id: int | None = None) -> ChecksheetJSONResponse:
    storage = request.app.state.storage
    with storage.session() as session:
        tree = folders.folder_tree(session, user_id)
    return ChecksheetJSONResponse({"success": True, "folders": tree})


@router.put("/folders/{folder_id}")
async def rename_folder(
    folder_id: int, request: Request, _: Any = Depends(admin_guard)
) -> ChecksheetJSONResponse:
    storage = request.app.state.storage
    payload = await read_payload(request)
    with storage.transaction() as session:
        folder = folders.rename_folder(session, folder_id, payload)
    return ChecksheetJSONResponse({"success": True, "folder": folder})


@router.delete("/folders/{folder_id}")
async def delete_folder(
    folder_id: int, request: Request, _: Any = Depends(admin_guard)
) -> ChecksheetJSONResponse:
    storage = request.app.state.storage
    with storage.transaction() as session:
        folders.delete_folder(session, folder_id)
    return ChecksheetJSONResponse({"success": True, "message": "Folder deleted successfully"})


@router.post("/forms/move")
async def move_forms(request: Request, _: Any = Depends(admin_guard)) -> ChecksheetJSONResponse:
    storage = request.app.state.storage
    payload = await read_payload(request)
    with storage.transaction() as session:
        moved = folders.move_forms(session, payload)
    return ChecksheetJSONResponse(
        {"success": True, "moved": moved, "message": f"{moved} form(s) moved successfully"}
    )
