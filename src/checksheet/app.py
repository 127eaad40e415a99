from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

from checksheet.auth import get_auth_provider
from checksheet.config import Settings, configure_logging
from checksheet.errors import ChecksheetError
from checksheet.responses import ChecksheetJSONResponse
from checksheet.routes.folders import router as folders_router
from checksheet.routes.submissions import router as submissions_router
from checksheet.routes.templates import router as templates_router
from checksheet.service import ChecksheetService
from checksheet.storage import init_storage

logger = logging.getLogger(__name__)


async def _checksheet_error(request: Request, exc: ChecksheetError) -> ChecksheetJSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return ChecksheetJSONResponse(
        {"success": False, "message": exc.message, **exc.details},
        status_code=exc.status_code,
    )


async def _http_error(request: Request, exc: HTTPException) -> ChecksheetJSONResponse:
    return ChecksheetJSONResponse(
        {"success": False, "message": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def _request_validation_error(
    request: Request, exc: RequestValidationError
) -> ChecksheetJSONResponse:
    errors = [
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    ]
    return ChecksheetJSONResponse(
        {"success": False, "message": "Invalid request", "errors": errors},
        status_code=400,
    )


async def _unexpected_error(request: Request, exc: Exception) -> ChecksheetJSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return ChecksheetJSONResponse(
        {"success": False, "message": "Server error", "details": str(exc)},
        status_code=500,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings)
    storage = init_storage(settings)
    auth = get_auth_provider(settings)

    app = FastAPI(
        title="Checksheet",
        openapi_tags=[
            {"name": "templates", "description": "Checksheet templates and versions"},
            {"name": "submissions", "description": "Checksheet submissions"},
            {"name": "folders", "description": "Form folders"},
            {"name": "system", "description": "System"},
        ],
    )

    app.state.storage = storage
    app.state.settings = settings
    app.state.auth_provider = auth
    app.state.service = ChecksheetService(storage, settings)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(ChecksheetError, _checksheet_error)
    app.add_exception_handler(HTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(Exception, _unexpected_error)

    app.include_router(templates_router, prefix=settings.api_prefix)
    app.include_router(submissions_router, prefix=settings.api_prefix)
    app.include_router(folders_router, prefix=settings.api_prefix)

    @app.get("/healthz", tags=["system"])
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    return app
