from __future__ import annotations

from typing import Protocol

from fastapi import HTTPException, Request

from checksheet.config import Settings

ADMIN_ROLE = "Admin"
ROLE_HEADER = "X-User-Role"


class AuthProvider(Protocol):
    def require_admin(self, request: Request) -> None: ...


class NoAuthProvider:
    def require_admin(self, request: Request) -> None:
        return None


class HeaderAuthProvider:
    """Trusts the role forwarded by the authenticating gateway."""

    def require_admin(self, request: Request) -> None:
        if request.headers.get(ROLE_HEADER) != ADMIN_ROLE:
            raise HTTPException(status_code=403, detail="Admin access only")


def get_auth_provider(settings: Settings) -> AuthProvider:
    if settings.auth_mode == "header":
        return HeaderAuthProvider()
    return NoAuthProvider()


def admin_guard(request: Request) -> None:
    request.app.state.auth_provider.require_admin(request)
