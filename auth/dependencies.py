"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer-token authentication.

Requests authenticate with "Authorization: Bearer <token>". The token is
verified by the TokenService on app.state; no store lookup happens, the
authorities in the token are trusted until it expires.

get_current_principal() raises UnauthorizedError when no token is sent and
lets TokenExpiredError / TokenInvalidError propagate, so the client can tell
"log in again" from "refresh". require_permission(name) builds a dependency
that additionally checks one authority.

The AuthError -> HTTP response mapping lives in api/main.py.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.errors import InsufficientPermissionError, UnauthorizedError
from auth.models import Principal
from auth.tokens import TokenService


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_principal(request: Request) -> Principal:
    """Require a valid bearer token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise UnauthorizedError()
    tokens: TokenService = request.app.state.tokens
    return tokens.parse(token)


def require_permission(name: str) -> Callable[[Request], Principal]:
    """Return a dependency that requires the caller to hold permission `name`.

    Use as a FastAPI dependency:
        @router.delete("/users/{user_id}")
        async def route(principal: Principal = Depends(require_permission(USER_WRITE))): ...
    """

    def dependency(request: Request) -> Principal:
        principal = get_current_principal(request)
        if not principal.has_authority(name):
            raise InsufficientPermissionError(f"Permission {name} required.")
        return principal

    return dependency
