"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Credentials arrive as "Authorization: Bearer <token>". Two token kinds are
accepted and both converge on an AuthContext:
  1. access tokens   -- browser / app sessions (session_id set)
  2. API-key tokens  -- minted from a key pair via POST /key-pairs/token
                        (api_key_id set)

get_auth_context() raises 401 when there is no credential and lets the
AuthError of a rejected one reach the app's handler.
require_scopes(...) builds a dependency that additionally demands scopes.

Every lookup runs under deadline(settings.auth_lookup_timeout_seconds).

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import ForbiddenError
from auth.models import AuthContext
from auth.scopes import ADMIN_SCOPE
from auth.tokens import TOKEN_TYPE_API_KEY
from core.config import get_settings


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _validate(request: Request, token: str) -> AuthContext:
    service = request.app.state.auth_service
    return service.validate_token(token, timeout=get_settings().auth_lookup_timeout_seconds)


def get_auth_context(request: Request) -> AuthContext:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(ctx: AuthContext = Depends(get_auth_context)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _validate(request, token)


def require_scopes(*scopes: str) -> Callable[[Request], AuthContext]:
    """Build a dependency that requires every scope in `scopes`.

    API-key callers are checked against the key pair's own scope list. User
    callers are resolved through the ScopeResolver in the organization /
    project named by the request (path or query "organization_id" /
    "project_id"), falling back to the token's organization.

        @router.delete("/projects/{project_id}")
        async def route(ctx: AuthContext = Depends(require_scopes("projects:delete"))): ...
    """
    required = list(scopes)

    def dependency(request: Request) -> AuthContext:
        ctx = get_auth_context(request)
        if ctx.token_type == TOKEN_TYPE_API_KEY:
            granted = set(ctx.scopes)
            missing = [s for s in required if ADMIN_SCOPE not in granted and s not in granted]
        else:
            organization_id = _context_param(request, "organization_id") or ctx.organization_id
            project_id = _context_param(request, "project_id")
            if project_id and not organization_id:
                organization_id = ctx.organization_id
            resolution = request.app.state.scope_resolver.get_user_scopes(
                ctx.user_id, organization_id, project_id if organization_id else None
            )
            missing = [s for s in required if not resolution.has_scope(s)]
        if missing:
            raise ForbiddenError("Missing required scopes.", detail={"missing_scopes": missing})
        return ctx

    return dependency


def _context_param(request: Request, name: str) -> str | None:
    return request.path_params.get(name) or request.query_params.get(name) or None
