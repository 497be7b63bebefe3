"""
api/routes/v1/keypairs.py -- Key-pair (machine credential) management endpoints.

Routes:
  POST   /api/v1/key-pairs            -- issue a key pair; secret shown ONCE
  GET    /api/v1/key-pairs            -- list the caller's key pairs
  PATCH  /api/v1/key-pairs/{key_id}   -- rename / rescope / re-limit / (de)activate
  DELETE /api/v1/key-pairs/{key_id}   -- revoke (deactivate) a key pair
  POST   /api/v1/key-pairs/token      -- exchange (public, secret) for an API-key JWT
  GET    /api/v1/projects/{project_id}/key-pairs?organization_id=
                                       -- every key pair in a project (needs "api-keys:read")

Security:
  Management routes require a user session. An API-key token cannot mint or
  manage key pairs, so a leaked machine credential cannot widen itself.
  Creating a key needs "api-keys:create" in the target project, and every
  requested scope must already be held by the creator there.
  IDOR guard: PATCH / DELETE pass the caller's user_id; another user's key
  reads as 404.
  [H2] POST /key-pairs/token is rate-limited like login.
  Of the key-pair routes only the project listing accepts an API-key token,
  and only for the key's own project.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    KeyPairCreate,
    KeyPairCreatedResponse,
    KeyPairPatch,
    KeyPairResponse,
    KeyPairTokenRequest,
    KeyPairTokenResponse,
)
from auth.dependencies import get_auth_context, require_scopes
from auth.errors import ForbiddenError
from auth.keypairs import KeyPairService
from auth.models import AuthContext
from auth.tokens import TOKEN_TYPE_API_KEY

CREATE_SCOPE = "api-keys:create"
READ_SCOPE = "api-keys:read"

router = APIRouter()


def _key_pairs(request: Request) -> KeyPairService:
    return request.app.state.key_pair_service


def _require_user(ctx: AuthContext) -> AuthContext:
    if ctx.token_type == TOKEN_TYPE_API_KEY:
        raise ForbiddenError("Key pairs can only be managed from a user session.", error_code="user_session_required")
    return ctx


@router.post("/key-pairs", response_model=KeyPairCreatedResponse, status_code=201)
def create_key_pair(
    request: Request,
    body: KeyPairCreate,
    ctx: AuthContext = Depends(get_auth_context),
) -> JSONResponse:
    """Issue a key pair. The secret_key in the response cannot be retrieved again."""
    _require_user(ctx)
    resolution = request.app.state.scope_resolver.get_user_scopes_in_project(
        ctx.user_id, body.organization_id, body.project_id
    )
    missing = [s for s in [CREATE_SCOPE, *body.scopes] if not resolution.has_scope(s)]
    if missing:
        raise ForbiddenError("Missing required scopes.", detail={"missing_scopes": missing})

    created = _key_pairs(request).create(
        ctx.user_id,
        body.organization_id,
        body.project_id,
        body.name,
        body.scopes,
        rate_limit_rpm=body.rate_limit_rpm,
        expires_at=body.expires_at,
    )
    resp = JSONResponse(
        status_code=201,
        content=KeyPairCreatedResponse.from_created(created).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/key-pairs", response_model=list[KeyPairResponse])
def list_key_pairs(
    request: Request,
    organization_id: str | None = None,
    project_id: str | None = None,
    active_only: bool = False,
    ctx: AuthContext = Depends(get_auth_context),
) -> list[KeyPairResponse]:
    _require_user(ctx)
    key_pairs = _key_pairs(request).list(
        user_id=ctx.user_id,
        organization_id=organization_id,
        project_id=project_id,
        active_only=active_only,
    )
    return [KeyPairResponse.from_key_pair(k) for k in key_pairs]


@router.patch("/key-pairs/{key_id}", response_model=KeyPairResponse)
def update_key_pair(
    request: Request,
    key_id: str,
    body: KeyPairPatch,
    ctx: AuthContext = Depends(get_auth_context),
) -> KeyPairResponse:
    """Update the fields present in the body. New scopes must be held by the caller."""
    _require_user(ctx)
    service = _key_pairs(request)
    if body.scopes is not None:
        current = service.get(key_id, user_id=ctx.user_id)
        resolution = request.app.state.scope_resolver.get_user_scopes_in_project(
            ctx.user_id, current.organization_id, current.project_id
        )
        missing = [s for s in body.scopes if not resolution.has_scope(s)]
        if missing:
            raise ForbiddenError("Missing required scopes.", detail={"missing_scopes": missing})

    updated = service.update(
        key_id,
        user_id=ctx.user_id,
        name=body.name,
        scopes=body.scopes,
        rate_limit_rpm=body.rate_limit_rpm,
        expires_at=body.expires_at,
        is_active=body.is_active,
    )
    return KeyPairResponse.from_key_pair(updated)


@router.delete("/key-pairs/{key_id}", status_code=204)
def revoke_key_pair(request: Request, key_id: str, ctx: AuthContext = Depends(get_auth_context)) -> Response:
    """Revoke a key pair. Tokens already minted from it stop validating at once."""
    _require_user(ctx)
    _key_pairs(request).revoke(key_id, user_id=ctx.user_id)
    return Response(status_code=204)


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/key-pairs/token", response_model=KeyPairTokenResponse)
def exchange_key_pair(request: Request, body: KeyPairTokenRequest) -> JSONResponse:
    """Exchange a key pair for a short-lived API-key bearer token."""
    token = request.app.state.auth_service.exchange_key_pair(body.public_key, body.secret_key)
    resp = JSONResponse(content=KeyPairTokenResponse.from_token(token).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/projects/{project_id}/key-pairs", response_model=list[KeyPairResponse])
def list_project_key_pairs(
    request: Request,
    project_id: str,
    organization_id: str,
    active_only: bool = False,
    ctx: AuthContext = Depends(require_scopes(READ_SCOPE)),
) -> list[KeyPairResponse]:
    """List every key pair in a project, whoever issued it."""
    if ctx.token_type == TOKEN_TYPE_API_KEY and ctx.project_id != project_id:
        raise ForbiddenError("API-key tokens can only read their own project.", error_code="project_mismatch")
    key_pairs = _key_pairs(request).list(
        organization_id=organization_id,
        project_id=project_id,
        active_only=active_only,
    )
    return [KeyPairResponse.from_key_pair(k) for k in key_pairs]
