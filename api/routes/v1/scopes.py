"""
api/routes/v1/scopes.py -- Permission lookup endpoints.

Routes:
  GET /api/v1/scopes          -- caller's effective scopes for ?organization_id=&project_id=
  GET /api/v1/scopes/catalog  -- every standard permission, grouped by category

Both require authentication. The catalog is static; /scopes is resolved
fresh on every call, so role changes show up without a new token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import ScopeCategoryResponse, ScopesResponse
from auth.dependencies import get_auth_context
from auth.models import AuthContext

router = APIRouter()


@router.get("/scopes", response_model=ScopesResponse)
def get_scopes(
    request: Request,
    organization_id: str | None = None,
    project_id: str | None = None,
    ctx: AuthContext = Depends(get_auth_context),
) -> ScopesResponse:
    """Resolve the caller's scopes. project_id requires organization_id (400 otherwise)."""
    resolution = request.app.state.auth_service.get_user_scopes(ctx.user_id, organization_id, project_id)
    return ScopesResponse.from_resolution(resolution)


@router.get("/scopes/catalog", response_model=list[ScopeCategoryResponse])
def get_catalog(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> list[ScopeCategoryResponse]:
    categories = request.app.state.scope_resolver.get_scopes_by_category()
    return [ScopeCategoryResponse.from_category(c) for c in categories]
