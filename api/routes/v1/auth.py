"""
api/routes/v1/auth.py -- Authentication, session and OAuth REST endpoints.

Routes:
  POST   /api/v1/auth/register               -- create password account; returns token pair
  POST   /api/v1/auth/login                  -- password login; returns token pair
  POST   /api/v1/auth/refresh                -- trade refresh token for a new pair
  POST   /api/v1/auth/logout                 -- revoke current access token + session
  GET    /api/v1/auth/me                     -- current user (requires auth)
  GET    /api/v1/auth/sessions               -- list active sessions (requires auth)
  DELETE /api/v1/auth/sessions/{session_id}  -- revoke one session (requires auth, ownership checked)
  POST   /api/v1/auth/revoke-all             -- log out everywhere (requires auth)
  POST   /api/v1/auth/password/change        -- change password (requires auth)
  POST   /api/v1/auth/password/reset         -- start reset; same response for every email
  POST   /api/v1/auth/password/reset/confirm -- finish reset with the emailed token
  GET    /api/v1/auth/providers              -- list enabled OAuth providers (public)
  GET    /api/v1/auth/oauth/{provider}/login    -- redirect to provider
  GET    /api/v1/auth/oauth/{provider}/callback -- provider callback; redirects to the frontend
  POST   /api/v1/auth/oauth/exchange         -- one-time login token -> token pair
  POST   /api/v1/auth/oauth/signup           -- pending OAuth signup -> user + token pair

Security:
  [H2] Credential endpoints are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] Login failure responses do not reveal whether the email exists; the
       service equalizes timing.
  [M5] Cache-Control: no-store on every response that carries tokens.
  IDOR guard: DELETE /sessions/{id} passes the caller's user_id; the service
       answers 404 for a session the caller does not own.

Handlers are plain `def` (run in the threadpool) because bcrypt and the
store are blocking. The OAuth redirect/callback are async because authlib's
starlette client is.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LoginTokenExchange,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    OAuthSignupRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResetResponse,
    RefreshRequest,
    RegisterRequest,
    RevokeAllResponse,
    SessionResponse,
    TokenResponse,
)
from auth.dependencies import get_auth_context
from auth.errors import AuthError
from auth.models import AuthContext, TokenPair
from auth.oauth import SUPPORTED_PROVIDERS, get_enabled_providers, get_oauth_profile
from auth.service import AuthService
from core.config import get_settings

logger = logging.getLogger("warden.api.auth")

# Auth policy:
# - register, login, refresh, password/reset, password/reset/confirm: public
# - providers, oauth/*:                                               public
# - logout, me, sessions, revoke-all, password/change:               requires auth (get_auth_context)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("User-Agent"),
    }


def _token_response(pair: TokenPair, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=TokenResponse.from_pair(pair).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a password account and return its first token pair."""
    pair = _service(request).register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        device_info=body.device_info,
        **_client_meta(request),
    )
    return _token_response(pair, status_code=201)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password produce the same 401 "invalid_credentials"
    so the response never confirms that an account exists [C1].
    """
    pair = _service(request).login(
        body.email,
        body.password,
        device_info=body.device_info,
        **_client_meta(request),
    )
    return _token_response(pair)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    return _token_response(_service(request).refresh(body.refresh_token))


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/password/reset", response_model=PasswordResetResponse)
def request_password_reset(request: Request, body: PasswordResetRequest) -> PasswordResetResponse:
    """Start a password reset.

    The response is the same for known and unknown emails. Email delivery is
    handled outside this service; in debug mode the raw token is echoed back
    so the flow can be exercised locally.
    """
    token = _service(request).reset_password(body.email)
    return PasswordResetResponse(
        message="If that account exists, a reset link has been sent.",
        reset_token=token if get_settings().debug else None,
    )


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/password/reset/confirm", response_model=MessageResponse)
def confirm_password_reset(request: Request, body: PasswordResetConfirm) -> MessageResponse:
    _service(request).confirm_password_reset(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. Please log in again.")


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no OAuth env vars are set.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(get_settings())]


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> MessageResponse:
    """Revoke the presented access token and its session. Idempotent."""
    _service(request).logout(ctx.jti, ctx.user_id)
    return MessageResponse(message="Logged out.")


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> MeResponse:
    return MeResponse.from_user(_service(request).get_current_user(ctx.user_id))


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> list[SessionResponse]:
    """List the caller's active sessions. The calling session is flagged current=true."""
    sessions = _service(request).get_user_sessions(ctx.user_id)
    return [SessionResponse.from_session(s, ctx.session_id) for s in sessions]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(request: Request, session_id: str, ctx: AuthContext = Depends(get_auth_context)) -> Response:
    """Revoke one of the caller's sessions [IDOR guard]."""
    _service(request).revoke_session(ctx.user_id, session_id)
    return Response(status_code=204)


@router.post("/auth/revoke-all", response_model=RevokeAllResponse)
def revoke_all(request: Request, ctx: AuthContext = Depends(get_auth_context)) -> RevokeAllResponse:
    """Log out everywhere, including the calling session."""
    return RevokeAllResponse(revoked_sessions=_service(request).revoke_all_sessions(ctx.user_id))


@router.post("/auth/password/change", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    ctx: AuthContext = Depends(get_auth_context),
) -> MessageResponse:
    """Change the caller's password. Every session, this one included, is revoked."""
    _service(request).change_password(ctx.user_id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed. Please log in again.")


# ---------------------------------------------------------------------------
# OAuth
#
# Route registration order: the literal /auth/oauth/exchange and
# /auth/oauth/signup are POST-only, so they never collide with the
# GET /auth/oauth/{provider}/... pair below.
# ---------------------------------------------------------------------------


def _oauth_client(request: Request, provider: str):
    if provider not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Unknown OAuth provider."})
    client = request.app.state.oauth.create_client(provider)
    if client is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "provider_disabled", "message": f"OAuth provider {provider!r} is not configured."},
        )
    return client


def _frontend_redirect(path: str, **params: str) -> RedirectResponse:
    url = f"{get_settings().frontend_url.rstrip('/')}{path}?{urlencode(params)}"
    return RedirectResponse(url, status_code=302)


@router.get("/auth/oauth/{provider}/login")
async def oauth_login(request: Request, provider: str, invitation_token: str | None = None) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    The state parameter is minted by the handshake store (5 minutes, single
    use) and checked again in the callback.
    """
    client = _oauth_client(request, provider)
    state = await run_in_threadpool(_service(request).create_oauth_state, provider, invitation_token)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri, state=state)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback and hand off to the frontend.

    Existing OAuth user  -> /auth/callback?login_token=...   (POST it to /auth/oauth/exchange)
    Unknown email        -> /auth/signup?signup_token=...    (POST it to /auth/oauth/signup)
    Any failure          -> /login?error=<code>

    Access and refresh tokens never appear in a redirect URL [H3].
    """
    client = _oauth_client(request, provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _frontend_redirect("/login", error="oauth_failed")

    try:
        profile = await get_oauth_profile(client, provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return _frontend_redirect("/login", error="email_not_verified")

    state = request.query_params.get("state", "")
    try:
        outcome = await run_in_threadpool(_service(request).complete_oauth_login, profile, state)
    except AuthError as exc:
        return _frontend_redirect("/login", error=exc.error_code)

    if outcome.kind == "signup":
        return _frontend_redirect("/auth/signup", signup_token=outcome.token)
    return _frontend_redirect("/auth/callback", login_token=outcome.token)


@router.post("/auth/oauth/exchange", response_model=TokenResponse)
def oauth_exchange(request: Request, body: LoginTokenExchange) -> JSONResponse:
    """Trade a one-time login token for a token pair. A second attempt gets 401."""
    pair = _service(request).exchange_login_token(
        body.login_token, device_info=body.device_info, **_client_meta(request)
    )
    return _token_response(pair)


@router.post("/auth/oauth/signup", response_model=TokenResponse, status_code=201)
def oauth_signup(request: Request, body: OAuthSignupRequest) -> JSONResponse:
    pair = _service(request).complete_oauth_signup(
        body.signup_token,
        first_name=body.first_name,
        last_name=body.last_name,
        device_info=body.device_info,
        **_client_meta(request),
    )
    return _token_response(pair, status_code=201)
