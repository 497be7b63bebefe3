"""
api/main.py -- FastAPI application entry point for Warden.

A thin HTTP transport over auth.service.AuthService. Route handlers parse
the request, call one service method and map the result to a response
model; every decision lives in auth/.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed cookie authlib needs during the OAuth dance

Lifespan handles startup (store engine, role seeding, service wiring, purge
task) and shutdown (cancel purge task, drain background queue, close stores)
symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.keypairs import router as key_pairs_router
from api.routes.v1.scopes import router as scopes_router
from auth.audit import AuditInterceptor
from auth.blacklist import RevocationRegistry
from auth.dependencies import get_auth_context
from auth.ephemeral import EphemeralStore
from auth.errors import AuthError
from auth.keypairs import KeyPairService
from auth.models import AuthContext
from auth.oauth import OAuthHandshake, build_oauth_registry
from auth.schema import create_store_engine
from auth.scopes import ScopeResolver, seed_system_roles
from auth.service import AuthService
from auth.sessions import SessionManager
from auth.store import (
    AuditLogStore,
    BlacklistStore,
    KeyPairStore,
    PasswordResetStore,
    RoleStore,
    SessionStore,
    UserStore,
)
from auth.tasks import BackgroundTaskQueue
from auth.tokens import TokenEngine
from core.config import Settings, get_settings

API_VERSION = "0.1.0"
PURGE_INTERVAL_SECONDS = 60 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("warden.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build every store and service and attach them to app.state.

    Raises KeyConfigurationError if the signing keys are unusable; the
    process must not start serving in that case.
    """
    tokens = TokenEngine.from_settings(settings)

    engine = create_store_engine(settings.database_url)
    roles = RoleStore(engine)
    seed_system_roles(roles)

    tasks = BackgroundTaskQueue(max_workers=settings.last_used_workers)
    audit = AuditInterceptor(AuditLogStore(engine))
    ephemeral = EphemeralStore(settings.ephemeral_db_path)
    scope_resolver = ScopeResolver(roles)
    sessions = SessionManager(SessionStore(engine), rotation_enabled=settings.token_rotation_enabled)
    registry = RevocationRegistry(BlacklistStore(engine))
    key_pairs = KeyPairService(
        KeyPairStore(engine),
        tasks,
        bcrypt_cost=settings.bcrypt_cost,
        default_rate_limit_rpm=settings.key_pair_default_rate_limit_rpm,
        audit=audit,
    )
    handshake = OAuthHandshake(
        ephemeral,
        state_ttl=settings.oauth_state_ttl_seconds,
        login_token_ttl=settings.login_token_ttl_seconds,
        signup_ttl=settings.oauth_signup_ttl_seconds,
    )

    app.state.engine = engine
    app.state.tasks = tasks
    app.state.ephemeral = ephemeral
    app.state.sessions = sessions
    app.state.registry = registry
    app.state.scope_resolver = scope_resolver
    app.state.key_pair_service = key_pairs
    app.state.oauth = build_oauth_registry(settings)
    app.state.auth_service = AuthService(
        users=UserStore(engine),
        tokens=tokens,
        sessions=sessions,
        registry=registry,
        key_pairs=key_pairs,
        scopes=scope_resolver,
        resets=PasswordResetStore(engine),
        handshake=handshake,
        tasks=tasks,
        audit=audit,
        bcrypt_cost=settings.bcrypt_cost,
        password_reset_ttl_seconds=settings.password_reset_ttl_seconds,
        lookup_timeout_seconds=settings.auth_lookup_timeout_seconds,
    )
    logger.info(
        "Auth initialized (signing=%s, rotation=%s)",
        tokens.algorithm,
        settings.token_rotation_enabled,
    )


def close_state(app: FastAPI) -> None:
    app.state.tasks.shutdown(wait=True)
    app.state.ephemeral.close()
    app.state.engine.dispose()


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


def purge_expired(app: FastAPI) -> None:
    """One sweep of expired sessions, blacklist entries and handshake state.

    Each sweep is independent; a failure is logged and the others still run.
    """
    sweeps = (
        ("sessions", app.state.sessions.cleanup_expired),
        ("blacklist", app.state.registry.cleanup_expired),
        ("ephemeral", app.state.ephemeral.purge_expired),
    )
    for label, sweep in sweeps:
        try:
            sweep()
        except Exception:
            logger.warning("Purge of %s failed", label, exc_info=True)


async def _purge_loop(app: FastAPI) -> None:
    """Run purge_expired() every hour until cancelled at shutdown.

    asyncio.sleep yields to the event loop between iterations. CancelledError
    from task.cancel() propagates out of asyncio.sleep and unwinds the
    coroutine cleanly.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        await asyncio.to_thread(purge_expired, app)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Token engine first -- a bad key configuration aborts startup before
         any store is opened.
      2. Stores and role seeding -- the resolver needs the system roles.
      3. Purge task last -- it references the stores on app.state.
    """
    logger.info("Warden API starting up")
    init_state(app, get_settings())
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    close_state(app)
    logger.info("Warden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="Warden API",
    description="Authentication core: tokens, sessions, revocation, key pairs and scopes.",
    version=API_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps its own copy of the OAuth state in the Starlette session
# between the authorization redirect and the callback.
app.add_middleware(SessionMiddleware, secret_key=_settings.session_secret)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(key_pairs_router, prefix="/api/v1", tags=["Key Pairs"])
app.include_router(scopes_router, prefix="/api/v1", tags=["Scopes"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(ctx: AuthContext = Depends(get_auth_context)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Warden API")


@app.get("/redoc", include_in_schema=False)
async def redoc(ctx: AuthContext = Depends(get_auth_context)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Warden API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any auth-layer error with its own status and stable code.

    5xx auth errors (deadline, key configuration) are logged; 4xx are the
    normal outcome of bad credentials and are not.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.error_code, message=exc.message, detail=exc.detail or None)
        ).model_dump(),
    )
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; that dict becomes the error field as-is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit and no auth -- load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
