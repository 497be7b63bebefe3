"""
tests/conftest.py -- Shared test fixtures for Warden unit and integration tests.

This module provides:
  - FakeClock: deterministic, manually advanced UTC clock
  - build_env(): wires every store and service over one isolated database
  - env / env_no_rotation: the wired stack for service-level tests
  - make_tokens: HS256 TokenEngine factory sharing the test clock
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool and the background
queue writes from worker threads. Plain :memory: DBs are per-connection and
would present a blank schema to each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

DEBUG must be set before any auth/core import so get_settings() generates
JWT_SECRET / SESSION_SECRET in dev mode instead of raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# The API tests log in far more often than a real client would.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, close_state, init_state
from auth.audit import AuditInterceptor
from auth.blacklist import RevocationRegistry
from auth.ephemeral import EphemeralStore
from auth.ids import new_ulid
from auth.keypairs import KeyPairService
from auth.oauth import OAuthHandshake
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
from auth.tokens import SigningKeys, TokenEngine
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-at-least-32-chars"
TEST_ISSUER = "warden-test"
BCRYPT_COST = 4
ACCESS_TTL = 900
REFRESH_TTL = 7 * 24 * 3600


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable returning a fixed UTC datetime until advance() moves it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> None:
        self.now += timedelta(seconds=seconds, **kwargs)

    def timestamp(self) -> float:
        return self.now.timestamp()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def memory_db_url(name: str) -> str:
    """Named shared-memory SQLite URI, unique per call so tests never share rows."""
    return f"sqlite:///file:warden_{name}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_token_engine(clock: FakeClock, **overrides) -> TokenEngine:
    options = {
        "issuer": TEST_ISSUER,
        "access_ttl_seconds": ACCESS_TTL,
        "refresh_ttl_seconds": REFRESH_TTL,
        "clock": clock,
    }
    options.update(overrides)
    return TokenEngine(SigningKeys(algorithm="HS256", signing_key=TEST_SECRET, verification_key=TEST_SECRET), **options)


def build_env(clock: FakeClock, *, rotation_enabled: bool = True) -> SimpleNamespace:
    """Wire the full auth stack over a fresh in-memory database."""
    engine = create_store_engine(memory_db_url("svc"))
    roles = RoleStore(engine)
    seed_system_roles(roles)

    tasks = BackgroundTaskQueue(max_workers=1)
    audit_store = AuditLogStore(engine)
    audit = AuditInterceptor(audit_store)
    ephemeral = EphemeralStore(":memory:", clock=clock.timestamp)
    tokens = make_token_engine(clock)
    sessions = SessionManager(SessionStore(engine), rotation_enabled=rotation_enabled, clock=clock)
    registry = RevocationRegistry(BlacklistStore(engine), clock=clock)
    resolver = ScopeResolver(roles)
    key_pair_store = KeyPairStore(engine)
    key_pairs = KeyPairService(key_pair_store, tasks, bcrypt_cost=BCRYPT_COST, audit=audit, clock=clock)
    handshake = OAuthHandshake(ephemeral)
    users = UserStore(engine)
    resets = PasswordResetStore(engine)
    service = AuthService(
        users=users,
        tokens=tokens,
        sessions=sessions,
        registry=registry,
        key_pairs=key_pairs,
        scopes=resolver,
        resets=resets,
        handshake=handshake,
        tasks=tasks,
        audit=audit,
        bcrypt_cost=BCRYPT_COST,
        clock=clock,
    )
    return SimpleNamespace(
        engine=engine,
        clock=clock,
        roles=roles,
        tasks=tasks,
        audit_store=audit_store,
        ephemeral=ephemeral,
        tokens=tokens,
        sessions=sessions,
        session_store=sessions._store,
        registry=registry,
        resolver=resolver,
        key_pair_store=key_pair_store,
        key_pairs=key_pairs,
        handshake=handshake,
        users=users,
        resets=resets,
        service=service,
    )


def _close_env(env: SimpleNamespace) -> None:
    env.tasks.shutdown(wait=True)
    env.ephemeral.close()
    env.engine.dispose()


# ---------------------------------------------------------------------------
# Function-scoped fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def env(clock: FakeClock) -> Generator[SimpleNamespace, None, None]:
    """Full auth stack with refresh-token rotation enabled."""
    stack = build_env(clock)
    yield stack
    _close_env(stack)


@pytest.fixture
def env_no_rotation(clock: FakeClock) -> Generator[SimpleNamespace, None, None]:
    stack = build_env(clock, rotation_enabled=False)
    yield stack
    _close_env(stack)


@pytest.fixture
def make_tokens(clock: FakeClock) -> Callable[..., TokenEngine]:
    """Factory for HS256 engines on the shared clock; keyword args override defaults."""

    def factory(**overrides) -> TokenEngine:
        return make_token_engine(clock, **overrides)

    return factory


@pytest.fixture
def org_id() -> str:
    return new_ulid()


@pytest.fixture
def project_id() -> str:
    return new_ulid()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _test_settings() -> Settings:
    return Settings(
        debug=True,
        database_url=memory_db_url("api"),
        ephemeral_db_path=":memory:",
        jwt_secret=TEST_SECRET,
        jwt_issuer=TEST_ISSUER,
        bcrypt_cost=BCRYPT_COST,
        session_secret="test-session-secret",
    )


def _patch_lifespan(settings: Settings):
    """Return an async context manager that replaces the real lifespan.

    Wires the real services over an isolated in-memory database and mocks
    the OAuth registry to prevent real network calls.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, settings)
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        close_state(app)

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[TestClient, None, None]:
    """TestClient over the real FastAPI app with a patched lifespan.

    Tests hit real route handlers, dependencies and exception handlers but use
    an isolated in-memory store per test module.
    """
    app.router.lifespan_context = _patch_lifespan(_test_settings())
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

