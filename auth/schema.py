"""
auth/schema.py -- SQLAlchemy Core schema, engine factory and connection guard.

Every repository in auth/store.py shares one Engine built by create_store_engine()
and opens connections through connect(), which enforces the caller's deadline
(auth/deadline.py) before each round-trip.

Storage conventions:
  Timestamps: ISO 8601 UTC strings with microsecond precision. The fixed
      width keeps string comparison in SQL equal to chronological comparison.
  Booleans:   Integer 0/1.
  Ids:        26-char ULID strings.
  Lists/dicts: JSON text.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError

from auth import deadline as _deadline
from auth.errors import DeadlineExceededError

metadata = MetaData()

# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

users = Table(
    "users",
    metadata,
    Column("id", String(26), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for OAuth users
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("auth_method", String(20), nullable=False, server_default="password"),
    Column("oauth_provider", String(30)),
    Column("oauth_provider_id", String(255)),
    Column("default_organization_id", String(26)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

user_sessions = Table(
    "user_sessions",
    metadata,
    Column("id", String(26), primary_key=True),
    Column("user_id", String(26), nullable=False, index=True),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("refresh_token_version", Integer, nullable=False, server_default="1"),
    Column("current_jti", String(26), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("refresh_expires_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("revoked_at", String(32)),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("device_info", Text),  # JSON
    Column("last_used_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

blacklisted_tokens = Table(
    "blacklisted_tokens",
    metadata,
    Column("jti", String(26), primary_key=True),
    Column("user_id", String(26), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("revoked_at", String(32), nullable=False),
    Column("reason", String(100), nullable=False),
    Column("token_type", String(30), nullable=False, server_default="individual"),
    Column("blacklist_timestamp", BigInteger),  # Unix milliseconds, user-wide entries only
    Column("created_at", String(32), nullable=False),
    Index("ix_blacklisted_tokens_user_type", "user_id", "token_type"),
)

key_pairs = Table(
    "key_pairs",
    metadata,
    Column("id", String(26), primary_key=True),
    Column("user_id", String(26), nullable=False, index=True),
    Column("organization_id", String(26), nullable=False, index=True),
    Column("project_id", String(26), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("public_key", String(100), nullable=False, unique=True),
    Column("secret_key_hash", Text, nullable=False),  # bcrypt
    Column("scopes", Text, nullable=False, server_default="[]"),  # JSON list
    Column("rate_limit_rpm", Integer, nullable=False, server_default="1000"),
    Column("expires_at", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_used_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

password_reset_tokens = Table(
    "password_reset_tokens",
    metadata,
    Column("id", String(26), primary_key=True),
    Column("user_id", String(26), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", String(26), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),  # "resource:action"
    Column("resource", String(50), nullable=False),
    Column("action", String(50), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("category", String(50), nullable=False, server_default=""),
    Column("scope_level", String(20), nullable=False),
)

roles = Table(
    "roles",
    metadata,
    Column("id", String(26), primary_key=True),
    Column("name", String(50), nullable=False),
    Column("organization_id", String(26)),  # NULL for system roles
    Column("is_system_role", Integer, nullable=False, server_default="0"),
    Column("description", Text, nullable=False, server_default=""),
)

role_permissions = Table(
    "role_permissions",
    metadata,
    Column("role_id", String(26), nullable=False),
    Column("permission_id", String(26), nullable=False),
    PrimaryKeyConstraint("role_id", "permission_id"),
)

organization_members = Table(
    "organization_members",
    metadata,
    Column("user_id", String(26), nullable=False),
    Column("organization_id", String(26), nullable=False),
    Column("role_id", String(26), nullable=False),
    Column("joined_at", String(32), nullable=False),
    PrimaryKeyConstraint("user_id", "organization_id"),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", String(26), primary_key=True),
    Column("user_id", String(26), index=True),
    Column("organization_id", String(26)),
    Column("action", String(100), nullable=False),
    Column("resource_type", String(50), nullable=False, server_default=""),
    Column("resource_id", String(100), nullable=False, server_default=""),
    Column("metadata", Text, nullable=False, server_default="{}"),  # JSON
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Connection hooks
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _deadline_progress_handler() -> int:
    # A non-zero return makes sqlite3 abort the running statement with
    # OperationalError("interrupted").
    return 1 if _deadline.expired() else 0


def _install_deadline_handler(dbapi_conn, connection_record) -> None:
    dbapi_conn.set_progress_handler(_deadline_progress_handler, 1000)


def create_store_engine(db_url: str) -> Engine:
    """Build the shared Engine and create any missing tables.

    SQLite gets check_same_thread=False (FastAPI runs sync handlers in a
    thread pool), WAL mode, and the deadline progress handler.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
        event.listen(engine, "connect", _install_deadline_handler)
    metadata.create_all(engine)
    return engine


@contextmanager
def connect(engine: Engine) -> Iterator[Connection]:
    """Open a connection after checking the caller's deadline.

    A statement interrupted by the progress handler surfaces as
    DeadlineExceededError. The connection context exits without commit, so
    an interrupted write leaves no partial state behind.
    """
    _deadline.check_deadline()
    try:
        with engine.connect() as conn:
            yield conn
    except OperationalError as exc:
        if _deadline.expired():
            raise DeadlineExceededError("Deadline exceeded during a store lookup.") from exc
        raise


# ---------------------------------------------------------------------------
# Value conversion helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)
