"""
auth/store.py -- SQLAlchemy Core repositories for auth entities.

Pattern: Repository + Data Mapper. Each *Store class is a repository over one
aggregate; the module-level _row_to_* functions are the mappers. Service code
never touches SQL directly.

All stores share one Engine (auth.schema.create_store_engine) and open their
connections through auth.schema.connect so the caller's deadline applies to
every round-trip.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only hashes of refresh tokens, reset tokens and key-pair secrets are stored.

Lookups return None when nothing matches ("get or not-found"); services turn
that into NotFoundError / UnauthorizedError as the flow requires. Unique
constraint violations propagate as sqlalchemy.exc.IntegrityError.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import and_, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.ids import new_ulid
from auth.models import (
    BLACKLIST_USER_WIDE,
    AuditLog,
    BlacklistedToken,
    KeyPair,
    PasswordResetToken,
    Permission,
    Role,
    User,
    UserSession,
)
from auth.schema import (
    audit_logs,
    blacklisted_tokens,
    connect,
    from_iso,
    key_pairs,
    organization_members,
    password_reset_tokens,
    permissions,
    role_permissions,
    roles,
    to_iso,
    user_sessions,
    users,
    utcnow,
)


class _Repository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore(_Repository):
    """Repository for User records.

    Emails are normalized to lowercase on write and on lookup so that
    "A@B.com" and "a@b.com" are the same account.
    """

    # Whitelist for update_user(); column names never come from callers.
    _MUTABLE_FIELDS = {
        "first_name",
        "last_name",
        "is_active",
        "default_organization_id",
        "auth_method",
        "oauth_provider",
        "oauth_provider_id",
    }

    def create_user(self, user: User) -> User:
        """Insert a new user and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = utcnow()
        user.id = user.id or new_ulid()
        user.email = user.email.strip().lower()
        user.created_at = now
        user.updated_at = now
        with connect(self.engine) as conn:
            conn.execute(
                users.insert().values(
                    id=user.id,
                    email=user.email,
                    password_hash=user.password_hash,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    auth_method=user.auth_method,
                    oauth_provider=user.oauth_provider,
                    oauth_provider_id=user.oauth_provider_id,
                    default_organization_id=user.default_organization_id,
                    is_active=1 if user.is_active else 0,
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
            )
            conn.commit()
        return user

    def get_by_id(self, user_id: str) -> User | None:
        with connect(self.engine) as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive email lookup. Returns None if not found."""
        with connect(self.engine) as conn:
            row = conn.execute(users.select().where(users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_password(self, user_id: str, password_hash: str) -> bool:
        with connect(self.engine) as conn:
            result = conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(password_hash=password_hash, updated_at=to_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        with connect(self.engine) as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login_at=to_iso(utcnow())))
            conn.commit()

    def update_user(self, user_id: str, **fields) -> bool:
        """Update whitelisted mutable fields. Returns False if user_id is unknown.

        Raises ValueError for fields outside _MUTABLE_FIELDS.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        fields["updated_at"] = to_iso(utcnow())
        with connect(self.engine) as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore(_Repository):
    """Repository for UserSession rows, including the rotation CAS."""

    def create(self, session: UserSession) -> UserSession:
        now = utcnow()
        session.id = session.id or new_ulid()
        session.created_at = now
        session.updated_at = now
        with connect(self.engine) as conn:
            conn.execute(
                user_sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    refresh_token_hash=session.refresh_token_hash,
                    refresh_token_version=session.refresh_token_version,
                    current_jti=session.current_jti,
                    expires_at=to_iso(session.expires_at),
                    refresh_expires_at=to_iso(session.refresh_expires_at),
                    is_active=1 if session.is_active else 0,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    device_info=json.dumps(session.device_info) if session.device_info is not None else None,
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
            )
            conn.commit()
        return session

    def get_by_id(self, session_id: str) -> UserSession | None:
        with connect(self.engine) as conn:
            row = conn.execute(user_sessions.select().where(user_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_refresh_token_hash(self, refresh_token_hash: str) -> UserSession | None:
        with connect(self.engine) as conn:
            row = conn.execute(
                user_sessions.select().where(user_sessions.c.refresh_token_hash == refresh_token_hash)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_jti(self, jti: str) -> UserSession | None:
        with connect(self.engine) as conn:
            row = conn.execute(user_sessions.select().where(user_sessions.c.current_jti == jti)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active(self, user_id: str, now: datetime) -> list[UserSession]:
        """Active, not-yet-refresh-expired sessions for a user (newest first)."""
        with connect(self.engine) as conn:
            rows = conn.execute(
                user_sessions.select()
                .where(
                    (user_sessions.c.user_id == user_id)
                    & (user_sessions.c.is_active == 1)
                    & (user_sessions.c.refresh_expires_at > to_iso(now))
                )
                .order_by(user_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def rotate(
        self,
        session_id: str,
        *,
        expected_hash: str,
        expected_version: int | None,
        new_jti: str,
        new_expires_at: datetime,
        new_refresh_token_hash: str | None = None,
        new_refresh_expires_at: datetime | None = None,
    ) -> bool:
        """Atomically move a session to a new JTI (and optionally a new refresh hash).

        Update-if-unchanged: the WHERE clause pins the refresh hash the caller
        looked up and, when expected_version is given, the version it read.
        Returns False when another writer got there first or the session was
        revoked in between -- the caller must treat that as a failed refresh.
        """
        now = utcnow()
        conditions = [
            user_sessions.c.id == session_id,
            user_sessions.c.refresh_token_hash == expected_hash,
            user_sessions.c.is_active == 1,
        ]
        if expected_version is not None:
            conditions.append(user_sessions.c.refresh_token_version == expected_version)
        values: dict = {
            "current_jti": new_jti,
            "expires_at": to_iso(new_expires_at),
            "refresh_token_version": user_sessions.c.refresh_token_version + 1,
            "last_used_at": to_iso(now),
            "updated_at": to_iso(now),
        }
        if new_refresh_token_hash is not None:
            values["refresh_token_hash"] = new_refresh_token_hash
        if new_refresh_expires_at is not None:
            values["refresh_expires_at"] = to_iso(new_refresh_expires_at)
        with connect(self.engine) as conn:
            result = conn.execute(user_sessions.update().where(and_(*conditions)).values(**values))
            conn.commit()
        return result.rowcount > 0

    def touch(self, session_id: str) -> None:
        """Stamp last_used_at."""
        with connect(self.engine) as conn:
            conn.execute(
                user_sessions.update().where(user_sessions.c.id == session_id).values(last_used_at=to_iso(utcnow()))
            )
            conn.commit()

    def revoke(self, session_id: str) -> bool:
        """Mark one session inactive. Returns False if unknown or already revoked."""
        now = to_iso(utcnow())
        with connect(self.engine) as conn:
            result = conn.execute(
                user_sessions.update()
                .where((user_sessions.c.id == session_id) & (user_sessions.c.is_active == 1))
                .values(is_active=0, revoked_at=now, updated_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_by_jti(self, jti: str) -> int:
        now = to_iso(utcnow())
        with connect(self.engine) as conn:
            result = conn.execute(
                user_sessions.update()
                .where((user_sessions.c.current_jti == jti) & (user_sessions.c.is_active == 1))
                .values(is_active=0, revoked_at=now, updated_at=now)
            )
            conn.commit()
        return result.rowcount

    def revoke_all(self, user_id: str) -> int:
        now = to_iso(utcnow())
        with connect(self.engine) as conn:
            result = conn.execute(
                user_sessions.update()
                .where((user_sessions.c.user_id == user_id) & (user_sessions.c.is_active == 1))
                .values(is_active=0, revoked_at=now, updated_at=now)
            )
            conn.commit()
        return result.rowcount

    def delete_expired(self, now: datetime) -> int:
        """Delete sessions past both their access and refresh expiry."""
        cutoff = to_iso(now)
        with connect(self.engine) as conn:
            result = conn.execute(
                user_sessions.delete().where(
                    (user_sessions.c.expires_at < cutoff) & (user_sessions.c.refresh_expires_at < cutoff)
                )
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Blacklist
# ---------------------------------------------------------------------------


class BlacklistStore(_Repository):
    """Repository for the revocation registry (JTI entries and user cutoffs)."""

    def add(self, entry: BlacklistedToken) -> bool:
        """Insert an entry. Returns False (no error) if the JTI is already present."""
        now = utcnow()
        entry.revoked_at = entry.revoked_at or now
        entry.created_at = now
        try:
            with connect(self.engine) as conn:
                conn.execute(
                    blacklisted_tokens.insert().values(
                        jti=entry.jti,
                        user_id=entry.user_id,
                        expires_at=to_iso(entry.expires_at),
                        revoked_at=to_iso(entry.revoked_at),
                        reason=entry.reason,
                        token_type=entry.token_type,
                        blacklist_timestamp=entry.blacklist_timestamp,
                        created_at=to_iso(now),
                    )
                )
                conn.commit()
        except IntegrityError:
            return False
        return True

    def get(self, jti: str) -> BlacklistedToken | None:
        with connect(self.engine) as conn:
            row = conn.execute(blacklisted_tokens.select().where(blacklisted_tokens.c.jti == jti)).fetchone()
        return _row_to_blacklisted(row) if row is not None else None

    def is_blacklisted(self, jti: str, now: datetime) -> bool:
        """True if an unexpired entry exists for jti. Primary-key lookup."""
        with connect(self.engine) as conn:
            row = conn.execute(
                select(blacklisted_tokens.c.jti).where(
                    (blacklisted_tokens.c.jti == jti) & (blacklisted_tokens.c.expires_at > to_iso(now))
                )
            ).fetchone()
        return row is not None

    def latest_user_cutoff(self, user_id: str, now: datetime) -> int | None:
        """Highest live user-wide cutoff (Unix milliseconds) for user_id, or None."""
        with connect(self.engine) as conn:
            value = conn.execute(
                select(func.max(blacklisted_tokens.c.blacklist_timestamp)).where(
                    (blacklisted_tokens.c.user_id == user_id)
                    & (blacklisted_tokens.c.token_type == BLACKLIST_USER_WIDE)
                    & (blacklisted_tokens.c.expires_at > to_iso(now))
                )
            ).scalar()
        return int(value) if value is not None else None

    def delete_expired(self, now: datetime) -> int:
        with connect(self.engine) as conn:
            result = conn.execute(blacklisted_tokens.delete().where(blacklisted_tokens.c.expires_at <= to_iso(now)))
            conn.commit()
        return result.rowcount

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete entries created before cutoff, expired or not."""
        with connect(self.engine) as conn:
            result = conn.execute(blacklisted_tokens.delete().where(blacklisted_tokens.c.created_at < to_iso(cutoff)))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Key pairs
# ---------------------------------------------------------------------------


class KeyPairStore(_Repository):
    """Repository for KeyPair credentials. public_key is the O(1) lookup key."""

    _MUTABLE_FIELDS = {"name", "scopes", "rate_limit_rpm", "expires_at", "is_active"}

    def create(self, key_pair: KeyPair) -> KeyPair:
        now = utcnow()
        key_pair.id = key_pair.id or new_ulid()
        key_pair.created_at = now
        key_pair.updated_at = now
        with connect(self.engine) as conn:
            conn.execute(
                key_pairs.insert().values(
                    id=key_pair.id,
                    user_id=key_pair.user_id,
                    organization_id=key_pair.organization_id,
                    project_id=key_pair.project_id,
                    name=key_pair.name,
                    public_key=key_pair.public_key,
                    secret_key_hash=key_pair.secret_key_hash,
                    scopes=json.dumps(list(key_pair.scopes)),
                    rate_limit_rpm=key_pair.rate_limit_rpm,
                    expires_at=to_iso(key_pair.expires_at),
                    is_active=1 if key_pair.is_active else 0,
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                )
            )
            conn.commit()
        return key_pair

    def get_by_id(self, key_id: str) -> KeyPair | None:
        with connect(self.engine) as conn:
            row = conn.execute(key_pairs.select().where(key_pairs.c.id == key_id)).fetchone()
        return _row_to_key_pair(row) if row is not None else None

    def get_by_public_key(self, public_key: str) -> KeyPair | None:
        with connect(self.engine) as conn:
            row = conn.execute(key_pairs.select().where(key_pairs.c.public_key == public_key)).fetchone()
        return _row_to_key_pair(row) if row is not None else None

    def list_by(
        self,
        *,
        user_id: str | None = None,
        organization_id: str | None = None,
        project_id: str | None = None,
        active_only: bool = False,
    ) -> list[KeyPair]:
        """Return key pairs matching every given filter, newest first."""
        query = key_pairs.select()
        if user_id is not None:
            query = query.where(key_pairs.c.user_id == user_id)
        if organization_id is not None:
            query = query.where(key_pairs.c.organization_id == organization_id)
        if project_id is not None:
            query = query.where(key_pairs.c.project_id == project_id)
        if active_only:
            query = query.where(key_pairs.c.is_active == 1)
        with connect(self.engine) as conn:
            rows = conn.execute(query.order_by(key_pairs.c.created_at.desc())).fetchall()
        return [_row_to_key_pair(r) for r in rows]

    def update(self, key_id: str, **fields) -> bool:
        """Update whitelisted fields. Returns False if key_id is unknown."""
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown key pair fields: {unknown!r}")
        if "scopes" in fields:
            fields["scopes"] = json.dumps(list(fields["scopes"]))
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "expires_at" in fields:
            fields["expires_at"] = to_iso(fields["expires_at"])
        fields["updated_at"] = to_iso(utcnow())
        with connect(self.engine) as conn:
            result = conn.execute(key_pairs.update().where(key_pairs.c.id == key_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def deactivate(self, key_id: str) -> bool:
        return self.update(key_id, is_active=False)

    def mark_used(self, key_id: str) -> None:
        with connect(self.engine) as conn:
            conn.execute(key_pairs.update().where(key_pairs.c.id == key_id).values(last_used_at=to_iso(utcnow())))
            conn.commit()


# ---------------------------------------------------------------------------
# Password reset tokens
# ---------------------------------------------------------------------------


class PasswordResetStore(_Repository):
    def create(self, token: PasswordResetToken) -> PasswordResetToken:
        now = utcnow()
        token.id = token.id or new_ulid()
        token.created_at = now
        with connect(self.engine) as conn:
            conn.execute(
                password_reset_tokens.insert().values(
                    id=token.id,
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=to_iso(token.expires_at),
                    created_at=to_iso(now),
                )
            )
            conn.commit()
        return token

    def get_by_token_hash(self, token_hash: str) -> PasswordResetToken | None:
        with connect(self.engine) as conn:
            row = conn.execute(
                password_reset_tokens.select().where(password_reset_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def mark_used(self, token_id: str) -> bool:
        """Consume a token. Returns False if it was already used (single use)."""
        with connect(self.engine) as conn:
            result = conn.execute(
                password_reset_tokens.update()
                .where((password_reset_tokens.c.id == token_id) & (password_reset_tokens.c.used_at.is_(None)))
                .values(used_at=to_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    def invalidate_all_for_user(self, user_id: str) -> int:
        """Mark every unused token of user_id as used (superseded)."""
        with connect(self.engine) as conn:
            result = conn.execute(
                password_reset_tokens.update()
                .where((password_reset_tokens.c.user_id == user_id) & (password_reset_tokens.c.used_at.is_(None)))
                .values(used_at=to_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount

    def delete_expired(self, now: datetime) -> int:
        with connect(self.engine) as conn:
            result = conn.execute(
                password_reset_tokens.delete().where(password_reset_tokens.c.expires_at < to_iso(now))
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Roles, permissions, organization membership
# ---------------------------------------------------------------------------


class RoleStore(_Repository):
    """Repository for the member -> role -> permission join."""

    def create_permission(self, permission: Permission) -> Permission:
        """Insert a permission. Raises IntegrityError if the name exists."""
        permission.id = permission.id or new_ulid()
        with connect(self.engine) as conn:
            conn.execute(
                permissions.insert().values(
                    id=permission.id,
                    name=permission.name,
                    resource=permission.resource,
                    action=permission.action,
                    description=permission.description,
                    category=permission.category,
                    scope_level=permission.scope_level,
                )
            )
            conn.commit()
        return permission

    def get_permission_by_name(self, name: str) -> Permission | None:
        with connect(self.engine) as conn:
            row = conn.execute(permissions.select().where(permissions.c.name == name)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_permissions(self, scope_level: str | None = None) -> list[Permission]:
        query = permissions.select()
        if scope_level is not None:
            query = query.where(permissions.c.scope_level == scope_level)
        with connect(self.engine) as conn:
            rows = conn.execute(query.order_by(permissions.c.name)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def create_role(self, role: Role) -> Role:
        role.id = role.id or new_ulid()
        with connect(self.engine) as conn:
            conn.execute(
                roles.insert().values(
                    id=role.id,
                    name=role.name,
                    organization_id=role.organization_id,
                    is_system_role=1 if role.is_system_role else 0,
                    description=role.description,
                )
            )
            conn.commit()
        return role

    def get_role(self, name: str, organization_id: str | None = None) -> Role | None:
        """Look up a role by name: org-specific when organization_id is given, else system."""
        if organization_id is None:
            condition = (roles.c.name == name) & roles.c.organization_id.is_(None)
        else:
            condition = (roles.c.name == name) & (roles.c.organization_id == organization_id)
        with connect(self.engine) as conn:
            row = conn.execute(roles.select().where(condition)).fetchone()
        return _row_to_role(row) if row is not None else None

    def assign_permission(self, role_id: str, permission_id: str) -> None:
        """Grant a permission to a role. Raises IntegrityError on duplicates."""
        with connect(self.engine) as conn:
            conn.execute(role_permissions.insert().values(role_id=role_id, permission_id=permission_id))
            conn.commit()

    def add_member(self, user_id: str, organization_id: str, role_id: str) -> None:
        """Add user to organization with role. Raises IntegrityError if already a member."""
        with connect(self.engine) as conn:
            conn.execute(
                organization_members.insert().values(
                    user_id=user_id,
                    organization_id=organization_id,
                    role_id=role_id,
                    joined_at=to_iso(utcnow()),
                )
            )
            conn.commit()

    def get_member_role(self, user_id: str, organization_id: str) -> Role | None:
        """Return the role user_id holds in organization_id, or None if not a member."""
        with connect(self.engine) as conn:
            row = conn.execute(
                select(roles)
                .select_from(organization_members.join(roles, roles.c.id == organization_members.c.role_id))
                .where(
                    (organization_members.c.user_id == user_id)
                    & (organization_members.c.organization_id == organization_id)
                )
            ).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_user_permissions_in_organization(self, user_id: str, organization_id: str) -> list[Permission]:
        """members -> roles -> role_permissions -> permissions, for one org."""
        join = organization_members.join(
            role_permissions, role_permissions.c.role_id == organization_members.c.role_id
        ).join(permissions, permissions.c.id == role_permissions.c.permission_id)
        with connect(self.engine) as conn:
            rows = conn.execute(
                select(permissions)
                .select_from(join)
                .where(
                    (organization_members.c.user_id == user_id)
                    & (organization_members.c.organization_id == organization_id)
                )
                .order_by(permissions.c.name)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def seed(self, catalog: Iterable[Permission], system_roles: dict[str, Iterable[str]]) -> None:
        """Idempotently insert the permission catalog and system roles with their grants."""
        by_name: dict[str, Permission] = {}
        for permission in catalog:
            existing = self.get_permission_by_name(permission.name)
            by_name[permission.name] = existing or self.create_permission(permission)
        for role_name, granted in system_roles.items():
            role = self.get_role(role_name) or self.create_role(Role(name=role_name, is_system_role=True))
            for permission_name in granted:
                try:
                    self.assign_permission(role.id, by_name[permission_name].id)
                except IntegrityError:
                    continue  # already granted on a previous startup


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogStore(_Repository):
    def record(self, event: AuditLog) -> AuditLog:
        event.id = event.id or new_ulid()
        event.created_at = utcnow()
        with connect(self.engine) as conn:
            conn.execute(
                audit_logs.insert().values(
                    id=event.id,
                    user_id=event.user_id,
                    organization_id=event.organization_id,
                    action=event.action,
                    resource_type=event.resource_type,
                    resource_id=event.resource_id,
                    metadata=json.dumps(event.metadata, default=str),
                    created_at=to_iso(event.created_at),
                )
            )
            conn.commit()
        return event

    def list_recent(self, *, user_id: str | None = None, limit: int = 100) -> list[AuditLog]:
        query = audit_logs.select()
        if user_id is not None:
            query = query.where(audit_logs.c.user_id == user_id)
        with connect(self.engine) as conn:
            rows = conn.execute(query.order_by(audit_logs.c.id.desc()).limit(limit)).fetchall()
        return [_row_to_audit_log(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        auth_method=row.auth_method,
        oauth_provider=row.oauth_provider,
        oauth_provider_id=row.oauth_provider_id,
        default_organization_id=row.default_organization_id,
        is_active=bool(row.is_active),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _row_to_session(row) -> UserSession:
    return UserSession(
        id=row.id,
        user_id=row.user_id,
        refresh_token_hash=row.refresh_token_hash,
        refresh_token_version=row.refresh_token_version,
        current_jti=row.current_jti,
        expires_at=from_iso(row.expires_at),
        refresh_expires_at=from_iso(row.refresh_expires_at),
        is_active=bool(row.is_active),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_info=json.loads(row.device_info) if row.device_info else None,
        last_used_at=from_iso(row.last_used_at),
        revoked_at=from_iso(row.revoked_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _row_to_blacklisted(row) -> BlacklistedToken:
    return BlacklistedToken(
        jti=row.jti,
        user_id=row.user_id,
        expires_at=from_iso(row.expires_at),
        reason=row.reason,
        token_type=row.token_type,
        blacklist_timestamp=row.blacklist_timestamp,
        revoked_at=from_iso(row.revoked_at),
        created_at=from_iso(row.created_at),
    )


def _row_to_key_pair(row) -> KeyPair:
    return KeyPair(
        id=row.id,
        user_id=row.user_id,
        organization_id=row.organization_id,
        project_id=row.project_id,
        name=row.name,
        public_key=row.public_key,
        secret_key_hash=row.secret_key_hash,
        scopes=json.loads(row.scopes or "[]"),
        rate_limit_rpm=row.rate_limit_rpm,
        expires_at=from_iso(row.expires_at),
        is_active=bool(row.is_active),
        last_used_at=from_iso(row.last_used_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        used_at=from_iso(row.used_at),
        created_at=from_iso(row.created_at),
    )


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        name=row.name,
        resource=row.resource,
        action=row.action,
        description=row.description,
        category=row.category,
        scope_level=row.scope_level,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        organization_id=row.organization_id,
        is_system_role=bool(row.is_system_role),
        description=row.description,
    )


def _row_to_audit_log(row) -> AuditLog:
    return AuditLog(
        id=row.id,
        user_id=row.user_id,
        organization_id=row.organization_id,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        metadata=json.loads(row.metadata or "{}"),
        created_at=from_iso(row.created_at),
    )
