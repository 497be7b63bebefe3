"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores map rows into
these; services do the work. Timestamps are timezone-aware UTC datetimes;
ids are 26-char ULID strings (see auth/ids.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

AUTH_METHOD_PASSWORD = "password"
AUTH_METHOD_OAUTH = "oauth"

BLACKLIST_INDIVIDUAL = "individual"
BLACKLIST_USER_WIDE = "user_wide_timestamp"


@dataclass
class User:
    """An identity owned by the surrounding user-management subsystem.

    The auth core treats users as read-mostly: it creates them on
    registration / OAuth signup, stamps last_login_at and rotates the
    password hash. Everything else belongs to the user subsystem.

    password_hash is None for OAuth users. auth_method decides which login
    path is allowed: password accounts reject OAuth logins and vice versa.
    """

    email: str
    id: str | None = None
    password_hash: str | None = None
    first_name: str = ""
    last_name: str = ""
    auth_method: str = AUTH_METHOD_PASSWORD
    oauth_provider: str | None = None  # "google", "github"
    oauth_provider_id: str | None = None  # provider's stable user ID
    default_organization_id: str | None = None
    is_active: bool = True
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class UserSession:
    """One authenticated device/browser instance.

    Security design:
    - refresh_token_hash is SHA-256 of the raw refresh token. The raw token is
      never stored, and no access-token material is stored at all; access
      token validity rests on the JTI + blacklist.
    - refresh_token_version increments on every refresh. Rotation is an
      update-if-unchanged on (hash, version), so two concurrent refreshes with
      the same token cannot both win.
    - Revocation flips is_active and stamps revoked_at. Rows are kept for
      session listing and audit; cleanup removes them once fully expired.
    """

    user_id: str
    refresh_token_hash: str
    current_jti: str
    expires_at: datetime  # access token expiry
    refresh_expires_at: datetime
    id: str | None = None
    refresh_token_version: int = 1
    is_active: bool = True
    ip_address: str | None = None
    user_agent: str | None = None
    device_info: dict | None = None
    last_used_at: datetime | None = None
    revoked_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class BlacklistedToken:
    """A revocation registry entry.

    token_type "individual": jti is the revoked token's JTI.
    token_type "user_wide_timestamp": jti is a synthetic ULID and
        blacklist_timestamp is the cutoff -- every token of user_id whose JTI
        time is at or before the cutoff is revoked. expires_at is cutoff + 24h so the sweep can
        remove it once no token older than the cutoff can still be alive.
    """

    jti: str
    user_id: str
    expires_at: datetime
    reason: str
    token_type: str = BLACKLIST_INDIVIDUAL
    blacklist_timestamp: int | None = None  # Unix milliseconds, user-wide entries only
    revoked_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class KeyPair:
    """A public/secret machine credential scoped to an organization + project.

    Security design:
    - public_key (pk_<projectULID>_<32 hex>) is safe to log and is indexed
      in the clear for O(1) lookup.
    - secret_key_hash is bcrypt of the sk_<40 hex> secret. The raw secret is
      returned exactly once at creation and is unrecoverable afterwards.
    - Revocation is deactivation; rows are never deleted.
    """

    user_id: str
    organization_id: str
    project_id: str
    name: str
    public_key: str
    secret_key_hash: str
    id: str | None = None
    scopes: list[str] = field(default_factory=list)
    rate_limit_rpm: int = 1000
    expires_at: datetime | None = None
    is_active: bool = True
    last_used_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class CreatedKeyPair:
    """Issuance result. secret_key is present here and nowhere else, ever."""

    id: str
    name: str
    public_key: str
    secret_key: str
    organization_id: str
    project_id: str
    scopes: list[str]
    rate_limit_rpm: int
    expires_at: datetime | None = None


@dataclass
class PasswordResetToken:
    user_id: str
    token_hash: str  # SHA-256 of the raw token; the raw token is only emailed
    expires_at: datetime
    id: str | None = None
    used_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Permission:
    name: str  # "resource:action"
    resource: str
    action: str
    scope_level: str  # "organization", "project", "global"
    id: str | None = None
    description: str = ""
    category: str = ""


@dataclass
class Role:
    name: str
    id: str | None = None
    organization_id: str | None = None  # None for system roles
    is_system_role: bool = False
    description: str = ""


@dataclass
class AuditLog:
    action: str  # "<operation>.success" / "<operation>.failed"
    id: str | None = None
    user_id: str | None = None
    organization_id: str | None = None
    resource_type: str = ""
    resource_id: str = ""
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class TokenPair:
    """Login / refresh result handed to the transport layer."""

    access_token: str
    refresh_token: str
    expires_in: int  # seconds until the access token expires
    token_type: str = "Bearer"  # noqa: S105 -- OAuth token type, not a password
    user_id: str | None = None
    session_id: str | None = None


@dataclass
class AuthContext:
    """Who is calling, resolved from a validated bearer credential.

    api_key_id is set for machine credentials, session_id for browser logins.
    scopes holds the permission snapshot (access tokens) or the key-pair scope
    list (API-key tokens); use the ScopeResolver for fresh org/project scopes.
    """

    user_id: str
    token_type: str
    jti: str | None = None
    api_key_id: str | None = None
    session_id: str | None = None
    organization_id: str | None = None
    project_id: str | None = None
    email: str | None = None
    scopes: list[str] = field(default_factory=list)


@dataclass
class OAuthProfile:
    """Normalized provider profile fed into the OAuth session exchange."""

    email: str
    provider: str  # "google", "github"
    provider_id: str
    first_name: str = ""
    last_name: str = ""


@dataclass
class OAuthOutcome:
    """Result of an OAuth callback.

    kind "login": token is a one-time login token for exchange_login_token().
    kind "signup": token is a signup session for complete_oauth_signup().
    """

    kind: str
    token: str
    user_id: str | None = None


@dataclass
class KeyPairToken:
    """Short-lived API-key JWT minted from a validated key pair."""

    access_token: str
    expires_in: int
    api_key_id: str
    scopes: list[str] = field(default_factory=list)
    user_id: str | None = None
    token_type: str = "Bearer"  # noqa: S105 -- OAuth token type, not a password
