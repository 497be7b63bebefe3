"""
API request and response models for Warden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import CreatedKeyPair, KeyPair, KeyPairToken, TokenPair, User, UserSession
from auth.scopes import ScopeCategory, ScopeResolution

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# bcrypt reads at most 72 bytes; the service rejects anything longer.
PASSWORD_MAX_LENGTH = 72


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    device_info: Optional[dict] = None

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    device_info: Optional[dict] = None

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class PasswordResetRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=255)


class PasswordResetConfirm(BaseModel):
    token: str = Field(min_length=1)
    new_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class LoginTokenExchange(BaseModel):
    """Request body for POST /api/v1/auth/oauth/exchange."""

    login_token: str = Field(min_length=1)
    device_info: Optional[dict] = None


class OAuthSignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/oauth/signup.

    first_name / last_name override the provider-supplied names when given.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    signup_token: str = Field(min_length=1)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    device_info: Optional[dict] = None


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Token pair returned by login, register, refresh and the OAuth exchanges."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"  # noqa: S105 -- OAuth token type, not a password
    expires_in: int
    user_id: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            user_id=pair.user_id,
            session_id=pair.session_id,
        )


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    first_name: str
    last_name: str
    auth_method: str
    oauth_provider: Optional[str] = None
    default_organization_id: Optional[str] = None
    is_active: bool
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "MeResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            auth_method=user.auth_method,
            oauth_provider=user.oauth_provider,
            default_organization_id=user.default_organization_id,
            is_active=user.is_active,
            last_login_at=user.last_login_at,
            created_at=user.created_at,
        )


class SessionResponse(BaseModel):
    """One active session in GET /api/v1/auth/sessions. No token material."""

    model_config = ConfigDict(frozen=True)

    id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Optional[dict] = None
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    expires_at: datetime
    refresh_expires_at: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: UserSession, current_session_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            device_info=session.device_info,
            last_used_at=session.last_used_at,
            created_at=session.created_at,
            expires_at=session.expires_at,
            refresh_expires_at=session.refresh_expires_at,
            current=session.id == current_session_id,
        )


class RevokeAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked_sessions: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class PasswordResetResponse(BaseModel):
    """Response for POST /api/v1/auth/password/reset.

    The message is identical whether or not the email exists. reset_token is
    only populated in debug mode, where no mailer is wired up.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    reset_token: Optional[str] = None


class OAuthProviderInfo(BaseModel):
    """A configured OAuth provider. Returned by GET /api/v1/auth/providers."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# Key pairs
# ---------------------------------------------------------------------------


class KeyPairCreate(BaseModel):
    """Request body for POST /api/v1/key-pairs."""

    model_config = ConfigDict(str_strip_whitespace=True)

    organization_id: str = Field(min_length=26, max_length=26)
    project_id: str = Field(min_length=26, max_length=26)
    name: str = Field(min_length=1, max_length=100)
    scopes: list[str] = Field(default_factory=list, max_length=100)
    rate_limit_rpm: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None


class KeyPairPatch(BaseModel):
    """Request body for PATCH /api/v1/key-pairs/{key_id}. Omitted fields are unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    scopes: Optional[list[str]] = Field(default=None, max_length=100)
    rate_limit_rpm: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None


class KeyPairTokenRequest(BaseModel):
    """Request body for POST /api/v1/key-pairs/token."""

    public_key: str = Field(min_length=1, max_length=128)
    secret_key: str = Field(min_length=1, max_length=128)


class KeyPairResponse(BaseModel):
    """A key pair as listed. The secret is never part of this model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    public_key: str
    organization_id: str
    project_id: str
    scopes: list[str]
    rate_limit_rpm: int
    is_active: bool
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_key_pair(cls, key_pair: KeyPair) -> "KeyPairResponse":
        return cls(
            id=key_pair.id,
            name=key_pair.name,
            public_key=key_pair.public_key,
            organization_id=key_pair.organization_id,
            project_id=key_pair.project_id,
            scopes=list(key_pair.scopes),
            rate_limit_rpm=key_pair.rate_limit_rpm,
            is_active=key_pair.is_active,
            expires_at=key_pair.expires_at,
            last_used_at=key_pair.last_used_at,
            created_at=key_pair.created_at,
        )


class KeyPairCreatedResponse(BaseModel):
    """Returned ONCE at creation. secret_key cannot be retrieved again."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    public_key: str
    secret_key: str
    organization_id: str
    project_id: str
    scopes: list[str]
    rate_limit_rpm: int
    expires_at: Optional[datetime] = None

    @classmethod
    def from_created(cls, created: CreatedKeyPair) -> "KeyPairCreatedResponse":
        return cls(
            id=created.id,
            name=created.name,
            public_key=created.public_key,
            secret_key=created.secret_key,
            organization_id=created.organization_id,
            project_id=created.project_id,
            scopes=list(created.scopes),
            rate_limit_rpm=created.rate_limit_rpm,
            expires_at=created.expires_at,
        )


class KeyPairTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"  # noqa: S105 -- OAuth token type, not a password
    expires_in: int
    api_key_id: str
    scopes: list[str]

    @classmethod
    def from_token(cls, token: KeyPairToken) -> "KeyPairTokenResponse":
        return cls(
            access_token=token.access_token,
            token_type=token.token_type,
            expires_in=token.expires_in,
            api_key_id=token.api_key_id,
            scopes=list(token.scopes),
        )


# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------


class ScopesResponse(BaseModel):
    """Response for GET /api/v1/scopes."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    organization_id: Optional[str] = None
    project_id: Optional[str] = None
    role: Optional[str] = None
    global_scopes: list[str]
    organization_scopes: list[str]
    project_scopes: list[str]
    effective_scopes: list[str]

    @classmethod
    def from_resolution(cls, resolution: ScopeResolution) -> "ScopesResponse":
        return cls(
            user_id=resolution.user_id,
            organization_id=resolution.organization_id,
            project_id=resolution.project_id,
            role=resolution.role,
            global_scopes=list(resolution.global_scopes),
            organization_scopes=list(resolution.organization_scopes),
            project_scopes=list(resolution.project_scopes),
            effective_scopes=list(resolution.effective_scopes),
        )


class ScopeCategoryResponse(BaseModel):
    """One category in GET /api/v1/scopes/catalog."""

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    level: str
    scopes: list[str]

    @classmethod
    def from_category(cls, category: ScopeCategory) -> "ScopeCategoryResponse":
        return cls(
            name=category.name,
            display_name=category.display_name,
            level=category.level,
            scopes=list(category.scopes),
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Union[str, dict, list]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
