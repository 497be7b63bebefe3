"""
auth/oauth.py -- Authlib provider registry and the OAuth handshake state.

Only the session-exchange side of OAuth is owned here. The network dance
(authorization redirect, code exchange, profile fetch) is authlib's job; this
module normalizes what authlib returns into an OAuthProfile and keeps the
short-lived handshake records in the EphemeralStore.

Security notes:
  [H1] Email verification is mandatory. get_oauth_profile() raises ValueError
       if the provider does not confirm the email is verified. An unverified
       email from GitHub could belong to an attacker who added a victim's
       address without confirming it.

  [H2] CSRF state is minted server-side, stored for 5 minutes, and deleted
       on the first validation attempt, whether or not it matched. A state
       can therefore never be replayed.

  [H3] Tokens never travel in the callback redirect. The callback stores a
       one-time login token (5 minutes, deleted on first read) that the
       frontend trades for the token pair over POST.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING

from authlib.integrations.starlette_client import OAuth

from auth.ephemeral import EphemeralStore
from auth.errors import UnauthorizedError
from auth.models import OAuthProfile

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("warden.auth.oauth")

SUPPORTED_PROVIDERS = ("github", "google")

_STATE_PREFIX = "oauth_state:"
_LOGIN_TOKEN_PREFIX = "login_token:"
_SIGNUP_PREFIX = "oauth_signup:"


# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    """Register every provider that has both a client ID and secret configured."""
    oauth = OAuth()

    # GitHub -- static endpoints (no OIDC discovery document)
    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    # Google -- OIDC discovery
    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return {"name", "label"} for every configured provider."""
    providers: list[dict] = []
    if settings.github_client_id and settings.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    if settings.google_client_id and settings.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    return providers


# ---------------------------------------------------------------------------
# Profile normalization [H1]
# ---------------------------------------------------------------------------


async def get_oauth_profile(client, provider: str, token: dict) -> OAuthProfile:
    """Normalize a provider token response into an OAuthProfile.

    Raises:
        ValueError: If a verified email cannot be confirmed, or the provider
            is unknown. The caller must treat this as an authentication
            failure.
    """
    if provider == "github":
        return await _get_github_profile(client, token)
    elif provider == "google":
        return _get_google_profile(token)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _get_github_profile(client, token: dict) -> OAuthProfile:
    """GitHub needs two calls: GET /user for the numeric ID and name, and
    GET /user/emails for the primary verified address.

    [H1] Only the email where both primary=true AND verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise ValueError(
            "GitHub OAuth: no primary verified email found. "
            "The user must verify their email address on GitHub before logging in."
        )

    first_name, last_name = split_full_name(profile.get("name") or profile.get("login") or "")
    return OAuthProfile(
        email=email,
        provider="github",
        provider_id=str(profile["id"]),
        first_name=first_name,
        last_name=last_name,
    )


def _get_google_profile(token: dict) -> OAuthProfile:
    """Google returns an id_token whose claims authlib exposes as "userinfo".

    [H1] The email claim is only accepted when email_verified is True; a
    missing email_verified counts as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("google OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(
            "google OAuth: email is not verified. "
            "The provider must confirm email ownership before login is allowed."
        )

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError("google OAuth: missing email or sub claim in userinfo")

    return OAuthProfile(
        email=email,
        provider="google",
        provider_id=str(subject_id),
        first_name=userinfo.get("given_name") or "",
        last_name=userinfo.get("family_name") or "",
    )


def split_full_name(full_name: str) -> tuple[str, str]:
    """Split a display name on the first run of whitespace into (first, last)."""
    parts = full_name.strip().split(None, 1)
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


# ---------------------------------------------------------------------------
# Handshake state [H2][H3]
# ---------------------------------------------------------------------------


class OAuthHandshake:
    """CSRF state, one-time login tokens and pending signups, all with TTLs."""

    def __init__(
        self,
        store: EphemeralStore,
        *,
        state_ttl: int = 300,
        login_token_ttl: int = 300,
        signup_ttl: int = 900,
    ) -> None:
        self._store = store
        self.state_ttl = state_ttl
        self.login_token_ttl = login_token_ttl
        self.signup_ttl = signup_ttl

    def create_state(self, provider: str, invitation_token: str | None = None) -> str:
        state = secrets.token_urlsafe(32)
        self._store.set(
            _STATE_PREFIX + state,
            {"provider": provider, "invitation_token": invitation_token},
            self.state_ttl,
        )
        return state

    def validate_state(self, state: str, provider: str) -> str | None:
        """Consume a state and return its invitation token (if any).

        Raises UnauthorizedError("invalid_state") for an unknown, expired,
        already-used or wrong-provider state.
        """
        data = self._store.pop(_STATE_PREFIX + (state or ""))
        if data is None or data.get("provider") != provider:
            raise UnauthorizedError("Invalid or expired OAuth state.", error_code="invalid_state")
        return data.get("invitation_token")

    def issue_login_token(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        self._store.set(_LOGIN_TOKEN_PREFIX + token, {"user_id": user_id}, self.login_token_ttl)
        return token

    def redeem_login_token(self, token: str) -> str:
        """Return the user id behind a login token. Works exactly once."""
        data = self._store.pop(_LOGIN_TOKEN_PREFIX + (token or ""))
        if data is None:
            raise UnauthorizedError("Invalid or expired login token.", error_code="invalid_login_token")
        return data["user_id"]

    def create_signup_session(self, profile: OAuthProfile, invitation_token: str | None = None) -> str:
        token = secrets.token_urlsafe(32)
        self._store.set(
            _SIGNUP_PREFIX + token,
            {
                "email": profile.email,
                "provider": profile.provider,
                "provider_id": profile.provider_id,
                "first_name": profile.first_name,
                "last_name": profile.last_name,
                "invitation_token": invitation_token,
            },
            self.signup_ttl,
        )
        return token

    def redeem_signup_session(self, token: str) -> tuple[OAuthProfile, str | None]:
        """Return (profile, invitation_token) for a pending signup. Works exactly once."""
        data = self._store.pop(_SIGNUP_PREFIX + (token or ""))
        if data is None:
            raise UnauthorizedError("Invalid or expired signup session.", error_code="invalid_signup_session")
        profile = OAuthProfile(
            email=data["email"],
            provider=data["provider"],
            provider_id=data["provider_id"],
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
        )
        return profile, data.get("invitation_token")
