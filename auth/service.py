"""
auth/service.py -- Auth Orchestrator: the single entry point for auth flows.

AuthService composes the Token Engine, Session Manager, Revocation Registry,
Key-pair service and Scope Resolver into login / refresh / logout /
password / OAuth-exchange flows. It owns no state of its own.

Session state machine:
    Active --refresh--> Active (new JTI, and a new refresh hash with rotation)
    Active --logout | revoke | password change--> Revoked  (terminal)
    Active --refresh expiry--> Expired                     (terminal)

Security notes:
  [C1] Login never reveals whether an email exists: unknown email, wrong
       password and a password login against an OAuth account all return the
       same UnauthorizedError, and bcrypt runs on every path.

  [C2] Refresh with rotation blacklists the old refresh JTI and pins the
       session row with update-if-unchanged, so one refresh token yields at
       most one new token pair.

  [C3] Password change / reset revokes every session and records a
       user-wide cutoff. Both are best effort: the password update already
       succeeded and is never rolled back over a cleanup failure.

  [C4] Reset tokens are 256-bit random values stored only as SHA-256.
       Unknown emails get the same silent success as known ones.

Every public flow is wrapped by @audited; see auth/audit.py.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditInterceptor, audited
from auth.blacklist import (
    REASON_ADMIN,
    REASON_LOGOUT,
    REASON_PASSWORD_CHANGE,
    REASON_ROTATION,
    REASON_SESSION_REVOKED,
    RevocationRegistry,
)
from auth.deadline import deadline
from auth.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    NotImplementedFeatureError,
    TokenInvalidError,
    UnauthorizedError,
    ValidationError,
)
from auth.keypairs import KeyPairService
from auth.models import (
    AUTH_METHOD_OAUTH,
    AUTH_METHOD_PASSWORD,
    AuthContext,
    KeyPairToken,
    OAuthOutcome,
    OAuthProfile,
    PasswordResetToken,
    TokenPair,
    User,
    UserSession,
)
from auth.oauth import OAuthHandshake
from auth.passwords import DEFAULT_COST, MAX_PASSWORD_BYTES, burn_verification, hash_password, verify_password
from auth.schema import utcnow
from auth.scopes import ScopeResolution, ScopeResolver
from auth.sessions import SessionManager, hash_refresh_token
from auth.store import PasswordResetStore, UserStore
from auth.tasks import BackgroundTaskQueue
from auth.tokens import TOKEN_TYPE_ACCESS, TOKEN_TYPE_API_KEY, AccessClaims, APIKeyClaims, IssuedToken, TokenEngine

logger = logging.getLogger("warden.auth.service")

REASON_REVOKE_ALL = "revoke_all_sessions"
REASON_PASSWORD_RESET = "password_reset"


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def _from_unix(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class AuthService:
    """Orchestrates every authentication flow.

    Usage:
        pair = service.login("a@b.com", "pw1")
        ctx = service.validate_token(pair.access_token)
        pair2 = service.refresh(pair.refresh_token)
        service.logout(ctx.jti, ctx.user_id)
    """

    def __init__(
        self,
        *,
        users: UserStore,
        tokens: TokenEngine,
        sessions: SessionManager,
        registry: RevocationRegistry,
        key_pairs: KeyPairService,
        scopes: ScopeResolver,
        resets: PasswordResetStore,
        handshake: OAuthHandshake,
        tasks: BackgroundTaskQueue,
        audit: AuditInterceptor | None = None,
        bcrypt_cost: int = DEFAULT_COST,
        password_reset_ttl_seconds: int = 3600,
        lookup_timeout_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.sessions = sessions
        self.registry = registry
        self.key_pairs = key_pairs
        self.scopes = scopes
        self.resets = resets
        self.handshake = handshake
        self.tasks = tasks
        self.audit = audit
        self.bcrypt_cost = bcrypt_cost
        self.password_reset_ttl_seconds = password_reset_ttl_seconds
        self.lookup_timeout_seconds = lookup_timeout_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Login / registration
    # ------------------------------------------------------------------

    @audited("auth.login")
    def login(
        self,
        email: str,
        password: str,
        device_info: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Password login [C1].

        Raises UnauthorizedError for bad credentials and ForbiddenError for an
        inactive account whose password was correct.
        """
        user = self.users.get_by_email(email or "")
        if user is None or user.auth_method != AUTH_METHOD_PASSWORD or not user.password_hash:
            burn_verification(password or "", cost=self.bcrypt_cost)
            raise UnauthorizedError("Invalid email or password.", error_code="invalid_credentials")
        if not verify_password(password or "", user.password_hash):
            raise UnauthorizedError("Invalid email or password.", error_code="invalid_credentials")
        if not user.is_active:
            raise ForbiddenError("Account is inactive.", error_code="account_inactive")
        return self._start_session(user, device_info=device_info, ip_address=ip_address, user_agent=user_agent)

    @audited("auth.register")
    def register(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        device_info: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Create a password account and log it in."""
        email = _check_email(email)
        self._check_new_password(password)
        user = self._create_user(
            User(
                email=email,
                password_hash=hash_password(password, cost=self.bcrypt_cost),
                first_name=(first_name or "").strip(),
                last_name=(last_name or "").strip(),
                auth_method=AUTH_METHOD_PASSWORD,
            )
        )
        logger.info("User registered (user_id=%s)", user.id)
        return self._start_session(user, device_info=device_info, ip_address=ip_address, user_agent=user_agent)

    @audited("auth.generate_tokens")
    def generate_tokens_for_user(
        self,
        user_id: str,
        device_info: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Open a session without a password check (OAuth-delegated login)."""
        user = self._require_active_user(user_id)
        return self._start_session(user, device_info=device_info, ip_address=ip_address, user_agent=user_agent)

    # ------------------------------------------------------------------
    # OAuth exchange
    # ------------------------------------------------------------------

    def create_oauth_state(self, provider: str, invitation_token: str | None = None) -> str:
        return self.handshake.create_state(provider, invitation_token)

    @audited("auth.oauth_login")
    def complete_oauth_login(self, profile: OAuthProfile, state: str) -> OAuthOutcome:
        """Turn a verified provider profile into a login token or a signup session.

        Security checks for an existing account, in order:
          1. the account must use OAuth (else account_exists_use_password)
          2. the stored provider must match (else use_<provider>)
          3. the stored provider id must match (else authentication_failed)
        """
        invitation_token = self.handshake.validate_state(state, profile.provider)
        user = self.users.get_by_email(profile.email)

        if user is None:
            token = self.handshake.create_signup_session(profile, invitation_token)
            logger.info("OAuth signup session created (provider=%s)", profile.provider)
            return OAuthOutcome(kind="signup", token=token)

        if user.auth_method != AUTH_METHOD_OAUTH:
            logger.warning("Password account attempted OAuth login (user_id=%s)", user.id)
            raise ForbiddenError(
                "An account with this email already exists. Sign in with your password.",
                error_code="account_exists_use_password",
            )
        if user.oauth_provider != profile.provider:
            stored = user.oauth_provider or "another_provider"
            logger.warning(
                "OAuth provider mismatch (user_id=%s, stored=%s, attempted=%s)", user.id, stored, profile.provider
            )
            raise ForbiddenError(f"This account signs in with {stored}.", error_code=f"use_{stored}")
        if user.oauth_provider_id is not None and user.oauth_provider_id != profile.provider_id:
            logger.error("OAuth provider id mismatch, possible takeover attempt (user_id=%s)", user.id)
            raise UnauthorizedError("Authentication failed.", error_code="authentication_failed")
        if not user.is_active:
            raise ForbiddenError("Account is inactive.", error_code="account_inactive")

        return OAuthOutcome(kind="login", token=self.handshake.issue_login_token(user.id), user_id=user.id)

    @audited("auth.login_token_exchange")
    def exchange_login_token(
        self,
        login_token: str,
        device_info: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Trade a one-time login token for a token pair. Works once."""
        user_id = self.handshake.redeem_login_token(login_token)
        user = self._require_active_user(user_id)
        return self._start_session(user, device_info=device_info, ip_address=ip_address, user_agent=user_agent)

    @audited("auth.oauth_signup")
    def complete_oauth_signup(
        self,
        signup_token: str,
        first_name: str | None = None,
        last_name: str | None = None,
        device_info: dict | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> TokenPair:
        """Create the OAuth account from a pending signup and log it in."""
        profile, invitation_token = self.handshake.redeem_signup_session(signup_token)
        user = self._create_user(
            User(
                email=profile.email,
                first_name=(first_name if first_name is not None else profile.first_name).strip(),
                last_name=(last_name if last_name is not None else profile.last_name).strip(),
                auth_method=AUTH_METHOD_OAUTH,
                oauth_provider=profile.provider,
                oauth_provider_id=profile.provider_id,
            )
        )
        if invitation_token:
            # Accepting the invitation belongs to the organization subsystem.
            logger.info("OAuth signup carried an invitation (user_id=%s)", user.id)
        logger.info("OAuth user created (user_id=%s, provider=%s)", user.id, profile.provider)
        return self._start_session(user, device_info=device_info, ip_address=ip_address, user_agent=user_agent)

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    @audited("auth.logout")
    def logout(self, jti: str, user_id: str) -> None:
        """Blacklist the access JTI and revoke its session. Idempotent."""
        session = self._owned_session_by_jti(jti, user_id)
        self.registry.blacklist(jti, user_id, self._access_expiry_for(session), REASON_LOGOUT)
        if session is not None and session.is_active:
            self.sessions.revoke(session.id)

    @audited("auth.refresh")
    def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new pair [C2].

        Raises UnauthorizedError for an invalid, revoked or already-rotated
        refresh token, ForbiddenError for an inactive user.
        """
        claims = self.tokens.verify_refresh(refresh_token)
        if self.registry.is_blacklisted(claims.jti):
            raise UnauthorizedError("Refresh token has been revoked.", error_code="token_revoked")
        if self.registry.is_user_revoked_after(claims.user_id, claims.issued_at_ms):
            raise UnauthorizedError("Refresh token has been revoked.", error_code="token_revoked")

        session = self.sessions.get_by_refresh_token_hash(hash_refresh_token(refresh_token))
        if session.user_id != claims.user_id:
            raise UnauthorizedError("Refresh token does not match its session.", error_code="session_mismatch")

        user = self.users.get_by_id(claims.user_id)
        if user is None:
            raise UnauthorizedError("User not found.", error_code="invalid_credentials")
        if not user.is_active:
            raise ForbiddenError("Account is inactive.", error_code="account_inactive")

        access = self._issue_access(user)
        rotating = self.sessions.rotation_enabled
        new_refresh = self.tokens.issue_refresh_token(user.id) if rotating else None

        self.sessions.rotate(
            session,
            access.jti,
            access.expires_at_datetime,
            hash_refresh_token(new_refresh.token) if new_refresh else None,
            new_refresh.expires_at_datetime if new_refresh else None,
        )

        if rotating:
            try:
                self.registry.blacklist(claims.jti, user.id, _from_unix(claims.expires_at), REASON_ROTATION)
            except Exception:
                logger.warning("Could not blacklist rotated refresh token (session_id=%s)", session.id, exc_info=True)

        return TokenPair(
            access_token=access.token,
            refresh_token=new_refresh.token if new_refresh else refresh_token,
            expires_in=access.expires_at - access.issued_at,
            user_id=user.id,
            session_id=session.id,
        )

    def validate_token(self, token: str, timeout: float | None = None) -> AuthContext:
        """Authenticate a bearer token (access or API-key) for one request.

        Every store lookup runs under a deadline (timeout, or the configured
        lookup timeout); DeadlineExceededError aborts with no side effects.
        The session last-used stamp is dispatched to the background queue.
        """
        limit = timeout if timeout is not None else self.lookup_timeout_seconds
        with deadline(limit):
            claims = self.tokens.verify(token)
            if isinstance(claims, AccessClaims):
                return self._validate_access(claims)
            if isinstance(claims, APIKeyClaims):
                return self._validate_api_key(claims)
        raise TokenInvalidError("Refresh tokens cannot authenticate requests.")

    def _validate_access(self, claims: AccessClaims) -> AuthContext:
        if self.registry.is_blacklisted(claims.jti):
            raise UnauthorizedError("Token has been revoked.", error_code="token_revoked")
        if self.registry.is_user_revoked_after(claims.user_id, claims.issued_at_ms):
            raise UnauthorizedError("Token has been revoked.", error_code="token_revoked")

        session = self.sessions.get_by_jti(claims.jti)
        if session is not None:
            if not session.is_active:
                raise UnauthorizedError("Session has been revoked.", error_code="session_revoked")
            self.tasks.submit("session.mark_used", self.sessions.mark_used, session)

        return AuthContext(
            user_id=claims.user_id,
            token_type=TOKEN_TYPE_ACCESS,
            jti=claims.jti,
            session_id=session.id if session is not None else None,
            organization_id=claims.organization_id,
            email=claims.email or None,
            scopes=list(claims.permissions),
        )

    def _validate_api_key(self, claims: APIKeyClaims) -> AuthContext:
        if self.registry.is_blacklisted(claims.jti):
            raise UnauthorizedError("Token has been revoked.", error_code="token_revoked")
        key_pair = self.key_pairs.ensure_usable(claims.api_key_id)
        if self.registry.is_user_revoked_after(key_pair.user_id, claims.issued_at_ms):
            raise UnauthorizedError("Token has been revoked.", error_code="token_revoked")
        return AuthContext(
            user_id=key_pair.user_id,
            token_type=TOKEN_TYPE_API_KEY,
            jti=claims.jti,
            api_key_id=key_pair.id,
            organization_id=key_pair.organization_id,
            project_id=key_pair.project_id,
            scopes=list(claims.scopes),
        )

    @audited("auth.key_pair_exchange", resource_type="key_pair", resource_arg="public_key")
    def exchange_key_pair(self, public_key: str, secret_key: str) -> KeyPairToken:
        """Validate a key pair and mint a short-lived API-key token for it."""
        key_pair = self.key_pairs.validate(public_key, secret_key)
        issued = self.tokens.issue_api_key_token(key_pair.id, key_pair.scopes)
        return KeyPairToken(
            access_token=issued.token,
            expires_in=issued.expires_at - issued.issued_at,
            api_key_id=key_pair.id,
            scopes=list(key_pair.scopes),
            user_id=key_pair.user_id,
        )

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    @audited("auth.password_change")
    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        if not user.password_hash:
            raise ValidationError("This account signs in with OAuth and has no password.", error_code="oauth_account")
        if not verify_password(current_password or "", user.password_hash):
            raise UnauthorizedError("Current password is incorrect.", error_code="invalid_password")
        self._check_new_password(new_password)

        self.users.update_password(user_id, hash_password(new_password, cost=self.bcrypt_cost))
        logger.info("Password changed (user_id=%s)", user_id)
        self._revoke_everywhere(user_id, REASON_PASSWORD_CHANGE)

    @audited("auth.password_reset")
    def reset_password(self, email: str) -> str | None:
        """Start a reset [C4]. Returns the raw token for delivery, or None.

        None (not an error) for unknown, inactive and OAuth-only accounts, so
        the caller's response cannot reveal which emails are registered.
        """
        user = self.users.get_by_email(email or "")
        if user is None or not user.is_active or user.auth_method != AUTH_METHOD_PASSWORD:
            logger.info("Password reset requested for an unknown or ineligible email")
            return None

        self.resets.invalidate_all_for_user(user.id)
        raw_token = secrets.token_hex(32)
        self.resets.create(
            PasswordResetToken(
                user_id=user.id,
                token_hash=hash_reset_token(raw_token),
                expires_at=self._clock() + timedelta(seconds=self.password_reset_ttl_seconds),
            )
        )
        logger.info("Password reset token issued (user_id=%s)", user.id)
        return raw_token

    @audited("auth.password_reset_confirm")
    def confirm_password_reset(self, token: str, new_password: str) -> None:
        record = self.resets.get_by_token_hash(hash_reset_token(token or ""))
        if record is None or record.used_at is not None or record.expires_at <= self._clock():
            raise ValidationError("Reset token is invalid or has expired.", error_code="invalid_reset_token")
        self._check_new_password(new_password)

        user = self.users.get_by_id(record.user_id)
        if user is None:
            raise NotFoundError("User not found.")
        if not user.is_active:
            raise ForbiddenError("Account is inactive.", error_code="account_inactive")

        self.users.update_password(user.id, hash_password(new_password, cost=self.bcrypt_cost))
        try:
            self.resets.mark_used(record.id)
        except Exception:
            logger.warning("Could not mark reset token used (user_id=%s)", user.id, exc_info=True)
        logger.info("Password reset completed (user_id=%s)", user.id)
        self._revoke_everywhere(user.id, REASON_PASSWORD_RESET)

    # ------------------------------------------------------------------
    # Revocation and sessions
    # ------------------------------------------------------------------

    @audited("auth.revoke_access_token")
    def revoke_access_token(self, jti: str, user_id: str, reason: str = REASON_ADMIN) -> None:
        session = self._owned_session_by_jti(jti, user_id)
        self.registry.revoke_user_token_by_jti(jti, user_id, self._access_expiry_for(session), reason)

    @audited("auth.revoke_user_access_tokens")
    def revoke_user_access_tokens(self, user_id: str, reason: str = REASON_ADMIN) -> None:
        self.registry.blacklist_all_user_tokens(user_id, reason)

    def is_token_revoked(self, jti: str) -> bool:
        return self.registry.is_blacklisted(jti)

    def get_user_sessions(self, user_id: str) -> list[UserSession]:
        return self.sessions.list_active(user_id)

    @audited("auth.session_revoke", resource_type="session", resource_arg="session_id")
    def revoke_session(self, user_id: str, session_id: str) -> None:
        """Revoke one of the user's own sessions and its current access token."""
        session = self.sessions.get_by_id(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("Session not found.")
        self.sessions.revoke(session.id)
        self.registry.blacklist(session.current_jti, user_id, session.expires_at, REASON_SESSION_REVOKED)

    @audited("auth.sessions_revoke_all")
    def revoke_all_sessions(self, user_id: str) -> int:
        """Log out everywhere: revoke every session and cut off older tokens."""
        count = self.sessions.revoke_all(user_id)
        self.registry.blacklist_all_user_tokens(user_id, REASON_REVOKE_ALL)
        return count

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_current_user(self, user_id: str) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def get_user_scopes(
        self, user_id: str, organization_id: str | None = None, project_id: str | None = None
    ) -> ScopeResolution:
        return self.scopes.get_user_scopes(user_id, organization_id, project_id)

    def send_email_verification(self, user_id: str) -> None:
        raise NotImplementedFeatureError("Email verification is not implemented.")

    def verify_email(self, token: str) -> None:
        raise NotImplementedFeatureError("Email verification is not implemented.")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start_session(
        self,
        user: User,
        *,
        device_info: dict | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> TokenPair:
        access = self._issue_access(user)
        refresh = self.tokens.issue_refresh_token(user.id)
        session = self.sessions.create(
            user.id,
            hash_refresh_token(refresh.token),
            access.jti,
            access.expires_at_datetime,
            refresh.expires_at_datetime,
            device_info=device_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            self.users.update_last_login(user.id)
        except Exception:
            logger.warning("Could not update last login (user_id=%s)", user.id, exc_info=True)
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=access.expires_at - access.issued_at,
            user_id=user.id,
            session_id=session.id,
        )

    def _issue_access(self, user: User) -> IssuedToken:
        permissions: tuple[str, ...] = ()
        if user.default_organization_id:
            permissions = self.scopes.get_user_scopes_in_organization(
                user.id, user.default_organization_id
            ).effective_scopes
        return self.tokens.issue_access_token(
            user.id,
            email=user.email,
            organization_id=user.default_organization_id,
            permissions=permissions,
        )

    def _require_active_user(self, user_id: str) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        if not user.is_active:
            raise ForbiddenError("Account is inactive.", error_code="account_inactive")
        return user

    def _create_user(self, user: User) -> User:
        try:
            return self.users.create_user(user)
        except IntegrityError as exc:
            raise ConflictError("An account with this email already exists.", error_code="email_taken") from exc

    def _check_new_password(self, password: str) -> None:
        if not password:
            raise ValidationError("Password must not be empty.", detail={"field": "password"})
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValidationError(
                f"Password must be at most {MAX_PASSWORD_BYTES} bytes.", detail={"field": "password"}
            )

    def _owned_session_by_jti(self, jti: str, user_id: str) -> UserSession | None:
        session = self.sessions.get_by_jti(jti)
        if session is None or session.user_id != user_id:
            return None
        return session

    def _access_expiry_for(self, session: UserSession | None) -> datetime:
        # Without a session the exact expiry is unknown; one access TTL from
        # now outlives any access token issued up to this moment.
        if session is not None:
            return session.expires_at
        return self._clock() + timedelta(seconds=self.tokens.access_ttl_seconds)

    def _revoke_everywhere(self, user_id: str, reason: str) -> None:
        try:
            self.sessions.revoke_all(user_id)
        except Exception:
            logger.warning("Could not revoke sessions after %s (user_id=%s)", reason, user_id, exc_info=True)
        try:
            self.registry.blacklist_all_user_tokens(user_id, reason)
        except Exception:
            logger.warning("Could not record user cutoff after %s (user_id=%s)", reason, user_id, exc_info=True)


def _check_email(email: str) -> str:
    email = (email or "").strip().lower()
    local, _, domain = email.partition("@")
    if not local or not domain or "." not in domain or len(email) > 255:
        raise ValidationError("A valid email address is required.", detail={"field": "email"})
    return email
