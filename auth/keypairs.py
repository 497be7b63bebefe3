"""
auth/keypairs.py -- Key-pair credential issuance and validation.

Format:
  public key  pk_<26-char project ULID>_<32 hex>   (safe to log, indexed)
  secret key  sk_<40 hex>                          (bcrypt-hashed at rest)

Security design decisions:
  [KP1] The raw secret is returned exactly once, in CreatedKeyPair. Only
        its bcrypt hash is stored; nothing can recover it afterwards.

  [KP2] validate() looks up by public key, then does a bcrypt compare. An
        unknown or malformed public key still burns one bcrypt verification
        so response time does not reveal which public keys exist [C1].

  [KP3] Revocation is deactivation. Rows are never deleted.

  [KP4] last_used_at is written through the BackgroundTaskQueue. A slow or
        failing write there never delays or fails the authorization.

Rate limits: each key carries rate_limit_rpm. Enforcement belongs to the
caller's limiter; this module only stores and exposes the ceiling.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Callable, Iterable
from datetime import datetime

from auth.audit import AuditInterceptor, audited
from auth.errors import ForbiddenError, NotFoundError, UnauthorizedError, ValidationError
from auth.ids import ULID_LENGTH, is_valid_ulid
from auth.models import AuthContext, CreatedKeyPair, KeyPair
from auth.passwords import DEFAULT_COST, burn_verification, hash_password, verify_password
from auth.schema import utcnow
from auth.scopes import ADMIN_SCOPE, validate_scope_format
from auth.store import KeyPairStore
from auth.tasks import BackgroundTaskQueue
from auth.tokens import TOKEN_TYPE_API_KEY

logger = logging.getLogger("warden.auth.keypairs")

PUBLIC_KEY_PREFIX = "pk_"
SECRET_KEY_PREFIX = "sk_"
PUBLIC_RANDOM_BYTES = 16  # 32 hex chars
SECRET_RANDOM_BYTES = 20  # 40 hex chars
PUBLIC_KEY_LENGTH = len(PUBLIC_KEY_PREFIX) + ULID_LENGTH + 1 + PUBLIC_RANDOM_BYTES * 2

_PUBLIC_SUFFIX_RE = re.compile(r"^[0-9a-f]{32}$")
_SECRET_RE = re.compile(r"^sk_[0-9a-f]{40}$")

MAX_NAME_LENGTH = 100


class KeyPairService:
    def __init__(
        self,
        store: KeyPairStore,
        tasks: BackgroundTaskQueue,
        *,
        bcrypt_cost: int = DEFAULT_COST,
        default_rate_limit_rpm: int = 1000,
        audit: AuditInterceptor | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._tasks = tasks
        self.audit = audit
        self._bcrypt_cost = bcrypt_cost
        self.default_rate_limit_rpm = default_rate_limit_rpm
        self._clock = clock

    # ------------------------------------------------------------------
    # Generation and format
    # ------------------------------------------------------------------

    def generate(self, project_id: str) -> tuple[str, str]:
        """Return a fresh (public_key, secret_key) for project_id."""
        if not is_valid_ulid(project_id):
            raise ValidationError("project_id must be a 26-character ULID.", detail={"field": "project_id"})
        public_key = f"{PUBLIC_KEY_PREFIX}{project_id}_{secrets.token_hex(PUBLIC_RANDOM_BYTES)}"
        secret_key = f"{SECRET_KEY_PREFIX}{secrets.token_hex(SECRET_RANDOM_BYTES)}"
        return public_key, secret_key

    @staticmethod
    def validate_public_key_format(public_key: str) -> None:
        """Raise ValidationError unless public_key is pk_<ULID>_<32 hex>."""
        if not isinstance(public_key, str) or not public_key.startswith(PUBLIC_KEY_PREFIX):
            raise ValidationError("Public key must start with 'pk_'.")
        if len(public_key) != PUBLIC_KEY_LENGTH:
            raise ValidationError("Public key has the wrong length.")
        parts = public_key[len(PUBLIC_KEY_PREFIX) :].split("_")
        if len(parts) != 2:
            raise ValidationError("Public key must be in the form pk_<project_id>_<random>.")
        project_part, random_part = parts
        if not is_valid_ulid(project_part):
            raise ValidationError("Public key embeds a malformed project id.")
        if not _PUBLIC_SUFFIX_RE.match(random_part):
            raise ValidationError("Public key random part must be 32 lowercase hex characters.")

    @classmethod
    def extract_project_id(cls, public_key: str) -> str:
        cls.validate_public_key_format(public_key)
        return public_key[len(PUBLIC_KEY_PREFIX) : len(PUBLIC_KEY_PREFIX) + ULID_LENGTH]

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    @audited("key_pair.create", resource_type="key_pair", resource_arg="key_id")
    def create(
        self,
        user_id: str,
        organization_id: str,
        project_id: str,
        name: str,
        scopes: Iterable[str],
        *,
        rate_limit_rpm: int | None = None,
        expires_at: datetime | None = None,
    ) -> CreatedKeyPair:
        """Issue a key pair. The secret in the result is shown once [KP1]."""
        name = _check_name(name)
        scope_list = validate_scope_format(scopes)
        rpm = self.default_rate_limit_rpm if rate_limit_rpm is None else _check_rpm(rate_limit_rpm)
        if expires_at is not None:
            _check_expiry(expires_at, self._clock())

        public_key, secret_key = self.generate(project_id)
        key_pair = self._store.create(
            KeyPair(
                user_id=user_id,
                organization_id=organization_id,
                project_id=project_id,
                name=name,
                public_key=public_key,
                secret_key_hash=hash_password(secret_key, cost=self._bcrypt_cost),
                scopes=scope_list,
                rate_limit_rpm=rpm,
                expires_at=expires_at,
            )
        )
        logger.info("Key pair created (id=%s, public_key=%s, project_id=%s)", key_pair.id, public_key, project_id)
        return CreatedKeyPair(
            id=key_pair.id,
            name=key_pair.name,
            public_key=public_key,
            secret_key=secret_key,
            organization_id=organization_id,
            project_id=key_pair.project_id,
            scopes=scope_list,
            rate_limit_rpm=rpm,
            expires_at=expires_at,
        )

    def get(self, key_id: str, *, user_id: str | None = None) -> KeyPair:
        """Return the key pair. With user_id, another user's key reads as not found."""
        key_pair = self._store.get_by_id(key_id)
        if key_pair is None or (user_id is not None and key_pair.user_id != user_id):
            raise NotFoundError("Key pair not found.")
        return key_pair

    def list(
        self,
        *,
        user_id: str | None = None,
        organization_id: str | None = None,
        project_id: str | None = None,
        active_only: bool = False,
    ) -> list[KeyPair]:
        return self._store.list_by(
            user_id=user_id,
            organization_id=organization_id,
            project_id=project_id,
            active_only=active_only,
        )

    @audited("key_pair.update", resource_type="key_pair", resource_arg="key_id")
    def update(
        self,
        key_id: str,
        *,
        user_id: str | None = None,
        name: str | None = None,
        scopes: Iterable[str] | None = None,
        rate_limit_rpm: int | None = None,
        expires_at: datetime | None = None,
        is_active: bool | None = None,
    ) -> KeyPair:
        self.get(key_id, user_id=user_id)
        fields: dict = {}
        if name is not None:
            fields["name"] = _check_name(name)
        if scopes is not None:
            fields["scopes"] = validate_scope_format(scopes)
        if rate_limit_rpm is not None:
            fields["rate_limit_rpm"] = _check_rpm(rate_limit_rpm)
        if expires_at is not None:
            fields["expires_at"] = _check_expiry(expires_at, self._clock())
        if is_active is not None:
            fields["is_active"] = is_active
        if fields:
            self._store.update(key_id, **fields)
        return self.get(key_id)

    @audited("key_pair.revoke", resource_type="key_pair", resource_arg="key_id")
    def revoke(self, key_id: str, *, user_id: str | None = None) -> None:
        """Deactivate a key pair [KP3]. Revoking an inactive key is a no-op."""
        self.get(key_id, user_id=user_id)
        self._store.deactivate(key_id)
        logger.info("Key pair revoked (id=%s)", key_id)

    # ------------------------------------------------------------------
    # Validation (hot path)
    # ------------------------------------------------------------------

    def validate(self, public_key: str, secret_key: str) -> KeyPair:
        """Check a (public, secret) pair and return the live KeyPair.

        Raises UnauthorizedError for a malformed, unknown, inactive or expired
        pair, or a wrong secret [KP2].
        """
        try:
            self.validate_public_key_format(public_key)
        except ValidationError:
            burn_verification(secret_key or "", cost=self._bcrypt_cost)
            raise UnauthorizedError("Invalid key pair.") from None

        key_pair = self._store.get_by_public_key(public_key)
        if key_pair is None or not _SECRET_RE.match(secret_key or ""):
            burn_verification(secret_key or "", cost=self._bcrypt_cost)
            raise UnauthorizedError("Invalid key pair.")
        if not verify_password(secret_key, key_pair.secret_key_hash):
            raise UnauthorizedError("Invalid key pair.")
        if not key_pair.is_active:
            raise UnauthorizedError("Key pair is inactive.", error_code="key_inactive")
        if key_pair.expires_at is not None and key_pair.expires_at <= self._clock():
            raise UnauthorizedError("Key pair has expired.", error_code="key_expired")

        self._tasks.submit("key_pair.mark_used", self._store.mark_used, key_pair.id)
        return key_pair

    def ensure_usable(self, key_id: str) -> KeyPair:
        """Re-check an already-authenticated key pair is still active and unexpired."""
        key_pair = self._store.get_by_id(key_id)
        if key_pair is None or not key_pair.is_active:
            raise UnauthorizedError("Key pair is inactive.", error_code="key_inactive")
        if key_pair.expires_at is not None and key_pair.expires_at <= self._clock():
            raise UnauthorizedError("Key pair has expired.", error_code="key_expired")
        return key_pair

    def authenticate(self, public_key: str, secret_key: str) -> AuthContext:
        key_pair = self.validate(public_key, secret_key)
        return AuthContext(
            user_id=key_pair.user_id,
            token_type=TOKEN_TYPE_API_KEY,
            api_key_id=key_pair.id,
            organization_id=key_pair.organization_id,
            project_id=key_pair.project_id,
            scopes=list(key_pair.scopes),
        )

    # ------------------------------------------------------------------
    # Scopes
    # ------------------------------------------------------------------

    @staticmethod
    def has_scope(key_pair: KeyPair, scope: str) -> bool:
        """True if the key holds scope or the admin wildcard."""
        return ADMIN_SCOPE in key_pair.scopes or scope in key_pair.scopes

    def check_scopes(self, key_pair: KeyPair, required: Iterable[str]) -> None:
        """Raise ForbiddenError unless the key holds every required scope."""
        missing = [s for s in required if not self.has_scope(key_pair, s)]
        if missing:
            raise ForbiddenError("Key pair lacks required scopes.", detail={"missing_scopes": missing})


def _check_expiry(expires_at: datetime, now: datetime) -> datetime:
    if expires_at <= now:
        raise ValidationError("expires_at must be in the future.", detail={"field": "expires_at"})
    return expires_at


def _check_name(name: str) -> str:
    name = (name or "").strip()
    if not name or len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"name must be 1-{MAX_NAME_LENGTH} characters.", detail={"field": "name"})
    return name


def _check_rpm(rpm: int) -> int:
    if rpm < 1:
        raise ValidationError("rate_limit_rpm must be positive.", detail={"field": "rate_limit_rpm"})
    return rpm
