"""
auth/tokens.py -- Token Engine: mint and verify signed bearer tokens.

Security design decisions:
  Signing: python-jose with exactly one configured scheme.
       HS256 -- shared secret signs and verifies.
       RS256 -- private key signs, public key verifies. Key material comes from
       a PEM/DER file path or an inline base64 value; PKCS#8 and PKCS#1 private
       keys are both accepted. The public key is derived from the private key
       when not configured, and must match it when it is [K1].

  Fatal configuration: every key problem raises KeyConfigurationError while
       the engine is built (process start). Nothing about key loading can fail
       per request.

  Claims: closed, frozen dataclasses per token type. Only AccessClaims carries
       a small typed extension map ("ext"), restricted to str/int/bool values.
       Refresh tokens carry nothing but the user id so they cannot leak a stale
       permission snapshot.

  Verification order: signature -> issuer -> exp -> nbf -> structure. The
       engine never consults the revocation registry; callers do that, which
       keeps this module side-effect free.

  JTI: a fresh ULID per token (time-ordered, never derived from input).

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Union

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jws, jwt
from jose.exceptions import JWSError, JWSSignatureError, JWTError

from auth.errors import (
    IssuerMismatchError,
    KeyConfigurationError,
    SignatureMismatchError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from auth.ids import datetime_to_ms, is_valid_ulid, new_ulid, ulid_timestamp_ms
from auth.schema import utcnow

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("warden.auth.tokens")

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_API_KEY = "api_key"

_MIN_RSA_BITS = 2048

ClaimValue = Union[str, int, bool]


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenClaims:
    """Registered claims shared by every token type."""

    issuer: str
    subject: str
    issued_at: int  # Unix seconds
    not_before: int
    expires_at: int
    jti: str
    token_type: str

    @property
    def issued_at_ms(self) -> int:
        """Issue instant in Unix milliseconds, read from the JTI."""
        return ulid_timestamp_ms(self.jti)


@dataclass(frozen=True)
class AccessClaims(TokenClaims):
    user_id: str = ""
    email: str = ""
    organization_id: str | None = None
    permissions: tuple[str, ...] = ()
    extra: Mapping[str, ClaimValue] = field(default_factory=dict)


@dataclass(frozen=True)
class RefreshClaims(TokenClaims):
    user_id: str = ""


@dataclass(frozen=True)
class APIKeyClaims(TokenClaims):
    api_key_id: str = ""
    scopes: tuple[str, ...] = ()


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    issued_at: int
    expires_at: int

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SigningKeys:
    """Immutable key material shared read-only by every verification."""

    algorithm: str
    signing_key: str
    verification_key: str = field(repr=False)


def _read_key_source(path: str, inline_b64: str, label: str) -> bytes | None:
    if path:
        try:
            return Path(path).read_bytes()
        except OSError as exc:
            raise KeyConfigurationError(f"Cannot read {label} key file {path!r}: {exc}") from exc
    if inline_b64:
        try:
            return base64.b64decode(inline_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise KeyConfigurationError(f"{label} key base64 value is not valid base64.") from exc
    return None


def _load_private_key(data: bytes) -> rsa.RSAPrivateKey:
    """Parse an RSA private key: PEM or DER, PKCS#8 or PKCS#1."""
    key = None
    errors: list[str] = []
    for loader in (serialization.load_pem_private_key, serialization.load_der_private_key):
        try:
            key = loader(data, password=None)
            break
        except (ValueError, TypeError) as exc:
            errors.append(str(exc))
    if key is None:
        raise KeyConfigurationError(f"Private key could not be parsed: {'; '.join(errors)}")
    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyConfigurationError("RS256 requires an RSA private key.")
    return key


def _load_public_key(data: bytes) -> rsa.RSAPublicKey:
    key = None
    for loader in (serialization.load_pem_public_key, serialization.load_der_public_key):
        try:
            key = loader(data)
            break
        except (ValueError, TypeError):
            continue
    if key is None:
        raise KeyConfigurationError("Public key could not be parsed.")
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyConfigurationError("RS256 requires an RSA public key.")
    return key


def load_signing_keys(settings: Settings) -> SigningKeys:
    """Resolve the configured signing scheme into SigningKeys.

    Raises KeyConfigurationError on missing, unreadable, weak or mismatched
    key material.
    """
    method = settings.jwt_signing_method.upper()
    if method == "HS256":
        if not settings.jwt_secret:
            raise KeyConfigurationError("HS256 requires JWT_SECRET.")
        return SigningKeys(algorithm="HS256", signing_key=settings.jwt_secret, verification_key=settings.jwt_secret)

    if method != "RS256":
        raise KeyConfigurationError(f"Unsupported signing method: {settings.jwt_signing_method!r}")

    private_data = _read_key_source(settings.jwt_private_key_path, settings.jwt_private_key_base64, "private")
    if private_data is None:
        raise KeyConfigurationError("RS256 requires a private key (path or base64).")
    private_key = _load_private_key(private_data)
    if private_key.key_size < _MIN_RSA_BITS:
        raise KeyConfigurationError(f"RSA key must be at least {_MIN_RSA_BITS} bits, got {private_key.key_size}.")

    public_data = _read_key_source(settings.jwt_public_key_path, settings.jwt_public_key_base64, "public")
    if public_data is None:
        public_key = private_key.public_key()
    else:
        public_key = _load_public_key(public_data)
        if public_key.public_numbers() != private_key.public_key().public_numbers():
            raise KeyConfigurationError("Configured public key does not match the private key.")

    signing_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    verification_pem = public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return SigningKeys(algorithm="RS256", signing_key=signing_pem, verification_key=verification_pem)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TokenEngine:
    """Stateless signer/verifier. The only holder of signing key material.

    Usage:
        engine = TokenEngine.from_settings(get_settings())
        issued = engine.issue_access_token(user.id, email=user.email)
        claims = engine.verify_access(issued.token)
    """

    def __init__(
        self,
        keys: SigningKeys,
        *,
        issuer: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        leeway_seconds: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._keys = keys
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = utcnow) -> TokenEngine:
        keys = load_signing_keys(settings)
        logger.info("Token engine ready (algorithm=%s, issuer=%s)", keys.algorithm, settings.jwt_issuer)
        return cls(
            keys,
            issuer=settings.jwt_issuer,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            leeway_seconds=settings.jwt_leeway_seconds,
            clock=clock,
        )

    @property
    def algorithm(self) -> str:
        return self._keys.algorithm

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(
        self,
        user_id: str,
        *,
        email: str = "",
        organization_id: str | None = None,
        permissions: Iterable[str] = (),
        extra: Mapping[str, ClaimValue] | None = None,
    ) -> IssuedToken:
        """Mint an access token. The JTI is returned alongside so the caller
        can store it on the session without re-parsing the token.
        """
        ext = _validate_extra(extra or {})
        payload = {
            "user_id": user_id,
            "email": email,
            "organization_id": organization_id,
            "permissions": list(permissions),
        }
        if ext:
            payload["ext"] = ext
        return self._issue(TOKEN_TYPE_ACCESS, user_id, self.access_ttl_seconds, payload)

    def issue_refresh_token(self, user_id: str) -> IssuedToken:
        return self._issue(TOKEN_TYPE_REFRESH, user_id, self.refresh_ttl_seconds, {"user_id": user_id})

    def issue_api_key_token(self, key_id: str, scopes: Iterable[str]) -> IssuedToken:
        """Mint a short-lived (access TTL) token carrying the key's scopes directly."""
        return self._issue(
            TOKEN_TYPE_API_KEY,
            key_id,
            self.access_ttl_seconds,
            {"api_key_id": key_id, "scopes": list(scopes)},
        )

    def _issue(self, token_type: str, subject: str, ttl_seconds: int, body: dict) -> IssuedToken:
        issued = self._clock()
        now = int(issued.timestamp())
        # The JTI carries the issue instant at millisecond resolution; user cutoffs compare against it.
        jti = new_ulid(datetime_to_ms(issued))
        payload = {
            "iss": self.issuer,
            "sub": subject,
            "iat": now,
            "nbf": now,
            "exp": now + ttl_seconds,
            "jti": jti,
            "token_type": token_type,
            **body,
        }
        try:
            token = jwt.encode(payload, self._keys.signing_key, algorithm=self._keys.algorithm)
        except JWTError as exc:
            raise KeyConfigurationError(f"Token signing failed: {exc}") from exc
        return IssuedToken(token=token, jti=jti, issued_at=now, expires_at=now + ttl_seconds)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, token: str) -> TokenClaims:
        """Verify signature, issuer, exp and nbf; return typed claims.

        Raises SignatureMismatchError, IssuerMismatchError, TokenExpiredError
        or TokenInvalidError. Does NOT consult the revocation registry.
        """
        try:
            raw = jws.verify(token, self._keys.verification_key, algorithms=[self._keys.algorithm])
        except JWSError as exc:
            if _is_signature_failure(exc):
                raise SignatureMismatchError("Token signature verification failed.") from exc
            raise TokenInvalidError("Token is malformed.") from exc

        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise TokenInvalidError("Token payload is not valid JSON.") from exc
        if not isinstance(payload, dict):
            raise TokenInvalidError("Token payload is not a JSON object.")

        if payload.get("iss") != self.issuer:
            raise IssuerMismatchError("Token issuer mismatch.")

        now = int(self._clock().timestamp())
        exp = payload.get("exp")
        nbf = payload.get("nbf")
        if not isinstance(exp, int) or not isinstance(nbf, int):
            raise TokenInvalidError("Token is missing exp/nbf.")
        if now >= exp + self.leeway_seconds:
            raise TokenExpiredError("Token has expired.")
        if now + self.leeway_seconds < nbf:
            raise TokenInvalidError("Token is not valid yet.")

        return _claims_from_payload(payload)

    def verify_access(self, token: str) -> AccessClaims:
        return self._verify_typed(token, AccessClaims, TOKEN_TYPE_ACCESS)

    def verify_refresh(self, token: str) -> RefreshClaims:
        return self._verify_typed(token, RefreshClaims, TOKEN_TYPE_REFRESH)

    def verify_api_key_token(self, token: str) -> APIKeyClaims:
        return self._verify_typed(token, APIKeyClaims, TOKEN_TYPE_API_KEY)

    def _verify_typed(self, token: str, expected_cls: type, expected_type: str):
        claims = self.verify(token)
        if not isinstance(claims, expected_cls):
            raise TokenInvalidError(f"Expected a {expected_type} token, got {claims.token_type}.")
        return claims

    # ------------------------------------------------------------------
    # Introspection (never use for authorization)
    # ------------------------------------------------------------------

    def extract_unverified(self, token: str) -> TokenClaims:
        """Parse claims WITHOUT checking signature or expiry. Debugging only."""
        try:
            payload = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenInvalidError("Token is malformed.") from exc
        return _claims_from_payload(payload)

    def token_expiry(self, token: str) -> datetime:
        claims = self.extract_unverified(token)
        return datetime.fromtimestamp(claims.expires_at, tz=timezone.utc)

    def token_ttl(self, token: str) -> int:
        """Seconds until expiry (0 once expired)."""
        claims = self.extract_unverified(token)
        return max(0, claims.expires_at - int(self._clock().timestamp()))

    def is_token_expired(self, token: str) -> bool:
        return self.token_ttl(token) == 0


# ---------------------------------------------------------------------------
# Claim mapping
# ---------------------------------------------------------------------------


def _validate_extra(extra: Mapping[str, ClaimValue]) -> dict[str, ClaimValue]:
    checked: dict[str, ClaimValue] = {}
    for key, value in extra.items():
        if not isinstance(key, str) or not key:
            raise ValidationError("Extension claim keys must be non-empty strings.")
        if not isinstance(value, (str, int, bool)):
            raise ValidationError(f"Extension claim {key!r} must be str, int or bool.")
        checked[key] = value
    return checked


def _str_tuple(value) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise TokenInvalidError("Token list claim is malformed.")
    return tuple(value)


_SIGNATURE_FAILED = "Signature verification failed."


def _is_signature_failure(exc: JWSError) -> bool:
    """True when jws.verify rejected the signature itself.

    jose wraps its JWSSignatureError in a plain JWSError, so the original
    survives only as the implicit exception context.
    """
    return isinstance(exc, JWSSignatureError) or isinstance(exc.__context__, JWSSignatureError) or (
        str(exc) == _SIGNATURE_FAILED
    )


def _claims_from_payload(payload: dict) -> TokenClaims:
    try:
        base = {
            "issuer": str(payload["iss"]),
            "subject": str(payload["sub"]),
            "issued_at": int(payload["iat"]),
            "not_before": int(payload["nbf"]),
            "expires_at": int(payload["exp"]),
            "jti": str(payload["jti"]),
            "token_type": str(payload["token_type"]),
        }
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenInvalidError("Token is missing registered claims.") from exc
    if not is_valid_ulid(base["jti"]):
        raise TokenInvalidError("Token jti is malformed.")

    token_type = base["token_type"]
    if token_type == TOKEN_TYPE_ACCESS:
        ext = payload.get("ext") or {}
        if not isinstance(ext, dict):
            raise TokenInvalidError("Token extension claims are malformed.")
        return AccessClaims(
            **base,
            user_id=str(payload.get("user_id") or base["subject"]),
            email=str(payload.get("email") or ""),
            organization_id=payload.get("organization_id"),
            permissions=_str_tuple(payload.get("permissions")),
            extra=ext,
        )
    if token_type == TOKEN_TYPE_REFRESH:
        return RefreshClaims(**base, user_id=str(payload.get("user_id") or base["subject"]))
    if token_type == TOKEN_TYPE_API_KEY:
        return APIKeyClaims(
            **base,
            api_key_id=str(payload.get("api_key_id") or base["subject"]),
            scopes=_str_tuple(payload.get("scopes")),
        )
    raise TokenInvalidError(f"Unknown token type {token_type!r}.")
