"""
auth/errors.py -- Error taxonomy for the authentication core.

Every error carries an HTTP-shaped status_code and a stable error_code so the
api/ layer can render a uniform {"error": {"code", "message", "detail"}}
envelope without inspecting exception types one by one.

Credential and token failures are always raised to the caller. Only the
best-effort side effects (audit writes, last-used stamps, post-password-change
cleanup) are caught, and those are caught where they happen, not here.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for auth-layer exceptions mapped to HTTP responses."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        detail: dict | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class UnauthorizedError(AuthError):
    """Bad credentials, or an invalid / expired / revoked / wrong-type token (401)."""

    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(UnauthorizedError):
    error_code = "token_expired"


class TokenInvalidError(UnauthorizedError):
    error_code = "token_invalid"


class IssuerMismatchError(UnauthorizedError):
    error_code = "issuer_mismatch"


class SignatureMismatchError(UnauthorizedError):
    error_code = "signature_mismatch"


class ForbiddenError(AuthError):
    """Authenticated but not allowed, e.g. the account is inactive (403)."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(AuthError):
    status_code = 404
    error_code = "not_found"


class ConflictError(AuthError):
    """Duplicate user, membership, role or permission (409)."""

    status_code = 409
    error_code = "conflict"


class ValidationError(AuthError):
    """Malformed scope, missing required context, bad key format (400)."""

    status_code = 400
    error_code = "validation_error"


class InternalError(AuthError):
    status_code = 500
    error_code = "internal_error"


class KeyConfigurationError(InternalError):
    """Signing key material is missing, unreadable, or inconsistent.

    Raised only while building the TokenEngine, i.e. at process start.
    """

    error_code = "key_configuration_error"


class DeadlineExceededError(InternalError):
    """A caller-supplied deadline expired before a store lookup completed."""

    status_code = 504
    error_code = "deadline_exceeded"


class NotImplementedFeatureError(AuthError):
    status_code = 501
    error_code = "not_implemented"


__all__ = [
    "AuthError",
    "UnauthorizedError",
    "TokenExpiredError",
    "TokenInvalidError",
    "IssuerMismatchError",
    "SignatureMismatchError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "InternalError",
    "KeyConfigurationError",
    "DeadlineExceededError",
    "NotImplementedFeatureError",
]
