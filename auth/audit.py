"""
auth/audit.py -- Audit interception for orchestrator operations.

Pattern: Interceptor keyed by operation name. Instead of one wrapper class per
service, each public AuthService method is marked with @audited("auth.login")
and the service's AuditInterceptor records one audit_logs row per call:

    auth.login.success   {"email": "a@b.com", "device_info": {...}}
    auth.login.failed    {"email": "a@b.com", "error_code": "unauthorized"}

Guarantees:
  - The wrapped call's return value and exception pass through untouched.
  - Sensitive arguments (passwords, tokens, secrets) are redacted before
    they reach the metadata column.
  - An audit-store failure is logged at WARNING and swallowed; it never
    turns a successful operation into a failed one.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import inspect
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from auth.errors import AuthError
from auth.models import AuditLog
from auth.store import AuditLogStore

logger = logging.getLogger("warden.auth.audit")

REDACTED = "[redacted]"

SENSITIVE_ARGUMENTS = frozenset(
    {
        "password",
        "current_password",
        "new_password",
        "token",
        "refresh_token",
        "access_token",
        "login_token",
        "signup_token",
        "secret_key",
        "state",
    }
)

F = TypeVar("F", bound=Callable[..., Any])


class AuditInterceptor:
    """Writes <operation>.success / <operation>.failed rows to the audit log."""

    def __init__(self, store: AuditLogStore) -> None:
        self._store = store

    def record(
        self,
        operation: str,
        *,
        succeeded: bool,
        user_id: str | None = None,
        organization_id: str | None = None,
        resource_type: str = "",
        resource_id: str = "",
        metadata: dict | None = None,
    ) -> None:
        action = f"{operation}.{'success' if succeeded else 'failed'}"
        try:
            self._store.record(
                AuditLog(
                    action=action,
                    user_id=user_id,
                    organization_id=organization_id,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    metadata=metadata or {},
                )
            )
        except Exception:
            logger.warning("Audit write failed for %s", action, exc_info=True)


def redact_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    """Copy call arguments with sensitive values replaced by REDACTED."""
    cleaned: dict[str, Any] = {}
    for name, value in arguments.items():
        if name == "self":
            continue
        if name in SENSITIVE_ARGUMENTS and value is not None:
            cleaned[name] = REDACTED
        elif isinstance(value, (str, int, float, bool, dict, list)) or value is None:
            cleaned[name] = value
        else:
            cleaned[name] = repr(value)
    return cleaned


def audited(
    operation: str, *, resource_type: str = "user", resource_arg: str = "user_id"
) -> Callable[[F], F]:
    """Mark a service method for audit interception under `operation`.

    resource_arg names the argument holding the affected resource id; when it
    is absent the result's `id` (or `user_id`) is used instead.

    The owning object must expose an AuditInterceptor as `self.audit`
    (None disables auditing).
    """

    def decorator(method: F) -> F:
        signature = inspect.signature(method)

        @functools.wraps(method)
        def wrapper(self, *args, **kwargs):
            interceptor: AuditInterceptor | None = getattr(self, "audit", None)
            if interceptor is None:
                return method(self, *args, **kwargs)

            bound = signature.bind(self, *args, **kwargs)
            bound.apply_defaults()
            metadata = redact_arguments(dict(bound.arguments))
            user_id = bound.arguments.get("user_id")
            resource_id = bound.arguments.get(resource_arg)

            try:
                result = method(self, *args, **kwargs)
            except AuthError as exc:
                interceptor.record(
                    operation,
                    succeeded=False,
                    user_id=user_id,
                    resource_type=resource_type,
                    resource_id=resource_id or "",
                    metadata={**metadata, "error_code": exc.error_code},
                )
                raise
            except Exception as exc:
                interceptor.record(
                    operation,
                    succeeded=False,
                    user_id=user_id,
                    resource_type=resource_type,
                    resource_id=resource_id or "",
                    metadata={**metadata, "error_code": "internal_error", "error_type": type(exc).__name__},
                )
                raise

            result_user_id = user_id or getattr(result, "user_id", None)
            if resource_id is None:
                resource_id = getattr(result, "id", None) or result_user_id
            interceptor.record(
                operation,
                succeeded=True,
                user_id=result_user_id,
                resource_type=resource_type,
                resource_id=resource_id or "",
                metadata=metadata,
            )
            return result

        wrapper.__audit_operation__ = operation
        return wrapper  # type: ignore[return-value]

    return decorator
