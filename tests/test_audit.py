"""
tests/test_audit.py -- Unit tests for auth/audit.py.

Coverage:
  - redact_arguments hides secrets, keeps plain values, reprs the rest
  - @audited writes <op>.success / <op>.failed rows and passes results and
    exceptions through unchanged
  - An audit-store failure never fails the audited call
  - audit=None disables interception
"""

from __future__ import annotations

import pytest

from auth.audit import REDACTED, AuditInterceptor, audited, redact_arguments
from auth.errors import NotFoundError
from auth.models import OAuthProfile


class _Widgets:
    """Minimal audited service."""

    def __init__(self, audit: AuditInterceptor | None) -> None:
        self.audit = audit

    @audited("widget.create", resource_type="widget", resource_arg="widget_id")
    def create(self, user_id: str, widget_id: str, password: str, size: int = 3) -> dict:
        return {"ok": True}

    @audited("widget.delete", resource_type="widget", resource_arg="widget_id")
    def delete(self, user_id: str, widget_id: str) -> None:
        raise NotFoundError("Widget not found.")

    @audited("widget.explode")
    def explode(self, user_id: str) -> None:
        raise RuntimeError("boom")


@pytest.fixture
def widgets(env) -> _Widgets:
    return _Widgets(AuditInterceptor(env.audit_store))


class TestRedaction:
    def test_sensitive_names_are_redacted(self) -> None:
        cleaned = redact_arguments(
            {"self": object(), "email": "a@b.com", "password": "hunter2", "refresh_token": "abc", "state": "s"}
        )
        assert cleaned == {"email": "a@b.com", "password": REDACTED, "refresh_token": REDACTED, "state": REDACTED}

    def test_none_secret_stays_none(self) -> None:
        assert redact_arguments({"password": None}) == {"password": None}

    def test_objects_are_repr(self) -> None:
        profile = OAuthProfile(email="a@b.com", provider="github", provider_id="1")
        cleaned = redact_arguments({"profile": profile, "device_info": {"os": "linux"}})
        assert cleaned["profile"].startswith("OAuthProfile(")
        assert cleaned["device_info"] == {"os": "linux"}


class TestAudited:
    def test_success_row(self, env, widgets) -> None:
        assert widgets.create("user-1", "w-1", "hunter2") == {"ok": True}
        (row,) = env.audit_store.list_recent()
        assert row.action == "widget.create.success"
        assert row.user_id == "user-1"
        assert row.resource_type == "widget"
        assert row.resource_id == "w-1"
        assert row.metadata == {"user_id": "user-1", "widget_id": "w-1", "password": REDACTED, "size": 3}

    def test_auth_error_row(self, env, widgets) -> None:
        with pytest.raises(NotFoundError):
            widgets.delete("user-1", "w-9")
        (row,) = env.audit_store.list_recent()
        assert row.action == "widget.delete.failed"
        assert row.metadata["error_code"] == "not_found"

    def test_unexpected_error_row(self, env, widgets) -> None:
        with pytest.raises(RuntimeError, match="boom"):
            widgets.explode("user-1")
        (row,) = env.audit_store.list_recent()
        assert row.action == "widget.explode.failed"
        assert row.metadata["error_code"] == "internal_error"
        assert row.metadata["error_type"] == "RuntimeError"

    def test_store_failure_is_swallowed(self, env, widgets, monkeypatch, caplog) -> None:
        def broken_record(event):
            raise RuntimeError("audit table locked")

        monkeypatch.setattr(env.audit_store, "record", broken_record)
        with caplog.at_level("WARNING", logger="warden.auth.audit"):
            assert widgets.create("user-1", "w-1", "hunter2") == {"ok": True}
        assert "Audit write failed for widget.create.success" in caplog.text

    def test_no_interceptor_means_no_rows(self, env) -> None:
        assert _Widgets(None).create("user-1", "w-1", "hunter2") == {"ok": True}
        assert env.audit_store.list_recent() == []

    def test_operation_name_is_exposed(self) -> None:
        assert _Widgets.create.__audit_operation__ == "widget.create"
