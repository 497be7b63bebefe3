"""
tests/test_config.py -- Tests for core/config.py signing-key policy.

Settings are constructed directly with keyword arguments (which win over
environment variables), so DEBUG=true from conftest does not leak in unless
a test asks for it.
"""

from __future__ import annotations

import pytest

from core.config import Settings, get_settings

GOOD_SECRET = "s" * 32


class TestHS256:
    def test_production_requires_secret(self) -> None:
        with pytest.raises(ValueError, match="JWT_SECRET is required"):
            Settings(debug=False, jwt_secret="", session_secret="x")

    def test_debug_generates_secret(self) -> None:
        settings = Settings(debug=True, jwt_secret="")
        assert len(settings.jwt_secret) == 64
        assert settings.session_secret

    def test_short_secret_rejected_even_in_debug(self) -> None:
        with pytest.raises(ValueError, match="at least 32"):
            Settings(debug=True, jwt_secret="too-short")

    def test_signing_method_is_case_insensitive(self) -> None:
        settings = Settings(debug=False, jwt_signing_method="hs256", jwt_secret=GOOD_SECRET, session_secret="x")
        assert settings.jwt_signing_method == "HS256"

    def test_unknown_signing_method(self) -> None:
        with pytest.raises(ValueError, match="JWT_SIGNING_METHOD"):
            Settings(debug=True, jwt_signing_method="ES256")


class TestRS256:
    def test_requires_private_key_source(self) -> None:
        with pytest.raises(ValueError, match="requires JWT_PRIVATE_KEY"):
            Settings(debug=True, jwt_signing_method="RS256")

    def test_rejects_two_private_key_sources(self) -> None:
        with pytest.raises(ValueError, match="only one of JWT_PRIVATE_KEY"):
            Settings(
                debug=True,
                jwt_signing_method="RS256",
                jwt_private_key_path="/tmp/key.pem",
                jwt_private_key_base64="abc",
            )

    def test_rejects_two_public_key_sources(self) -> None:
        with pytest.raises(ValueError, match="only one of JWT_PUBLIC_KEY"):
            Settings(
                debug=True,
                jwt_signing_method="RS256",
                jwt_private_key_path="/tmp/key.pem",
                jwt_public_key_path="/tmp/pub.pem",
                jwt_public_key_base64="abc",
            )

    def test_secret_not_needed(self) -> None:
        settings = Settings(debug=False, jwt_signing_method="RS256", jwt_private_key_base64="abc", session_secret="x")
        assert settings.jwt_secret == ""


class TestOtherFields:
    @pytest.mark.parametrize("cost", [3, 32])
    def test_bcrypt_cost_range(self, cost) -> None:
        with pytest.raises(ValueError, match="BCRYPT_COST"):
            Settings(debug=True, bcrypt_cost=cost)

    def test_session_secret_required_in_production(self) -> None:
        with pytest.raises(ValueError, match="SESSION_SECRET"):
            Settings(debug=False, jwt_secret=GOOD_SECRET, session_secret="")

    def test_defaults(self) -> None:
        settings = Settings(debug=True)
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
        assert settings.token_rotation_enabled is True
        assert settings.key_pair_default_rate_limit_rpm == 1000

    def test_environment_is_read(self, monkeypatch) -> None:
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "60")
        monkeypatch.setenv("TOKEN_ROTATION_ENABLED", "false")
        settings = Settings(debug=True)
        assert settings.access_token_ttl_seconds == 60
        assert settings.token_rotation_enabled is False

    def test_get_settings_is_cached(self) -> None:
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
