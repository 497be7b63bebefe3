"""
tests/test_oauth.py -- Unit tests for auth/oauth.py.

Coverage:
  - GitHub profile: only the primary AND verified email is accepted
  - Google profile: email_verified must be true
  - split_full_name edge cases
  - Provider registry only lists fully configured providers
  - Handshake records: state binding, one-time login tokens, signup sessions

get_oauth_profile is a coroutine; tests drive it with asyncio.run() and a
fake authlib client whose get() returns canned JSON.
"""

from __future__ import annotations

import asyncio

import pytest

from auth.errors import UnauthorizedError
from auth.models import OAuthProfile
from auth.oauth import build_oauth_registry, get_enabled_providers, get_oauth_profile, split_full_name
from core.config import Settings


class _Response:
    def __init__(self, payload) -> None:
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self._payload


class _FakeGitHub:
    def __init__(self, user: dict, emails: list[dict]) -> None:
        self._routes = {"user": user, "user/emails": emails}
        self.calls: list[str] = []

    async def get(self, path: str, token=None) -> _Response:
        self.calls.append(path)
        return _Response(self._routes[path])


def _profile(client, provider: str, token: dict) -> OAuthProfile:
    return asyncio.run(get_oauth_profile(client, provider, token))


class TestGitHubProfile:
    def test_primary_verified_email(self) -> None:
        client = _FakeGitHub(
            {"id": 1234, "login": "octocat", "name": "Mona Lisa Octocat"},
            [
                {"email": "old@example.com", "primary": False, "verified": True},
                {"email": "mona@example.com", "primary": True, "verified": True},
            ],
        )
        profile = _profile(client, "github", {"access_token": "t"})
        assert profile == OAuthProfile(
            email="mona@example.com", provider="github", provider_id="1234", first_name="Mona", last_name="Lisa Octocat"
        )
        assert client.calls == ["user", "user/emails"]

    def test_falls_back_to_login_for_name(self) -> None:
        client = _FakeGitHub(
            {"id": 1, "login": "octocat", "name": None},
            [{"email": "o@example.com", "primary": True, "verified": True}],
        )
        profile = _profile(client, "github", {})
        assert (profile.first_name, profile.last_name) == ("octocat", "")

    @pytest.mark.parametrize(
        "emails",
        [
            [],
            [{"email": "a@example.com", "primary": True, "verified": False}],
            [{"email": "a@example.com", "primary": False, "verified": True}],
        ],
    )
    def test_requires_primary_verified_email(self, emails) -> None:
        client = _FakeGitHub({"id": 1, "login": "x"}, emails)
        with pytest.raises(ValueError, match="no primary verified email"):
            _profile(client, "github", {})


class TestGoogleProfile:
    def test_verified_email(self) -> None:
        token = {
            "userinfo": {
                "sub": "10987",
                "email": "g@example.com",
                "email_verified": True,
                "given_name": "Grace",
                "family_name": "Hopper",
            }
        }
        profile = _profile(None, "google", token)
        assert profile.provider_id == "10987"
        assert (profile.first_name, profile.last_name) == ("Grace", "Hopper")

    @pytest.mark.parametrize("userinfo", [{"sub": "1", "email": "g@example.com"}, {"sub": "1", "email_verified": False}])
    def test_unverified_email(self, userinfo) -> None:
        with pytest.raises(ValueError, match="not verified"):
            _profile(None, "google", {"userinfo": userinfo})

    def test_missing_userinfo(self) -> None:
        with pytest.raises(ValueError, match="no userinfo"):
            _profile(None, "google", {})

    def test_missing_sub(self) -> None:
        with pytest.raises(ValueError, match="missing email or sub"):
            _profile(None, "google", {"userinfo": {"email": "g@example.com", "email_verified": True}})

    def test_unknown_provider(self) -> None:
        with pytest.raises(ValueError, match="Unknown OAuth provider"):
            _profile(None, "myspace", {})


class TestSplitFullName:
    @pytest.mark.parametrize(
        "full_name, expected",
        [
            ("", ("", "")),
            ("   ", ("", "")),
            ("Cher", ("Cher", "")),
            ("Ada Lovelace", ("Ada", "Lovelace")),
            ("  Jean  Luc Picard ", ("Jean", "Luc Picard")),
        ],
    )
    def test_split(self, full_name, expected) -> None:
        assert split_full_name(full_name) == expected


class TestProviderRegistry:
    def test_only_fully_configured_providers(self) -> None:
        settings = Settings(
            debug=True,
            github_client_id="gh-id",
            github_client_secret="gh-secret",
            google_client_id="only-an-id",
        )
        assert get_enabled_providers(settings) == [{"name": "github", "label": "GitHub"}]
        oauth = build_oauth_registry(settings)
        assert oauth.create_client("github") is not None
        assert oauth.create_client("google") is None

    def test_nothing_configured(self) -> None:
        assert get_enabled_providers(Settings(debug=True)) == []


class TestHandshake:
    def test_state_carries_invitation(self, env) -> None:
        state = env.handshake.create_state("github", invitation_token="inv-1")
        assert env.handshake.validate_state(state, "github") == "inv-1"

    def test_wrong_provider_burns_the_state(self, env) -> None:
        state = env.handshake.create_state("github")
        with pytest.raises(UnauthorizedError):
            env.handshake.validate_state(state, "google")
        with pytest.raises(UnauthorizedError):
            env.handshake.validate_state(state, "github")

    def test_empty_state(self, env) -> None:
        with pytest.raises(UnauthorizedError) as exc_info:
            env.handshake.validate_state("", "github")
        assert exc_info.value.error_code == "invalid_state"

    def test_login_token_expires(self, env, clock) -> None:
        token = env.handshake.issue_login_token("user-1")
        clock.advance(env.handshake.login_token_ttl)
        with pytest.raises(UnauthorizedError):
            env.handshake.redeem_login_token(token)

    def test_login_token_stores_only_user_id(self, env) -> None:
        token = env.handshake.issue_login_token("user-1")
        assert env.ephemeral.get("login_token:" + token) == {"user_id": "user-1"}

    def test_signup_session_round_trip(self, env, clock) -> None:
        profile = OAuthProfile(email="n@example.com", provider="google", provider_id="g-9", first_name="N")
        token = env.handshake.create_signup_session(profile, invitation_token="inv-2")
        clock.advance(env.handshake.signup_ttl - 1)
        assert env.handshake.redeem_signup_session(token) == (profile, "inv-2")
