"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Warden happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET).

  @model_validator(mode="after"): Cross-field validation of the signing-key
      policy. The token engine does the actual key parsing; this validator
      only checks that a usable source is configured for the chosen method.

Security notes:
  [M6] JWT_SECRET shorter than 32 chars is rejected outright for HS256.

  [M7] In production mode (DEBUG not set or false), a missing JWT_SECRET for
       HS256 is a hard startup failure. Dev mode generates one with a warning.

  [K1] RS256 requires exactly one private key source (path or base64). Both
       at once is ambiguous and rejected.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("warden.config")

_DATA_DIR = Path(__file__).resolve().parent.parent / "auth"

SUPPORTED_SIGNING_METHODS = ("HS256", "RS256")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Every field has a default so Settings() can be instantiated in tests
    without a .env file. Durations are plain integer seconds.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = f"sqlite:///{_DATA_DIR / 'warden_auth.db'}"
    ephemeral_db_path: str = str(_DATA_DIR / "warden_ephemeral.db")

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 168 * 60 * 60
    # When true, every refresh issues a new refresh token and blacklists the
    # old one. When false the original refresh token stays valid until expiry.
    token_rotation_enabled: bool = True
    jwt_signing_method: str = "HS256"
    jwt_issuer: str = "warden"
    jwt_leeway_seconds: int = 0
    # Empty string is the sentinel for "not configured".
    jwt_secret: str = ""
    jwt_private_key_path: str = ""
    jwt_public_key_path: str = ""
    jwt_private_key_base64: str = ""
    jwt_public_key_base64: str = ""

    # ------------------------------------------------------------------
    # Machine credentials
    # ------------------------------------------------------------------

    bcrypt_cost: int = 12
    key_pair_default_rate_limit_rpm: int = 1000
    last_used_workers: int = 2

    # ------------------------------------------------------------------
    # Short-lived secrets and ephemeral state
    # ------------------------------------------------------------------

    password_reset_ttl_seconds: int = 60 * 60
    oauth_state_ttl_seconds: int = 5 * 60
    login_token_ttl_seconds: int = 5 * 60
    oauth_signup_ttl_seconds: int = 15 * 60

    # Upper bound for the blacklist / session lookups on the request path.
    auth_lookup_timeout_seconds: float = 2.0

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    # Signs the Starlette session cookie authlib uses during the OAuth dance.
    session_secret: str = ""
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_config(self) -> "Settings":
        """Enforce the signing-key policy [M6][M7][K1].

        HS256: a missing secret is generated in dev mode and fatal otherwise;
            short secrets are always rejected.

        RS256: a private key must come from exactly one source. The public
            key is optional (derived from the private key when absent).
        """
        self.jwt_signing_method = self.jwt_signing_method.upper()
        if self.jwt_signing_method not in SUPPORTED_SIGNING_METHODS:
            raise ValueError(
                f"JWT_SIGNING_METHOD must be one of {', '.join(SUPPORTED_SIGNING_METHODS)}, "
                f"got {self.jwt_signing_method!r}."
            )

        if self.jwt_signing_method == "HS256":
            if not self.jwt_secret:
                if self.debug:
                    self.jwt_secret = secrets.token_hex(32)
                    logger.warning(
                        "WARNING: Using auto-generated JWT_SECRET. " "Tokens will not survive a restart."
                    )
                else:
                    raise ValueError(
                        "JWT_SECRET is required for HS256 in production mode. "
                        "Set JWT_SECRET in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(self.jwt_secret) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters.")
        else:
            if self.jwt_private_key_path and self.jwt_private_key_base64:
                raise ValueError("Set only one of JWT_PRIVATE_KEY_PATH or JWT_PRIVATE_KEY_BASE64.")
            if self.jwt_public_key_path and self.jwt_public_key_base64:
                raise ValueError("Set only one of JWT_PUBLIC_KEY_PATH or JWT_PUBLIC_KEY_BASE64.")
            if not (self.jwt_private_key_path or self.jwt_private_key_base64):
                raise ValueError("RS256 requires JWT_PRIVATE_KEY_PATH or JWT_PRIVATE_KEY_BASE64.")

        if not 4 <= self.bcrypt_cost <= 31:
            raise ValueError("BCRYPT_COST must be between 4 and 31.")

        if not self.session_secret:
            if self.debug:
                self.session_secret = secrets.token_hex(32)
            else:
                raise ValueError("SESSION_SECRET is required in production mode.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
