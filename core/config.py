"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning, production
      mode refuses to start without one, and the key-rotation interval must
      fit inside the signing-key lifetime.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. It encrypts the RSA
  signing keys at rest and keys the password-reset token HMAC, so a short key
  weakens both.

  bcrypt_rounds below 10 is accepted (tests use 4 for speed) but logged as a
  warning outside dev mode.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'authgate.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = Field(default=900, gt=0)
    refresh_token_ttl_seconds: int = Field(default=3600, gt=0)
    token_leeway_seconds: int = Field(default=30, ge=0)
    jwt_issuer: str = "authgate"
    jwt_audience: str = "authgate-clients"

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    lockout_threshold: int = Field(default=5, ge=1)
    lockout_duration_seconds: int = Field(default=1800, gt=0)

    # ------------------------------------------------------------------
    # Signing keys
    # ------------------------------------------------------------------

    signing_key_size: int = Field(default=2048, ge=2048)
    signing_key_lifetime_days: int = Field(default=90, gt=0)
    key_rotation_interval_days: int = Field(default=60, gt=0)
    # 0 means "derive from the longest token lifetime".
    key_grace_seconds: int = Field(default=0, ge=0)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    password_reset_ttl_seconds: int = Field(default=900, gt=0)

    # ------------------------------------------------------------------
    # Background maintenance
    # ------------------------------------------------------------------

    maintenance_enabled: bool = True
    maintenance_interval_seconds: int = Field(default=1800, gt=0)

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # Browser origins allowed by CORS. From the environment as a JSON list:
    #   CORS_ORIGINS='["https://app.example.com"]'
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]
    )

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def signing_horizon(self) -> timedelta:
        """Longest token lifetime plus leeway.

        The active key is retired once it has less than this left, and a
        demoted key stays verifiable for at least this long.
        """
        longest = max(self.access_token_ttl_seconds, self.refresh_token_ttl_seconds) + self.token_leeway_seconds
        return timedelta(seconds=longest)

    @property
    def key_grace(self) -> timedelta:
        """Verification grace for a demoted signing key."""
        return max(timedelta(seconds=self.key_grace_seconds), self.signing_horizon)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Signing keys encrypted with it cannot be read after a restart,
            so a fresh signing key is minted -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Signing keys will not survive a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_key_schedule(self) -> "Settings":
        """The active key must be rotated before it expires."""
        if self.key_rotation_interval_days >= self.signing_key_lifetime_days:
            raise ValueError("KEY_ROTATION_INTERVAL_DAYS must be shorter than SIGNING_KEY_LIFETIME_DAYS.")
        if self.bcrypt_rounds < 10 and not self.debug:
            logger.warning("BCRYPT_ROUNDS=%d is below the recommended minimum of 10", self.bcrypt_rounds)
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
