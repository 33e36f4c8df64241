"""
tests/test_config.py -- Unit tests for core/config.py.

Covers:
  - SECRET_KEY policy: generated in dev mode, required in production, min length
  - Key schedule: rotation interval must be shorter than key lifetime
  - key_grace never shorter than the longest token lifetime plus leeway
  - Bounds on numeric fields
  - CORS origins default to local hosts and load from a JSON env var
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from core.config import Settings, get_settings

SECRET = "a" * 40


class TestSecretKey:
    def test_dev_mode_generates_secret(self):
        settings = Settings(debug=True, secret_key="")
        assert len(settings.secret_key) == 64

    def test_production_requires_secret(self):
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(debug=False, secret_key="")

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError, match="at least 32 characters"):
            Settings(debug=True, secret_key="too-short")

    def test_explicit_secret_kept(self):
        assert Settings(debug=False, secret_key=SECRET).secret_key == SECRET


class TestKeySchedule:
    def test_rotation_interval_must_fit_lifetime(self):
        with pytest.raises(ValidationError, match="KEY_ROTATION_INTERVAL_DAYS"):
            Settings(secret_key=SECRET, signing_key_lifetime_days=30, key_rotation_interval_days=30)

    def test_default_grace_covers_refresh_tokens(self):
        settings = Settings(secret_key=SECRET)
        assert settings.key_grace == timedelta(seconds=3600 + 30)

    def test_longer_configured_grace_wins(self):
        settings = Settings(secret_key=SECRET, key_grace_seconds=86400)
        assert settings.key_grace == timedelta(days=1)

    def test_shorter_configured_grace_is_raised(self):
        settings = Settings(secret_key=SECRET, key_grace_seconds=60, refresh_token_ttl_seconds=7200)
        assert settings.key_grace == timedelta(seconds=7230)

    def test_signing_horizon_is_longest_ttl_plus_leeway(self):
        settings = Settings(secret_key=SECRET, key_grace_seconds=86400)
        assert settings.signing_horizon == timedelta(seconds=3600 + 30)


class TestBounds:
    @pytest.mark.parametrize(
        "field,value",
        [
            ("signing_key_size", 1024),
            ("lockout_threshold", 0),
            ("access_token_ttl_seconds", 0),
            ("bcrypt_rounds", 3),
            ("token_leeway_seconds", -1),
        ],
    )
    def test_out_of_range_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Settings(secret_key=SECRET, **{field: value})

    def test_defaults(self):
        settings = Settings(secret_key=SECRET)
        assert settings.lockout_threshold == 5
        assert settings.lockout_duration_seconds == 1800
        assert settings.access_token_ttl_seconds == 900
        assert settings.refresh_token_ttl_seconds == 3600
        assert settings.signing_key_lifetime_days == 90
        assert settings.key_rotation_interval_days == 60


class TestCorsOrigins:
    def test_default_origins_are_local(self):
        assert Settings(secret_key=SECRET).cors_origins == [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
        ]

    def test_origins_from_environment_json(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", '["https://app.example.com"]')
        assert Settings(secret_key=SECRET).cors_origins == ["https://app.example.com"]


def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()
