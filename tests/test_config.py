"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from tourpass.config import Settings, get_settings, reset_settings_cache

GOOD_SECRET = "x" * 32


class TestJwtSecret:
    def test_missing_secret_fails_loading(self, monkeypatch):
        monkeypatch.delenv("JWT_SECRET", raising=False)
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_blank_secret_fails_loading(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "   ")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_short_secret_fails_loading(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", "x" * 31)
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_secret_of_minimum_length_loads(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", GOOD_SECRET)
        assert Settings.from_env().jwt_secret == GOOD_SECRET


class TestParsing:
    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", GOOD_SECRET)
        settings = Settings.from_env()
        assert settings.refresh_token_ttl_days == 7
        assert settings.jwt_leeway_seconds == 0
        assert settings.require_email_verification is True
        assert settings.default_role == "client"

    def test_env_overrides_and_types(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", GOOD_SECRET)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.test, https://b.test,")
        monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.2")
        monkeypatch.setenv("REDIS_URL", "")
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 5
        assert settings.allow_signup is False
        assert settings.cors_allow_origins == ["https://a.test", "https://b.test"]
        assert settings.redis_url is None
        assert settings.trusted_proxies == ["10.0.0.2"]

    def test_non_positive_lifetime_rejected(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", GOOD_SECRET)
        monkeypatch.setenv("REFRESH_TOKEN_TTL_DAYS", "0")
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_cache_reset_rereads_environment(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "11")
        reset_settings_cache()
        assert get_settings().login_rate_limit_per_minute == 11
