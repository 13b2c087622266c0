"""Tests for settings and domain errors."""

import pytest

from family_calendar.config import Settings, get_settings
from family_calendar.errors import (
    ConflictError,
    Err,
    ForbiddenError,
    InternalError,
    NotFoundError,
    Ok,
    RateLimitError,
    ValidationError,
)

SECRET = "another-secret-key-at-least-32-characters"


class TestSettings:
    """Tests for Settings."""

    def test_defaults(self):
        settings = get_settings()
        assert settings.sync_rate_limit_seconds == 300
        assert settings.sync_window_past_days == 90
        assert settings.sync_window_future_days == 365
        assert settings.state_token_max_age_seconds == 600
        assert settings.microsoft_tenant_id == "common"

    def test_settings_are_cached(self):
        assert get_settings() is get_settings()

    def test_state_secret_defaults_to_secret_key(self):
        settings = Settings(secret_key=SECRET, oauth_state_secret="")
        assert settings.oauth_state_secret == SECRET

    def test_explicit_state_secret(self):
        settings = Settings(secret_key=SECRET, oauth_state_secret="state-secret")
        assert settings.oauth_state_secret == "state-secret"

    def test_salt_derived_from_secret_key(self):
        """Test that the derived salt is stable for one secret key."""
        first = Settings(secret_key=SECRET, encryption_salt="")
        second = Settings(secret_key=SECRET, encryption_salt="")
        assert first.encryption_salt
        assert first.encryption_salt == second.encryption_salt

    def test_postgres_url_uses_asyncpg(self):
        settings = Settings(
            secret_key=SECRET, database_url="postgresql://user:pw@db/family"
        )
        assert settings.database_url == "postgresql+asyncpg://user:pw@db/family"

    def test_short_secret_rejected(self):
        with pytest.raises(ValueError):
            Settings(secret_key="too-short")

    def test_provider_configured_flags(self, monkeypatch):
        monkeypatch.delenv("MICROSOFT_CLIENT_SECRET", raising=False)
        settings = Settings(secret_key=SECRET)
        assert settings.google_oauth_configured is True
        assert settings.microsoft_oauth_configured is False


class TestDomainErrors:
    """Tests for error codes and HTTP statuses."""

    @pytest.mark.parametrize(
        "error,code,status_code",
        [
            (ValidationError("bad"), "validation", 400),
            (NotFoundError("External calendar", "x"), "not_found", 404),
            (ForbiddenError(), "forbidden", 403),
            (ConflictError("taken"), "conflict", 409),
            (RateLimitError("slow down", retry_after=5), "rate_limit", 429),
            (InternalError("boom"), "internal", 500),
        ],
    )
    def test_code_and_status(self, error, code, status_code):
        assert error.code == code
        assert error.status_code == status_code

    def test_not_found_message(self):
        error = NotFoundError("External calendar", "abc")
        assert error.message == "External calendar with id abc not found"

    def test_result_types(self):
        ok = Ok(3)
        err = Err(InternalError("boom"))
        assert ok.is_ok and not ok.is_err
        assert err.is_err and not err.is_ok
        assert err.error.message == "boom"
