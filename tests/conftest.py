"""Pytest fixtures for family calendar tests.

This module provides test fixtures that ensure:
1. No external API calls are made (Google, Microsoft Graph)
2. No real database connections in unit tests
3. Isolated test environment with controlled configuration
"""

import os
import uuid
from datetime import datetime, timedelta, timezone

import pytest

# Set test environment BEFORE importing application modules
# This ensures no real services are contacted during test collection
os.environ.setdefault("SECRET_KEY", "test-secret-key-at-least-32-characters-long")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-google-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-google-client-secret")
os.environ.setdefault("MICROSOFT_CLIENT_ID", "test-microsoft-client-id")
os.environ.setdefault("MICROSOFT_CLIENT_SECRET", "test-microsoft-client-secret")
os.environ.setdefault("API_BASE_URL", "https://api.example.test")
os.environ.setdefault("FRONTEND_URL", "https://app.example.test")
os.environ.setdefault("ENVIRONMENT", "development")

from family_calendar.auth.state import StateTokenCodec
from family_calendar.calendar.rate_limit import SyncRateLimiter
from family_calendar.calendar.service import ExternalCalendarService
from family_calendar.config import get_settings
from family_calendar.database.encryption import TokenVault
from family_calendar.database.models import CalendarProviderType
from family_calendar.providers.base import (
    CalendarProvider,
    ExternalEvent,
    ProviderError,
    TokenResponse,
)
from family_calendar.repositories.memory import (
    InMemoryAuditLogRepository,
    InMemoryEventRepository,
    InMemoryExternalCalendarRepository,
    InMemoryFamilyRepository,
)

TEST_STATE_SECRET = "test-state-secret-at-least-32-characters"


# =============================================================================
# Test Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset settings cache before each test to ensure clean state."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Fakes
# =============================================================================


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCalendarProvider(CalendarProvider):
    """Scriptable provider adapter that records every call.

    Set the ``*_error`` attributes to make the matching operation raise.
    """

    name = "fake"

    def __init__(self, provider_type: CalendarProviderType = CalendarProviderType.GOOGLE):
        self.name = provider_type.value
        self.provider_type = provider_type
        super().__init__("fake-client-id", "fake-client-secret")

        self.calls: list[tuple] = []
        self.token_response = TokenResponse(
            access_token="access-1", refresh_token="refresh-1", expires_in=3600
        )
        self.refresh_response = TokenResponse(
            access_token="access-2", refresh_token=None, expires_in=3600
        )
        self.email = "parent@example.com"
        self.events: list[ExternalEvent] = []

        self.exchange_error: Exception | None = None
        self.refresh_error: Exception | None = None
        self.revoke_error: Exception | None = None
        self.fetch_error: Exception | None = None

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def generate_authorization_url(self, state: str, redirect_uri: str) -> str:
        self.calls.append(("authorize", state, redirect_uri))
        return f"https://auth.example.test/{self.name}?state={state}"

    async def exchange_code_for_tokens(self, code: str, redirect_uri: str) -> TokenResponse:
        self.calls.append(("exchange", code, redirect_uri))
        if self.exchange_error:
            raise self.exchange_error
        return self.token_response

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        self.calls.append(("refresh", refresh_token))
        if self.refresh_error:
            raise self.refresh_error
        return self.refresh_response

    async def revoke_token(self, token: str) -> None:
        self.calls.append(("revoke", token))
        if self.revoke_error:
            raise self.revoke_error

    async def get_user_email(self, access_token: str) -> str:
        self.calls.append(("email", access_token))
        return self.email

    async def fetch_events(self, access_token, window_start, window_end):
        self.calls.append(("fetch", access_token, window_start, window_end))
        if self.fetch_error:
            raise self.fetch_error
        return list(self.events)


def make_external_event(
    title: str,
    start: datetime,
    hours: float = 1.0,
    *,
    is_all_day: bool = False,
    event_id: str | None = None,
) -> ExternalEvent:
    """Build an ExternalEvent lasting ``hours``."""
    return ExternalEvent(
        id=event_id or uuid.uuid4().hex,
        title=title,
        start_time=start,
        end_time=start + timedelta(hours=hours),
        is_all_day=is_all_day,
    )


def provider_error(status_code: int = 400) -> ProviderError:
    return ProviderError(
        f"fake API request failed: {status_code}",
        provider="google",
        status_code=status_code,
    )


# =============================================================================
# Shared Fixtures
# =============================================================================


@pytest.fixture(scope="session")
def vault() -> TokenVault:
    """Token vault shared across the session (key derivation is slow)."""
    return TokenVault("test-secret-key-at-least-32-characters-long", "test-salt")


@pytest.fixture
def state_codec() -> StateTokenCodec:
    return StateTokenCodec(TEST_STATE_SECRET)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(clock: FakeClock) -> SyncRateLimiter:
    return SyncRateLimiter(cooldown_seconds=300, clock=clock)


@pytest.fixture
def event_repo() -> InMemoryEventRepository:
    return InMemoryEventRepository()


@pytest.fixture
def calendar_repo(event_repo: InMemoryEventRepository) -> InMemoryExternalCalendarRepository:
    return InMemoryExternalCalendarRepository(event_repo)


@pytest.fixture
def family_repo() -> InMemoryFamilyRepository:
    return InMemoryFamilyRepository()


@pytest.fixture
def log_repo() -> InMemoryAuditLogRepository:
    return InMemoryAuditLogRepository()


@pytest.fixture
def providers() -> dict[CalendarProviderType, FakeCalendarProvider]:
    """One fake adapter per provider type."""
    return {p: FakeCalendarProvider(p) for p in CalendarProviderType}


@pytest.fixture
def google(providers) -> FakeCalendarProvider:
    return providers[CalendarProviderType.GOOGLE]


@pytest.fixture
def service(
    calendar_repo,
    event_repo,
    family_repo,
    log_repo,
    providers,
    vault,
    state_codec,
    rate_limiter,
) -> ExternalCalendarService:
    """Service wired to in-memory repositories and fake providers."""
    return ExternalCalendarService(
        calendar_repo,
        event_repo,
        family_repo,
        log_repo,
        provider_factory=lambda provider: providers[provider],
        vault=vault,
        state_codec=state_codec,
        rate_limiter=rate_limiter,
        settings=get_settings(),
    )


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def family(family_repo: InMemoryFamilyRepository, user_id: uuid.UUID):
    """The user's (only) family."""
    return family_repo.add_family("Smith", user_id)


@pytest.fixture
def make_connection(calendar_repo, vault):
    """Factory that stores a connection with encrypted tokens."""

    async def _make(
        user_id: uuid.UUID,
        provider: CalendarProviderType = CalendarProviderType.GOOGLE,
        *,
        account_email: str = "parent@example.com",
        access_token: str = "stored-access",
        refresh_token: str | None = "stored-refresh",
        expires_at: datetime | None = None,
    ):
        if expires_at is None:
            expires_at = datetime.now(timezone.utc) + timedelta(hours=1)
        return await calendar_repo.create(
            user_id=user_id,
            provider=provider.value,
            account_email=account_email,
            access_token_encrypted=vault.encrypt(access_token),
            refresh_token_encrypted=vault.encrypt(refresh_token) if refresh_token else None,
            expires_at=expires_at,
        )

    return _make
