"""Base external calendar provider abstraction.

This module defines the interface every calendar provider adapter implements
and the provider-neutral formats they translate into.

## Canonical Data Format

Adapters translate provider responses into two dataclasses:

- `TokenResponse`: result of a code exchange or a token refresh
- `ExternalEvent`: one event read from the provider's calendar

### Time handling
- All `ExternalEvent` times are timezone-aware UTC datetimes
- All-day events start at midnight UTC of their (provider-local) date
- Naive timestamps from a provider are treated as UTC

## Supported Providers

### Google Calendar
- Authorization: https://accounts.google.com/o/oauth2/v2/auth
- Token: https://oauth2.googleapis.com/token
- Events: https://www.googleapis.com/calendar/v3/calendars/primary/events
- Pagination: `nextPageToken`

### Microsoft Graph (Outlook)
- Authorization: https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize
- Token: https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token
- Events: https://graph.microsoft.com/v1.0/me/calendarView
- Pagination: `@odata.nextLink`
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from family_calendar.database.models import CalendarProviderType

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base exception for calendar provider errors."""

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.response_body = response_body


class ProviderNotConfiguredError(ProviderError):
    """Raised when a provider's OAuth client credentials are missing."""

    def __init__(self, provider: str):
        super().__init__(
            f"{provider} OAuth is not configured: client id and secret are required",
            provider=provider,
        )


@dataclass
class TokenResponse:
    """OAuth tokens returned by a provider.

    ``refresh_token`` is None when the provider did not issue or rotate one;
    callers keep the value they already hold.
    """

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str = "Bearer"


@dataclass
class ExternalEvent:
    """An event read from an external calendar."""

    id: str
    title: str
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    description: str | None = None
    location: str | None = None


def parse_datetime(value: str) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z`` and the 7-digit fractional seconds Microsoft
    Graph returns.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, rest = text.partition(".")
        digits = rest
        suffix = ""
        for sep in ("+", "-"):
            if sep in rest:
                digits, _, tz = rest.partition(sep)
                suffix = sep + tz
                break
        text = f"{head}.{digits[:6]}{suffix}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date(value: str) -> datetime:
    """Parse a ``YYYY-MM-DD`` date into midnight UTC of that day."""
    return datetime.combine(date.fromisoformat(value), time.min, tzinfo=timezone.utc)


def format_datetime(value: datetime) -> str:
    """Format a datetime as RFC 3339 UTC (``2024-01-01T09:00:00Z``)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class CalendarProvider(ABC):
    """Abstract base class for external calendar providers.

    An adapter owns the OAuth conversation with one provider and the
    translation of that provider's event format into `ExternalEvent`.

    Attributes:
        name: Provider identifier, used in errors and logs
        provider_type: Matching `CalendarProviderType`

    Example:
        ```python
        async with GoogleCalendarProvider(client_id, client_secret) as provider:
            tokens = await provider.exchange_code_for_tokens(code, redirect_uri)
            events = await provider.fetch_events(tokens.access_token, start, end)
        ```
    """

    name: str
    provider_type: CalendarProviderType

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the provider.

        Args:
            client_id: OAuth client id
            client_secret: OAuth client secret
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests pass a MockTransport)

        Raises:
            ProviderNotConfiguredError: If either credential is missing
        """
        if not client_id or not client_secret:
            raise ProviderNotConfiguredError(self.name)
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> CalendarProvider:
        """Enter async context manager."""
        self._get_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client, if one was opened."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        access_token: str | None = None,
    ) -> httpx.Response:
        """Send a request with retry on transport failures.

        Args:
            method: HTTP method
            url: Full URL
            params: Query parameters
            data: Form body (sent as application/x-www-form-urlencoded)
            headers: Additional headers
            access_token: Bearer token for the Authorization header

        Returns:
            HTTP response with a 2xx status

        Raises:
            ProviderError: If the provider answers with a non-2xx status
        """
        client = self._get_client()
        request_headers = {"Accept": "application/json"}
        if access_token:
            request_headers["Authorization"] = f"Bearer {access_token}"
        if headers:
            request_headers.update(headers)

        response = await client.request(
            method, url, params=params, data=data, headers=request_headers
        )

        if not response.is_success:
            logger.debug(
                f"{self.name} {method} {httpx.URL(url).path} failed "
                f"({response.status_code}): {response.text}"
            )
            raise ProviderError(
                f"{self.name} API request failed: {response.status_code}",
                provider=self.name,
                status_code=response.status_code,
                response_body=response.text,
            )

        return response

    async def _request_json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and decode the JSON object it returns."""
        response = await self._request(method, url, **kwargs)
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.name} returned a non-JSON response",
                provider=self.name,
                status_code=response.status_code,
            ) from e
        if not isinstance(payload, dict):
            raise ProviderError(
                f"{self.name} returned an unexpected response shape",
                provider=self.name,
                status_code=response.status_code,
            )
        return payload

    def _parse_token_response(self, data: dict[str, Any]) -> TokenResponse:
        """Build a `TokenResponse` from a token endpoint payload."""
        access_token = data.get("access_token")
        if not access_token:
            raise ProviderError(
                f"{self.name} token response did not include an access token",
                provider=self.name,
            )
        expires_in = data.get("expires_in")
        return TokenResponse(
            access_token=access_token,
            refresh_token=data.get("refresh_token") or None,
            expires_in=int(expires_in) if expires_in is not None else None,
            token_type=data.get("token_type", "Bearer"),
        )

    @abstractmethod
    def generate_authorization_url(self, state: str, redirect_uri: str) -> str:
        """Build the URL that sends the user to the provider's consent screen.

        Performs no I/O.
        """

    @abstractmethod
    async def exchange_code_for_tokens(
        self, code: str, redirect_uri: str
    ) -> TokenResponse:
        """Exchange an authorization code for tokens.

        Raises:
            ProviderError: If the token endpoint rejects the code
        """

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        """Obtain a new access token.

        The returned ``refresh_token`` is the rotated value, or None when the
        provider did not rotate it.

        Raises:
            ProviderError: If the refresh is rejected
        """

    @abstractmethod
    async def revoke_token(self, token: str) -> None:
        """Revoke a token. Callers treat this as best effort.

        Raises:
            ProviderError: If the provider rejects the revocation
        """

    @abstractmethod
    async def get_user_email(self, access_token: str) -> str:
        """Get the email address of the account that granted access."""

    @abstractmethod
    async def fetch_events(
        self,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ExternalEvent]:
        """Fetch every non-cancelled event in [window_start, window_end].

        Follows provider pagination until exhausted.
        """
