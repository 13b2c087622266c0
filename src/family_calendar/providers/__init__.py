"""External calendar providers."""

from __future__ import annotations

from typing import Callable

import httpx

from family_calendar.config import Settings, get_settings
from family_calendar.database.models import CalendarProviderType
from family_calendar.providers.base import (
    CalendarProvider,
    ExternalEvent,
    ProviderError,
    ProviderNotConfiguredError,
    TokenResponse,
)
from family_calendar.providers.google import GoogleCalendarProvider
from family_calendar.providers.microsoft import MicrosoftCalendarProvider


def _build_google(
    settings: Settings, transport: httpx.AsyncBaseTransport | None
) -> CalendarProvider:
    return GoogleCalendarProvider(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        timeout=settings.provider_timeout_seconds,
        transport=transport,
    )


def _build_microsoft(
    settings: Settings, transport: httpx.AsyncBaseTransport | None
) -> CalendarProvider:
    return MicrosoftCalendarProvider(
        client_id=settings.microsoft_client_id,
        client_secret=settings.microsoft_client_secret,
        tenant_id=settings.microsoft_tenant_id,
        timeout=settings.provider_timeout_seconds,
        transport=transport,
    )


PROVIDER_BUILDERS: dict[
    CalendarProviderType,
    Callable[[Settings, httpx.AsyncBaseTransport | None], CalendarProvider],
] = {
    CalendarProviderType.GOOGLE: _build_google,
    CalendarProviderType.MICROSOFT: _build_microsoft,
}


def create_provider(
    provider: CalendarProviderType | str,
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CalendarProvider:
    """Create the adapter for a provider, configured from settings.

    Args:
        provider: Provider identifier
        settings: Settings to read client credentials from (default: global)
        transport: Optional httpx transport passed to the adapter

    Raises:
        ValueError: If the provider is not supported
        ProviderNotConfiguredError: If its client credentials are missing
    """
    try:
        provider_type = CalendarProviderType(provider)
    except ValueError:
        raise ValueError(f"Unsupported provider: {provider}") from None

    return PROVIDER_BUILDERS[provider_type](settings or get_settings(), transport)


__all__ = [
    "CalendarProvider",
    "ExternalEvent",
    "ProviderError",
    "ProviderNotConfiguredError",
    "TokenResponse",
    "GoogleCalendarProvider",
    "MicrosoftCalendarProvider",
    "PROVIDER_BUILDERS",
    "create_provider",
]
