"""Microsoft (Outlook / Microsoft 365) calendar provider.

## API Documentation Summary
Source: https://learn.microsoft.com/en-us/entra/identity-platform/v2-oauth2-auth-code-flow
Source: https://learn.microsoft.com/en-us/graph/api/user-list-calendarview

## OAuth Endpoints
- Authorization: https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize
- Token: https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token

The tenant defaults to `common` (work, school and personal accounts).

The identity platform has no per-token revocation endpoint. The only
Graph option, `POST /me/revokeSignInSessions`, needs the admin-consented
`User.RevokeSessions.All` permission and signs the user out of every
application, so `revoke_token` sends nothing: the access token expires on
its own within about an hour and the stored refresh token is deleted with
the connection. Users can remove the app grant at https://myapps.microsoft.com.

## Scopes
- Calendars.Read: read events
- User.Read: read `/me` for the account email
- offline_access: receive a refresh token

## Events Request
`GET /v1.0/me/calendarView?startDateTime=...&endDateTime=...`

The `Prefer: outlook.timezone="UTC"` header makes Graph return every
`dateTime` in UTC (without an offset). Pages are chained through
`@odata.nextLink`, which already carries the query string.

## Field Translation
| Graph Field | ExternalEvent Field | Notes |
|-------------|---------------------|-------|
| id | id | |
| subject | title | "No Title" when absent |
| start.dateTime | start_time | UTC because of the Prefer header |
| end.dateTime | end_time | |
| isAllDay | is_all_day | |
| body.content | description | |
| location.displayName | location | empty string means none |
| isCancelled | (filter) | cancelled events are skipped |
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

import httpx

from family_calendar.database.models import CalendarProviderType
from family_calendar.providers.base import (
    CalendarProvider,
    ExternalEvent,
    ProviderError,
    TokenResponse,
    format_datetime,
    parse_datetime,
)

logger = logging.getLogger(__name__)

MICROSOFT_LOGIN_URL = "https://login.microsoftonline.com"
GRAPH_API_URL = "https://graph.microsoft.com/v1.0"

MICROSOFT_SCOPES = ["offline_access", "Calendars.Read", "User.Read"]

PAGE_SIZE = 100


class MicrosoftCalendarProvider(CalendarProvider):
    """Microsoft Graph calendar adapter.

    Example:
        ```python
        provider = MicrosoftCalendarProvider(
            client_id="...", client_secret="...", tenant_id="common"
        )
        ```
    """

    name = "microsoft"
    provider_type = CalendarProviderType.MICROSOFT

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        tenant_id: str = "common",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Microsoft provider.

        Args:
            client_id: Application (client) id from the Entra app registration
            client_secret: Client secret value
            tenant_id: Directory tenant, or "common" / "organizations" / "consumers"
            timeout: Request timeout in seconds
            transport: Optional httpx transport
        """
        super().__init__(client_id, client_secret, timeout=timeout, transport=transport)
        self.tenant_id = tenant_id

    @property
    def authorize_url(self) -> str:
        return f"{MICROSOFT_LOGIN_URL}/{self.tenant_id}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        return f"{MICROSOFT_LOGIN_URL}/{self.tenant_id}/oauth2/v2.0/token"

    def generate_authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "response_mode": "query",
            "scope": " ".join(MICROSOFT_SCOPES),
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code_for_tokens(
        self, code: str, redirect_uri: str
    ) -> TokenResponse:
        data = await self._request_json(
            "POST",
            self.token_url,
            data={
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
                "scope": " ".join(MICROSOFT_SCOPES),
            },
        )
        return self._parse_token_response(data)

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        data = await self._request_json(
            "POST",
            self.token_url,
            data={
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
                "scope": " ".join(MICROSOFT_SCOPES),
            },
        )
        return self._parse_token_response(data)

    async def revoke_token(self, token: str) -> None:
        # No per-token revocation on the Microsoft identity platform
        logger.info(
            "Microsoft tokens cannot be revoked individually; "
            "the access token will expire on its own"
        )

    async def get_user_email(self, access_token: str) -> str:
        data = await self._request_json(
            "GET",
            f"{GRAPH_API_URL}/me",
            params={"$select": "mail,userPrincipalName"},
            access_token=access_token,
        )
        email = data.get("mail") or data.get("userPrincipalName")
        if not email:
            raise ProviderError(
                "Microsoft profile did not include an email address",
                provider=self.name,
            )
        return email

    async def fetch_events(
        self,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ExternalEvent]:
        url = f"{GRAPH_API_URL}/me/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": format_datetime(window_start),
            "endDateTime": format_datetime(window_end),
            "$orderby": "start/dateTime",
            "$top": str(PAGE_SIZE),
        }
        # Ask for UTC so dateTime values need no time zone lookup
        headers = {"Prefer": 'outlook.timezone="UTC"'}

        events: list[ExternalEvent] = []
        pages = 0
        while url:
            data = await self._request_json(
                "GET", url, params=params, headers=headers, access_token=access_token
            )
            pages += 1
            for item in data.get("value", []):
                event = self._translate_event(item)
                if event is not None:
                    events.append(event)

            # nextLink already carries every query parameter
            url = data.get("@odata.nextLink")
            params = None

        logger.debug(f"Fetched {len(events)} Microsoft events in {pages} page(s)")
        return events

    def _translate_event(self, item: dict[str, Any]) -> ExternalEvent | None:
        """Translate one Graph event resource, or None to skip it."""
        if item.get("isCancelled"):
            return None

        start = (item.get("start") or {}).get("dateTime")
        end = (item.get("end") or {}).get("dateTime")
        if not start or not end:
            logger.debug(f"Skipping Microsoft event {item.get('id')} without times")
            return None

        # Graph sends an empty displayName when no location is set
        location = (item.get("location") or {}).get("displayName") or None
        description = (item.get("body") or {}).get("content") or None

        return ExternalEvent(
            id=item["id"],
            title=item.get("subject") or "No Title",
            start_time=parse_datetime(start),
            end_time=parse_datetime(end),
            is_all_day=bool(item.get("isAllDay", False)),
            description=description,
            location=location,
        )
