"""Google Calendar provider.

## API Documentation Summary
Source: https://developers.google.com/identity/protocols/oauth2/web-server
Source: https://developers.google.com/calendar/api/v3/reference/events/list

## OAuth Endpoints
- Authorization: https://accounts.google.com/o/oauth2/v2/auth
- Token: https://oauth2.googleapis.com/token
- Revocation: https://oauth2.googleapis.com/revoke
- User info: https://www.googleapis.com/oauth2/v2/userinfo

`access_type=offline` and `prompt=consent` are always sent so that every
authorization (including re-authorization) issues a refresh token. Refresh
responses normally omit `refresh_token`; the stored one stays valid.

## Scopes
- https://www.googleapis.com/auth/calendar.readonly: read events
- https://www.googleapis.com/auth/userinfo.email: identify the account

## Events Request
`GET /calendar/v3/calendars/primary/events`

| Parameter | Value |
|-----------|-------|
| timeMin, timeMax | RFC 3339 window bounds |
| singleEvents | true (expand recurring events) |
| orderBy | startTime |
| maxResults | 250 per page |
| pageToken | `nextPageToken` of the previous page |

## Field Translation
| Google Field | ExternalEvent Field | Notes |
|--------------|---------------------|-------|
| id | id | |
| summary | title | "No Title" when absent |
| start.dateTime / start.date | start_time | `date` means all-day |
| end.dateTime / end.date | end_time | |
| description | description | |
| location | location | |
| status | (filter) | `cancelled` events are skipped |
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import urlencode

from family_calendar.database.models import CalendarProviderType
from family_calendar.providers.base import (
    CalendarProvider,
    ExternalEvent,
    ProviderError,
    TokenResponse,
    format_datetime,
    parse_date,
    parse_datetime,
)

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
]

PAGE_SIZE = 250


def _parse_event_time(value: dict[str, Any]) -> tuple[datetime, bool] | None:
    """Parse a Google start/end object into (datetime, is_all_day)."""
    if value.get("dateTime"):
        return parse_datetime(value["dateTime"]), False
    if value.get("date"):
        return parse_date(value["date"]), True
    return None


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar adapter.

    Example:
        ```python
        provider = GoogleCalendarProvider(client_id="...", client_secret="...")
        url = provider.generate_authorization_url(state, redirect_uri)
        ```
    """

    name = "google"
    provider_type = CalendarProviderType.GOOGLE

    def generate_authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            # Offline access plus forced consent so a refresh token is always issued
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code_for_tokens(
        self, code: str, redirect_uri: str
    ) -> TokenResponse:
        data = await self._request_json(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        return self._parse_token_response(data)

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        data = await self._request_json(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            },
        )
        return self._parse_token_response(data)

    async def revoke_token(self, token: str) -> None:
        await self._request("POST", GOOGLE_REVOKE_URL, data={"token": token})

    async def get_user_email(self, access_token: str) -> str:
        data = await self._request_json(
            "GET", GOOGLE_USERINFO_URL, access_token=access_token
        )
        email = data.get("email")
        if not email:
            raise ProviderError(
                "Google user info did not include an email address",
                provider=self.name,
            )
        return email

    async def fetch_events(
        self,
        access_token: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[ExternalEvent]:
        params: dict[str, Any] = {
            "timeMin": format_datetime(window_start),
            "timeMax": format_datetime(window_end),
            # Expand recurring events into their instances
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": str(PAGE_SIZE),
        }

        events: list[ExternalEvent] = []
        pages = 0
        while True:
            data = await self._request_json(
                "GET", GOOGLE_EVENTS_URL, params=params, access_token=access_token
            )
            pages += 1
            for item in data.get("items", []):
                event = self._translate_event(item)
                if event is not None:
                    events.append(event)

            # Follow pagination until no page token is returned
            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        logger.debug(f"Fetched {len(events)} Google events in {pages} page(s)")
        return events

    def _translate_event(self, item: dict[str, Any]) -> ExternalEvent | None:
        """Translate one Google event resource, or None to skip it."""
        # Cancelled instances of recurring events still appear in the list
        if item.get("status") == "cancelled":
            return None

        start = _parse_event_time(item.get("start") or {})
        end = _parse_event_time(item.get("end") or {})
        if start is None or end is None:
            logger.debug(f"Skipping Google event {item.get('id')} without times")
            return None

        # All-day events carry "date" instead of "dateTime"
        start_time, is_all_day = start
        end_time, _ = end

        return ExternalEvent(
            id=item["id"],
            title=item.get("summary") or "No Title",
            start_time=start_time,
            end_time=end_time,
            is_all_day=is_all_day,
            description=item.get("description"),
            location=item.get("location"),
        )
