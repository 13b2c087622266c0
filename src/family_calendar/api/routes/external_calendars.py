"""External calendar routes.

Connect, list, sync and disconnect Google and Microsoft calendars.

## Endpoints

- GET    /api/external-calendars/                    - list connections
- POST   /api/external-calendars/connect             - start OAuth
- GET    /api/external-calendars/callback            - OAuth redirect target
- DELETE /api/external-calendars/{calendar_id}       - disconnect
- POST   /api/external-calendars/{calendar_id}/sync  - sync one connection
- POST   /api/external-calendars/sync                - sync all connections

The callback is reached by the provider's redirect, so it authenticates the
user through the signed state token rather than the session cookie, and it
answers with a redirect to the frontend instead of JSON.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Literal
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from family_calendar.auth.dependencies import get_current_user_id
from family_calendar.calendar.rate_limit import SyncRateLimiter
from family_calendar.calendar.service import (
    ExternalCalendarService,
    FamilyLocks,
    SyncResult,
)
from family_calendar.config import get_settings
from family_calendar.database.connection import get_db_session
from family_calendar.errors import DomainError, RateLimitError, ValidationError
from family_calendar.repositories.sql import build_sql_repositories

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_RETURN_PATH = "/onboarding/welcome"


class ExternalCalendarResponse(BaseModel):
    """A connected external calendar."""

    id: uuid.UUID
    provider: str
    account_email: str
    last_synced_at: datetime | None
    created_at: datetime
    sync_status: Literal["active", "error"]
    error_message: str | None


class ExternalCalendarListResponse(BaseModel):
    calendars: list[ExternalCalendarResponse]


class ConnectCalendarRequest(BaseModel):
    """Start connecting a calendar."""

    provider: str = Field(description="google or microsoft")
    return_path: str | None = Field(default=None, max_length=512)


class AuthorizationResponse(BaseModel):
    authorization_url: str
    state: str


class SyncResultResponse(BaseModel):
    """Outcome of syncing one calendar."""

    calendar_id: uuid.UUID
    synced_at: datetime
    events_added: int
    events_updated: int
    events_removed: int
    status: Literal["success", "partial", "error"]
    error_message: str | None
    retry_after: int | None = None


class SyncAllResponse(BaseModel):
    results: list[SyncResultResponse]


def get_sync_rate_limiter(request: Request) -> SyncRateLimiter:
    """The application-wide sync cooldown tracker."""
    return request.app.state.sync_rate_limiter


def get_family_locks(request: Request) -> FamilyLocks:
    return request.app.state.family_locks


async def get_external_calendar_service(
    db: AsyncSession = Depends(get_db_session),
    rate_limiter: SyncRateLimiter = Depends(get_sync_rate_limiter),
    family_locks: FamilyLocks = Depends(get_family_locks),
) -> ExternalCalendarService:
    """Build the service for one request on top of the SQL repositories."""
    return ExternalCalendarService(
        *build_sql_repositories(db),
        rate_limiter=rate_limiter,
        family_locks=family_locks,
    )


def raise_for_error(error: DomainError) -> None:
    """Translate a domain error into an HTTP error response."""
    detail: dict[str, object] = {"error": error.code, "message": error.message}
    headers = None
    if isinstance(error, ValidationError) and error.fields:
        detail["fields"] = error.fields
    if isinstance(error, RateLimitError):
        detail["retry_after"] = error.retry_after
        headers = {"Retry-After": str(error.retry_after)}
    raise HTTPException(status_code=error.status_code, detail=detail, headers=headers)


def _sync_result_response(result: SyncResult) -> SyncResultResponse:
    return SyncResultResponse(
        calendar_id=result.connection_id,
        synced_at=result.synced_at,
        events_added=result.events_added,
        events_updated=result.events_updated,
        events_removed=result.events_removed,
        status=result.status,
        error_message=result.error_message,
        retry_after=result.retry_after,
    )


def _frontend_redirect(return_path: str | None, **params: str) -> RedirectResponse:
    settings = get_settings()
    base = settings.frontend_url.rstrip("/")
    url = f"{base}{return_path or DEFAULT_RETURN_PATH}?{urlencode(params)}"
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.get("/", response_model=ExternalCalendarListResponse)
async def list_external_calendars(
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: ExternalCalendarService = Depends(get_external_calendar_service),
) -> ExternalCalendarListResponse:
    """List the current user's connected calendars."""
    result = await service.list_calendars(user_id)
    if result.is_err:
        raise_for_error(result.error)

    return ExternalCalendarListResponse(
        calendars=[
            ExternalCalendarResponse(
                id=c.id,
                provider=c.provider,
                account_email=c.account_email,
                last_synced_at=c.last_synced_at,
                created_at=c.created_at,
                sync_status=c.sync_status,
                error_message=c.error_message,
            )
            for c in result.value
        ]
    )


@router.post("/connect", response_model=AuthorizationResponse)
async def connect_external_calendar(
    data: ConnectCalendarRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: ExternalCalendarService = Depends(get_external_calendar_service),
) -> AuthorizationResponse:
    """Start the OAuth flow; the client navigates to the returned URL."""
    result = await service.initiate_oauth(user_id, data.provider, data.return_path)
    if result.is_err:
        raise_for_error(result.error)

    return AuthorizationResponse(
        authorization_url=result.value.authorization_url,
        state=result.value.state,
    )


@router.get("/callback")
async def external_calendar_callback(
    code: str | None = None,
    state: str | None = None,
    provider: str | None = None,
    error: str | None = None,
    service: ExternalCalendarService = Depends(get_external_calendar_service),
) -> RedirectResponse:
    """Handle the provider's redirect after consent."""
    return_path = None
    if state:
        validation = service.state_codec.validate(state)
        if validation.valid:
            return_path = validation.return_path

    if error:
        # The user declined consent or the provider refused the request
        logger.info(f"OAuth callback for {provider} returned error: {error}")
        return _frontend_redirect(return_path, status="error", error=error)

    if not code or not state or not provider:
        return _frontend_redirect(
            return_path, status="error", error="missing_parameters"
        )

    result = await service.handle_callback(code, state, provider)
    if result.is_err:
        return _frontend_redirect(
            return_path, status="error", error=result.error.code
        )

    return _frontend_redirect(
        result.value.return_path,
        status="success",
        calendar_id=str(result.value.connection_id),
    )


@router.post("/sync", response_model=SyncAllResponse)
async def sync_all_external_calendars(
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: ExternalCalendarService = Depends(get_external_calendar_service),
) -> SyncAllResponse:
    """Sync every calendar the current user has connected."""
    result = await service.sync_all_calendars(user_id)
    if result.is_err:
        raise_for_error(result.error)

    return SyncAllResponse(results=[_sync_result_response(r) for r in result.value])


@router.delete("/{calendar_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_external_calendar(
    calendar_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: ExternalCalendarService = Depends(get_external_calendar_service),
) -> None:
    """Disconnect a calendar and remove its synced events."""
    result = await service.disconnect_calendar(user_id, calendar_id)
    if result.is_err:
        raise_for_error(result.error)


@router.post("/{calendar_id}/sync", response_model=SyncResultResponse)
async def sync_external_calendar(
    calendar_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: ExternalCalendarService = Depends(get_external_calendar_service),
) -> SyncResultResponse:
    """Sync one connected calendar now."""
    result = await service.sync_calendar(user_id, calendar_id)
    if result.is_err:
        raise_for_error(result.error)

    return _sync_result_response(result.value)
