"""External calendar sync service.

Connects, disconnects and syncs a user's Google and Microsoft calendars.

## Sync Process

1. Check the per-connection cooldown (no side effects when rejected)
2. Check that the connection exists and belongs to the user
3. Decrypt the stored access token
4. Start the cooldown: from here on the attempt counts even if it fails
5. Refresh the access token if it has expired (refreshed tokens are
   persisted before they are used)
6. Fetch external events in the window [now - 90 days, now + 365 days]
7. Resolve the target family (the user's earliest membership)
8. Reconcile stored synced events against the fetched ones, holding the
   family's lock
9. Stamp ``last_synced_at`` and write the audit entry

## Result Convention

Every public method returns ``Ok(value)`` or ``Err(DomainError)``. Domain
errors raised inside pass through unchanged; anything else is logged with
its traceback and returned as an `InternalError` with a user-safe message.
Cancellation propagates.

## Audit Actions

- ``external_calendar.connect``
- ``external_calendar.disconnect``
- ``external_calendar.sync``
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Literal, TypeVar

from family_calendar.auth.state import StateTokenCodec, validate_return_path
from family_calendar.calendar.rate_limit import SyncRateLimiter
from family_calendar.calendar.reconciliation import reconcile_events, to_utc
from family_calendar.config import Settings, get_settings
from family_calendar.database.encryption import TokenVault, get_token_vault
from family_calendar.database.models import CalendarProviderType, ExternalCalendar
from family_calendar.errors import (
    DomainError,
    Err,
    ForbiddenError,
    InternalError,
    NotFoundError,
    Ok,
    RateLimitError,
    Result,
    ValidationError,
)
from family_calendar.providers import (
    CalendarProvider,
    ProviderError,
    ProviderNotConfiguredError,
    create_provider,
)
from family_calendar.repositories.base import (
    AuditLogEntry,
    AuditLogRepository,
    EventRepository,
    ExternalCalendarRepository,
    FamilyRepository,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProviderFactory = Callable[[CalendarProviderType], CalendarProvider]

SyncStatus = Literal["success", "partial", "error"]

ACTION_CONNECT = "external_calendar.connect"
ACTION_DISCONNECT = "external_calendar.disconnect"
ACTION_SYNC = "external_calendar.sync"


@dataclass
class SyncResult:
    """Outcome of syncing one connection."""

    connection_id: uuid.UUID
    synced_at: datetime
    events_added: int = 0
    events_updated: int = 0
    events_removed: int = 0
    status: SyncStatus = "success"
    error_message: str | None = None
    retry_after: int | None = None


@dataclass
class ExternalCalendarSummary:
    """A connection as shown to its owner. Never carries tokens."""

    id: uuid.UUID
    provider: str
    account_email: str
    last_synced_at: datetime | None
    created_at: datetime
    sync_status: Literal["active", "error"]
    error_message: str | None = None


@dataclass
class AuthorizationRequest:
    authorization_url: str
    state: str


@dataclass
class CallbackResult:
    connection_id: uuid.UUID
    return_path: str | None = None


class FamilyLocks:
    """One `asyncio.Lock` per family, created on first use.

    Share an instance between services that may write the same family's
    events concurrently.
    """

    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    def get(self, family_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(family_id)
        if lock is None:
            lock = self._locks[family_id] = asyncio.Lock()
        return lock


def _parse_id(value: uuid.UUID | str | None, label: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if not value:
        raise ValidationError(f"{label} is required")
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationError(f"{label} is not a valid id") from None


def _parse_provider(value: CalendarProviderType | str | None) -> CalendarProviderType:
    try:
        return CalendarProviderType(value)
    except ValueError:
        raise ValidationError(
            "Invalid provider value",
            fields={
                "provider": "must be one of: "
                + ", ".join(p.value for p in CalendarProviderType)
            },
        ) from None


class ExternalCalendarService:
    """Orchestrates OAuth connection, token refresh and event sync.

    Example:
        ```python
        service = ExternalCalendarService(
            calendar_repo, event_repo, family_repo, log_repo,
            rate_limiter=app.state.sync_rate_limiter,
        )

        result = await service.sync_calendar(user_id, calendar_id)
        if result.is_ok:
            print(result.value.events_added)
        ```
    """

    def __init__(
        self,
        calendar_repo: ExternalCalendarRepository,
        event_repo: EventRepository,
        family_repo: FamilyRepository,
        log_repo: AuditLogRepository,
        *,
        provider_factory: ProviderFactory | None = None,
        vault: TokenVault | None = None,
        state_codec: StateTokenCodec | None = None,
        rate_limiter: SyncRateLimiter | None = None,
        family_locks: FamilyLocks | None = None,
        settings: Settings | None = None,
    ):
        """Initialize the service.

        Args:
            calendar_repo: Connection storage
            event_repo: Family event storage
            family_repo: Family membership lookup
            log_repo: Audit log sink
            provider_factory: Builds a provider adapter (default: from settings)
            vault: Token encryption (default: process-wide vault)
            state_codec: OAuth state signing (default: from settings)
            rate_limiter: Sync cooldown tracker (default: a new one)
            family_locks: Per-family write locks (default: new, service-local)
            settings: Application settings (default: global settings)
        """
        self.calendar_repo = calendar_repo
        self.event_repo = event_repo
        self.family_repo = family_repo
        self.log_repo = log_repo

        self.settings = settings or get_settings()
        self.provider_factory = provider_factory or (
            lambda provider: create_provider(provider, self.settings)
        )
        self.vault = vault or get_token_vault()
        self.state_codec = state_codec or StateTokenCodec(
            self.settings.oauth_state_secret,
            max_age_seconds=self.settings.state_token_max_age_seconds,
        )
        self.rate_limiter = rate_limiter or SyncRateLimiter(
            self.settings.sync_rate_limit_seconds
        )
        self.family_locks = family_locks or FamilyLocks()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def list_calendars(
        self, user_id: uuid.UUID | str
    ) -> Result[list[ExternalCalendarSummary], DomainError]:
        """List the user's connections with a coarse health status."""
        return await self._run(
            "Failed to list external calendars", self._list_calendars(user_id)
        )

    async def initiate_oauth(
        self,
        user_id: uuid.UUID | str,
        provider: CalendarProviderType | str,
        return_path: str | None = None,
    ) -> Result[AuthorizationRequest, DomainError]:
        """Start the OAuth flow for connecting a calendar."""
        return await self._run(
            "Failed to initiate OAuth flow",
            self._initiate_oauth(user_id, provider, return_path),
        )

    async def handle_callback(
        self,
        code: str | None,
        state: str | None,
        provider: CalendarProviderType | str | None,
    ) -> Result[CallbackResult, DomainError]:
        """Complete the OAuth flow and store the connection."""
        return await self._run(
            "Failed to complete OAuth flow",
            self._handle_callback(code, state, provider),
        )

    async def disconnect_calendar(
        self,
        user_id: uuid.UUID | str,
        connection_id: uuid.UUID | str,
    ) -> Result[None, DomainError]:
        """Remove a connection and every event synced from it."""
        return await self._run(
            "Failed to disconnect calendar",
            self._disconnect_calendar(user_id, connection_id),
        )

    async def sync_calendar(
        self,
        user_id: uuid.UUID | str,
        connection_id: uuid.UUID | str,
    ) -> Result[SyncResult, DomainError]:
        """Sync one connection into the user's family calendar."""
        return await self._run(
            "Failed to sync calendar",
            self._sync_calendar(user_id, connection_id),
        )

    async def sync_all_calendars(
        self, user_id: uuid.UUID | str
    ) -> Result[list[SyncResult], DomainError]:
        """Sync each of the user's connections in turn.

        One result is returned per connection; a failing connection yields an
        ``error`` result and does not stop the others.
        """
        return await self._run(
            "Failed to sync calendars", self._sync_all_calendars(user_id)
        )

    # ------------------------------------------------------------------
    # Implementation
    # ------------------------------------------------------------------

    async def _run(
        self, failure_message: str, operation: Awaitable[T]
    ) -> Result[T, DomainError]:
        try:
            return Ok(await operation)
        except DomainError as e:
            return Err(e)
        except Exception:
            logger.exception(failure_message)
            return Err(InternalError(failure_message))

    async def _list_calendars(
        self, user_id: uuid.UUID | str
    ) -> list[ExternalCalendarSummary]:
        user_id = _parse_id(user_id, "User ID")
        calendars = await self.calendar_repo.find_by_user_id(user_id)

        threshold_days = self.settings.sync_active_threshold_days
        threshold = datetime.now(timezone.utc) - timedelta(days=threshold_days)

        summaries = []
        for calendar in calendars:
            last_synced_at = (
                to_utc(calendar.last_synced_at) if calendar.last_synced_at else None
            )
            # Active means synced within the threshold
            if last_synced_at is not None and last_synced_at >= threshold:
                sync_status, error_message = "active", None
            elif last_synced_at is None:
                sync_status, error_message = "error", "Calendar has not been synced yet"
            else:
                sync_status = "error"
                error_message = (
                    f"Calendar has not been synced in the last {threshold_days} days"
                )

            summaries.append(
                ExternalCalendarSummary(
                    id=calendar.id,
                    provider=calendar.provider,
                    account_email=calendar.account_email,
                    last_synced_at=last_synced_at,
                    created_at=to_utc(calendar.created_at),
                    sync_status=sync_status,
                    error_message=error_message,
                )
            )
        return summaries

    def _redirect_uri(self, provider: CalendarProviderType) -> str:
        base = self.settings.api_base_url.rstrip("/")
        return (
            f"{base}{self.settings.external_calendar_callback_path}"
            f"?provider={provider.value}"
        )

    def _create_provider(self, provider: CalendarProviderType) -> CalendarProvider:
        try:
            return self.provider_factory(provider)
        except ProviderNotConfiguredError as e:
            logger.error(f"Calendar provider not configured: {e}")
            raise InternalError(
                f"{provider.value.title()} calendar integration is not configured"
            ) from e

    def _decrypt(self, ciphertext: str) -> str:
        try:
            return self.vault.decrypt(ciphertext)
        except ValueError as e:
            raise InternalError(
                "Stored calendar credentials could not be read. "
                "Please reconnect the calendar."
            ) from e

    async def _initiate_oauth(
        self,
        user_id: uuid.UUID | str,
        provider: CalendarProviderType | str,
        return_path: str | None,
    ) -> AuthorizationRequest:
        user_id = _parse_id(user_id, "User ID")
        provider_type = _parse_provider(provider)
        if return_path:
            validate_return_path(return_path)

        state = self.state_codec.generate(user_id, return_path or None)
        async with self._create_provider(provider_type) as adapter:
            url = adapter.generate_authorization_url(
                state, self._redirect_uri(provider_type)
            )

        logger.info(f"Started {provider_type.value} OAuth flow for user {user_id}")
        return AuthorizationRequest(authorization_url=url, state=state)

    async def _handle_callback(
        self,
        code: str | None,
        state: str | None,
        provider: CalendarProviderType | str | None,
    ) -> CallbackResult:
        if not code or not state or not provider:
            raise ValidationError(
                "Missing required parameters: code, state, or provider"
            )

        # The state must be verified before the code is spent
        validation = self.state_codec.validate(state)
        if not validation.valid or validation.user_id is None:
            raise ValidationError("Invalid or expired state token")
        user_id = validation.user_id

        provider_type = _parse_provider(provider)

        # Exchange the code, then look up which account was authorized
        async with self._create_provider(provider_type) as adapter:
            try:
                tokens = await adapter.exchange_code_for_tokens(
                    code, self._redirect_uri(provider_type)
                )
                encrypted_access = self.vault.encrypt(tokens.access_token)
                encrypted_refresh = (
                    self.vault.encrypt(tokens.refresh_token)
                    if tokens.refresh_token
                    else None
                )
                account_email = await adapter.get_user_email(tokens.access_token)
            except ProviderError as e:
                logger.error(
                    f"OAuth callback failed at {e.provider} "
                    f"(status {e.status_code}): {e}"
                )
                raise InternalError("Failed to complete OAuth flow") from e

        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=tokens.expires_in)
            if tokens.expires_in
            else None
        )

        # Re-authorizing the same account updates the existing connection
        existing = await self.calendar_repo.find_by_user_id_and_provider(
            user_id, provider_type.value, account_email
        )
        if existing is not None:
            calendar = await self.calendar_repo.update(
                existing.id,
                access_token_encrypted=encrypted_access,
                refresh_token_encrypted=(
                    encrypted_refresh or existing.refresh_token_encrypted
                ),
                expires_at=expires_at,
                last_synced_at=None,
            )
        else:
            calendar = await self.calendar_repo.create(
                user_id=user_id,
                provider=provider_type.value,
                account_email=account_email,
                access_token_encrypted=encrypted_access,
                refresh_token_encrypted=encrypted_refresh,
                expires_at=expires_at,
            )

        logger.info(
            f"{'Re-authorized' if existing else 'Connected'} "
            f"{provider_type.value} calendar {calendar.id} for user {user_id}"
        )
        await self._audit(
            ACTION_CONNECT,
            actor_id=user_id,
            details={
                "calendar_id": str(calendar.id),
                "provider": provider_type.value,
                "account_email": account_email,
                "reauthorized": existing is not None,
            },
        )
        return CallbackResult(
            connection_id=calendar.id, return_path=validation.return_path
        )

    async def _get_owned_calendar(
        self, user_id: uuid.UUID, connection_id: uuid.UUID
    ) -> ExternalCalendar:
        calendar = await self.calendar_repo.find_by_id(connection_id)
        if calendar is None:
            raise NotFoundError("External calendar", connection_id)
        if calendar.user_id != user_id:
            raise ForbiddenError("You do not have access to this calendar")
        return calendar

    async def _disconnect_calendar(
        self,
        user_id: uuid.UUID | str,
        connection_id: uuid.UUID | str,
    ) -> None:
        user_id = _parse_id(user_id, "User ID")
        connection_id = _parse_id(connection_id, "Calendar ID")
        calendar = await self._get_owned_calendar(user_id, connection_id)

        await self._revoke_quietly(calendar)

        # Synced events go first so none are left pointing at a missing connection
        removed = await self.calendar_repo.delete_events_by_calendar_id(calendar.id)
        await self.calendar_repo.delete(calendar.id)
        self.rate_limiter.clear(calendar.id)

        logger.info(
            f"Disconnected {calendar.provider} calendar {calendar.id} "
            f"({removed} synced events removed)"
        )
        await self._audit(
            ACTION_DISCONNECT,
            actor_id=user_id,
            details={
                "calendar_id": str(calendar.id),
                "provider": calendar.provider,
                "account_email": calendar.account_email,
                "events_removed": removed,
            },
        )

    async def _revoke_quietly(self, calendar: ExternalCalendar) -> None:
        """Best-effort token revocation. Failures are logged, never raised."""
        try:
            access_token = self.vault.decrypt(calendar.access_token_encrypted)
            async with self._create_provider(
                CalendarProviderType(calendar.provider)
            ) as adapter:
                await adapter.revoke_token(access_token)
        except Exception as e:
            logger.warning(
                f"Failed to revoke token for calendar {calendar.id} "
                f"(continuing with disconnect): {type(e).__name__}: {e}"
            )

    async def _refresh_access_token(
        self,
        adapter: CalendarProvider,
        calendar: ExternalCalendar,
        now: datetime,
    ) -> str:
        """Refresh and persist tokens for an expired connection."""
        if not calendar.refresh_token_encrypted:
            raise InternalError(
                "Access token expired and no refresh token is stored. "
                "Please reconnect the calendar."
            )
        refresh_token = self._decrypt(calendar.refresh_token_encrypted)

        try:
            tokens = await adapter.refresh_token(refresh_token)
        except ProviderError as e:
            logger.error(
                f"Token refresh failed for calendar {calendar.id} "
                f"(status {e.status_code}): {e}"
            )
            raise InternalError(
                "Failed to refresh access token. Please reconnect the calendar."
            ) from e

        expires_at = (
            now + timedelta(seconds=tokens.expires_in)
            if tokens.expires_in
            else calendar.expires_at
        )
        # Persist before use: a token that was not saved is never used
        await self.calendar_repo.update(
            calendar.id,
            access_token_encrypted=self.vault.encrypt(tokens.access_token),
            refresh_token_encrypted=(
                self.vault.encrypt(tokens.refresh_token)
                if tokens.refresh_token
                else calendar.refresh_token_encrypted
            ),
            expires_at=expires_at,
        )
        logger.info(f"Refreshed access token for calendar {calendar.id}")
        return tokens.access_token

    async def _sync_calendar(
        self,
        user_id: uuid.UUID | str,
        connection_id: uuid.UUID | str,
    ) -> SyncResult:
        user_id = _parse_id(user_id, "User ID")
        connection_id = _parse_id(connection_id, "Calendar ID")

        allowed = self.rate_limiter.check_sync_rate_limit(connection_id)
        if allowed.is_err:
            raise allowed.error

        calendar = await self._get_owned_calendar(user_id, connection_id)
        provider_type = CalendarProviderType(calendar.provider)
        access_token = self._decrypt(calendar.access_token_encrypted)

        now = datetime.now(timezone.utc)
        window_start = now - timedelta(days=self.settings.sync_window_past_days)
        window_end = now + timedelta(days=self.settings.sync_window_future_days)

        # Every attempt that reaches the provider counts, even if it fails later
        self.rate_limiter.record_sync(calendar.id)

        async with self._create_provider(provider_type) as adapter:
            # Refresh first if the stored access token has expired
            if calendar.expires_at is not None and to_utc(calendar.expires_at) <= now:
                access_token = await self._refresh_access_token(adapter, calendar, now)

            try:
                external_events = await adapter.fetch_events(
                    access_token, window_start, window_end
                )
            except ProviderError as e:
                logger.error(
                    f"Fetching events failed for calendar {calendar.id} "
                    f"(status {e.status_code}): {e}"
                )
                raise InternalError(
                    f"Failed to fetch events from {provider_type.value}"
                ) from e

        # Events land in the user's first family
        families = await self.family_repo.find_by_user_id(user_id)
        if not families:
            raise ValidationError(
                "User must belong to at least one family to sync calendar events"
            )
        family_id = families[0].id

        async with self.family_locks.get(family_id):
            counts = await reconcile_events(
                external_events,
                self.event_repo,
                family_id,
                calendar.id,
                window_start=window_start,
                window_end=window_end,
            )

        synced_at = datetime.now(timezone.utc)
        await self.calendar_repo.update_last_synced_at(calendar.id, synced_at)

        status: SyncStatus = (
            "partial" if counts.updated > 0 or counts.removed > 0 else "success"
        )
        logger.info(
            f"Synced {provider_type.value} calendar {calendar.id}: "
            f"{counts.added} added, {counts.updated} updated, "
            f"{counts.removed} removed"
        )
        await self._audit(
            ACTION_SYNC,
            actor_id=user_id,
            family_id=family_id,
            details={
                "calendar_id": str(calendar.id),
                "provider": provider_type.value,
                "events_added": counts.added,
                "events_updated": counts.updated,
                "events_removed": counts.removed,
                "status": status,
            },
        )
        return SyncResult(
            connection_id=calendar.id,
            synced_at=synced_at,
            events_added=counts.added,
            events_updated=counts.updated,
            events_removed=counts.removed,
            status=status,
        )

    async def _sync_all_calendars(self, user_id: uuid.UUID | str) -> list[SyncResult]:
        user_id = _parse_id(user_id, "User ID")
        calendars = await self.calendar_repo.find_by_user_id(user_id)

        results: list[SyncResult] = []
        for calendar in calendars:
            outcome = await self.sync_calendar(user_id, calendar.id)
            if outcome.is_ok:
                results.append(outcome.value)
                continue

            error = outcome.error
            results.append(
                SyncResult(
                    connection_id=calendar.id,
                    synced_at=datetime.now(timezone.utc),
                    status="error",
                    error_message=error.message,
                    retry_after=(
                        error.retry_after if isinstance(error, RateLimitError) else None
                    ),
                )
            )

        failed = sum(1 for r in results if r.status == "error")
        if failed:
            logger.warning(
                f"Synced {len(results)} calendars for user {user_id}, {failed} failed"
            )
        return results

    async def _audit(
        self,
        action: str,
        *,
        actor_id: uuid.UUID,
        family_id: uuid.UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write an audit entry. A failure here never fails the operation."""
        try:
            await self.log_repo.create(
                AuditLogEntry(
                    action=action,
                    actor_id=actor_id,
                    family_id=family_id,
                    actor_type="user",
                    details=details or {},
                )
            )
        except Exception:
            logger.warning(f"Failed to write audit log entry {action}", exc_info=True)
