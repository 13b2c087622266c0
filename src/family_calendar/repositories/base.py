"""Storage interfaces consumed by the calendar sync service.

The service depends only on these abstract classes. Two implementations
ship with the package:

- `family_calendar.repositories.sql`: SQLAlchemy async, used by the API and CLI
- `family_calendar.repositories.memory`: dict-backed, used by tests

Write methods that take ``**changes`` set exactly the given attributes, so
``update(calendar_id, last_synced_at=None)`` clears a column while omitted
attributes stay untouched.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from family_calendar.database.models import (
    Event,
    EventType,
    ExternalCalendar,
    Family,
)


@dataclass
class AuditLogEntry:
    """A state-changing action to record in the audit log."""

    action: str
    actor_id: uuid.UUID | None
    family_id: uuid.UUID | None = None
    actor_type: str = "user"
    details: dict[str, Any] = field(default_factory=dict)


class ExternalCalendarRepository(ABC):
    """Persistence for external calendar connections."""

    @abstractmethod
    async def find_by_id(self, calendar_id: uuid.UUID) -> ExternalCalendar | None: ...

    @abstractmethod
    async def find_by_user_id(self, user_id: uuid.UUID) -> list[ExternalCalendar]: ...

    @abstractmethod
    async def find_by_user_id_and_provider(
        self,
        user_id: uuid.UUID,
        provider: str,
        account_email: str,
    ) -> ExternalCalendar | None:
        """Find the connection for one (user, provider, account) triple."""

    @abstractmethod
    async def create(
        self,
        *,
        user_id: uuid.UUID,
        provider: str,
        account_email: str,
        access_token_encrypted: str,
        refresh_token_encrypted: str | None,
        expires_at: datetime | None,
    ) -> ExternalCalendar: ...

    @abstractmethod
    async def update(self, calendar_id: uuid.UUID, **changes: Any) -> ExternalCalendar:
        """Update a connection.

        Raises:
            LookupError: If the connection does not exist
        """

    @abstractmethod
    async def delete(self, calendar_id: uuid.UUID) -> None: ...

    @abstractmethod
    async def update_last_synced_at(
        self, calendar_id: uuid.UUID, synced_at: datetime
    ) -> None: ...

    @abstractmethod
    async def delete_events_by_calendar_id(self, calendar_id: uuid.UUID) -> int:
        """Delete every event synced from a connection.

        Returns:
            Number of events deleted
        """


class EventRepository(ABC):
    """Persistence for family calendar events."""

    @abstractmethod
    async def find_by_id(self, event_id: uuid.UUID) -> Event | None: ...

    @abstractmethod
    async def find_by_family_id(
        self,
        family_id: uuid.UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        """List a family's events, optionally only those overlapping [start, end]."""

    @abstractmethod
    async def create(
        self,
        *,
        family_id: uuid.UUID,
        title: str,
        start_time: datetime,
        end_time: datetime,
        is_all_day: bool = False,
        event_type: str = EventType.BLOCKER.value,
        description: str | None = None,
        location: str | None = None,
        is_synced: bool = False,
        external_calendar_id: uuid.UUID | None = None,
    ) -> Event: ...

    @abstractmethod
    async def update(self, event_id: uuid.UUID, **changes: Any) -> Event:
        """Update an event.

        Raises:
            LookupError: If the event does not exist
        """

    @abstractmethod
    async def delete(self, event_id: uuid.UUID) -> None: ...


class FamilyRepository(ABC):
    """Read access to family membership."""

    @abstractmethod
    async def find_by_user_id(self, user_id: uuid.UUID) -> list[Family]:
        """Families the user belongs to, earliest membership first."""


class AuditLogRepository(ABC):
    """Sink for audit log entries."""

    @abstractmethod
    async def create(self, entry: AuditLogEntry) -> None: ...
