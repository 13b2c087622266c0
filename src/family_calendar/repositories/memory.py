"""In-memory repository implementations.

Rows are kept as detached model instances in dicts keyed by id. Intended
for tests and local experiments; nothing is persisted.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from family_calendar.database.models import (
    Event,
    EventType,
    ExternalCalendar,
    Family,
)
from family_calendar.repositories.base import (
    AuditLogEntry,
    AuditLogRepository,
    EventRepository,
    ExternalCalendarRepository,
    FamilyRepository,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _apply_changes(row: Any, changes: dict[str, Any]) -> None:
    for name, value in changes.items():
        if not hasattr(type(row), name):
            raise AttributeError(f"{type(row).__name__} has no attribute {name!r}")
        setattr(row, name, value)


class InMemoryEventRepository(EventRepository):
    def __init__(self) -> None:
        self.events: dict[uuid.UUID, Event] = {}

    async def find_by_id(self, event_id: uuid.UUID) -> Event | None:
        return self.events.get(event_id)

    async def find_by_family_id(
        self,
        family_id: uuid.UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        events = [e for e in self.events.values() if e.family_id == family_id]
        if start is not None:
            events = [e for e in events if e.end_time >= start]
        if end is not None:
            events = [e for e in events if e.start_time <= end]
        return sorted(events, key=lambda e: e.start_time)

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
    ) -> Event:
        event = Event(
            id=uuid.uuid4(),
            family_id=family_id,
            title=title,
            description=description,
            location=location,
            start_time=start_time,
            end_time=end_time,
            is_all_day=is_all_day,
            event_type=event_type,
            is_synced=is_synced,
            external_calendar_id=external_calendar_id,
            created_at=_now(),
            updated_at=None,
        )
        self.events[event.id] = event
        return event

    async def update(self, event_id: uuid.UUID, **changes: Any) -> Event:
        event = self.events.get(event_id)
        if event is None:
            raise LookupError(f"Event {event_id} not found")
        _apply_changes(event, changes)
        event.updated_at = _now()
        return event

    async def delete(self, event_id: uuid.UUID) -> None:
        self.events.pop(event_id, None)


class InMemoryExternalCalendarRepository(ExternalCalendarRepository):
    """Connections kept in a dict.

    Args:
        event_repo: Event store whose synced events are removed by
            `delete_events_by_calendar_id`
    """

    def __init__(self, event_repo: InMemoryEventRepository | None = None) -> None:
        self.calendars: dict[uuid.UUID, ExternalCalendar] = {}
        self.event_repo = event_repo

    async def find_by_id(self, calendar_id: uuid.UUID) -> ExternalCalendar | None:
        return self.calendars.get(calendar_id)

    async def find_by_user_id(self, user_id: uuid.UUID) -> list[ExternalCalendar]:
        return [c for c in self.calendars.values() if c.user_id == user_id]

    async def find_by_user_id_and_provider(
        self,
        user_id: uuid.UUID,
        provider: str,
        account_email: str,
    ) -> ExternalCalendar | None:
        for calendar in self.calendars.values():
            if (
                calendar.user_id == user_id
                and calendar.provider == provider
                and calendar.account_email == account_email
            ):
                return calendar
        return None

    async def create(
        self,
        *,
        user_id: uuid.UUID,
        provider: str,
        account_email: str,
        access_token_encrypted: str,
        refresh_token_encrypted: str | None,
        expires_at: datetime | None,
    ) -> ExternalCalendar:
        now = _now()
        calendar = ExternalCalendar(
            id=uuid.uuid4(),
            user_id=user_id,
            provider=provider,
            account_email=account_email,
            access_token_encrypted=access_token_encrypted,
            refresh_token_encrypted=refresh_token_encrypted,
            expires_at=expires_at,
            last_synced_at=None,
            created_at=now,
            updated_at=now,
        )
        self.calendars[calendar.id] = calendar
        return calendar

    async def update(self, calendar_id: uuid.UUID, **changes: Any) -> ExternalCalendar:
        calendar = self.calendars.get(calendar_id)
        if calendar is None:
            raise LookupError(f"External calendar {calendar_id} not found")
        _apply_changes(calendar, changes)
        calendar.updated_at = _now()
        return calendar

    async def delete(self, calendar_id: uuid.UUID) -> None:
        self.calendars.pop(calendar_id, None)

    async def update_last_synced_at(
        self, calendar_id: uuid.UUID, synced_at: datetime
    ) -> None:
        await self.update(calendar_id, last_synced_at=synced_at)

    async def delete_events_by_calendar_id(self, calendar_id: uuid.UUID) -> int:
        if self.event_repo is None:
            return 0
        doomed = [
            event_id
            for event_id, event in self.event_repo.events.items()
            if event.external_calendar_id == calendar_id
        ]
        for event_id in doomed:
            del self.event_repo.events[event_id]
        return len(doomed)


class InMemoryFamilyRepository(FamilyRepository):
    def __init__(self) -> None:
        self.families: dict[uuid.UUID, Family] = {}
        # user_id -> family ids in join order
        self.memberships: dict[uuid.UUID, list[uuid.UUID]] = {}

    def add_family(self, name: str, *member_ids: uuid.UUID) -> Family:
        """Create a family and enrol the given users, in order."""
        family = Family(id=uuid.uuid4(), name=name, created_at=_now())
        self.families[family.id] = family
        for user_id in member_ids:
            self.memberships.setdefault(user_id, []).append(family.id)
        return family

    async def find_by_user_id(self, user_id: uuid.UUID) -> list[Family]:
        return [self.families[fid] for fid in self.memberships.get(user_id, [])]


class InMemoryAuditLogRepository(AuditLogRepository):
    def __init__(self) -> None:
        self.entries: list[AuditLogEntry] = []

    async def create(self, entry: AuditLogEntry) -> None:
        self.entries.append(entry)

    def actions(self) -> list[str]:
        return [entry.action for entry in self.entries]
