"""SQLAlchemy async repository implementations.

Each repository wraps one `AsyncSession` and commits its own writes, so a
sync that fails halfway leaves the writes it already made in place.

Example:
    ```python
    async with get_db() as session:
        service = ExternalCalendarService(*build_sql_repositories(session))
    ```
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from family_calendar.database.models import (
    AuditLog,
    Event,
    EventType,
    ExternalCalendar,
    Family,
    FamilyMember,
)
from family_calendar.repositories.base import (
    AuditLogEntry,
    AuditLogRepository,
    EventRepository,
    ExternalCalendarRepository,
    FamilyRepository,
)

logger = logging.getLogger(__name__)


class SqlExternalCalendarRepository(ExternalCalendarRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, calendar_id: uuid.UUID) -> ExternalCalendar | None:
        return await self.db.get(ExternalCalendar, calendar_id)

    async def find_by_user_id(self, user_id: uuid.UUID) -> list[ExternalCalendar]:
        result = await self.db.execute(
            select(ExternalCalendar)
            .where(ExternalCalendar.user_id == user_id)
            .order_by(ExternalCalendar.created_at)
        )
        return list(result.scalars().all())

    async def find_by_user_id_and_provider(
        self,
        user_id: uuid.UUID,
        provider: str,
        account_email: str,
    ) -> ExternalCalendar | None:
        result = await self.db.execute(
            select(ExternalCalendar).where(
                ExternalCalendar.user_id == user_id,
                ExternalCalendar.provider == provider,
                ExternalCalendar.account_email == account_email,
            )
        )
        return result.scalar_one_or_none()

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
        calendar = ExternalCalendar(
            user_id=user_id,
            provider=provider,
            account_email=account_email,
            access_token_encrypted=access_token_encrypted,
            refresh_token_encrypted=refresh_token_encrypted,
            expires_at=expires_at,
        )
        self.db.add(calendar)
        await self.db.commit()
        await self.db.refresh(calendar)
        return calendar

    async def update(self, calendar_id: uuid.UUID, **changes: Any) -> ExternalCalendar:
        calendar = await self.find_by_id(calendar_id)
        if calendar is None:
            raise LookupError(f"External calendar {calendar_id} not found")
        for name, value in changes.items():
            setattr(calendar, name, value)
        await self.db.commit()
        await self.db.refresh(calendar)
        return calendar

    async def delete(self, calendar_id: uuid.UUID) -> None:
        await self.db.execute(
            delete(ExternalCalendar).where(ExternalCalendar.id == calendar_id)
        )
        await self.db.commit()

    async def update_last_synced_at(
        self, calendar_id: uuid.UUID, synced_at: datetime
    ) -> None:
        await self.update(calendar_id, last_synced_at=synced_at)

    async def delete_events_by_calendar_id(self, calendar_id: uuid.UUID) -> int:
        result = await self.db.execute(
            delete(Event).where(Event.external_calendar_id == calendar_id)
        )
        await self.db.commit()
        logger.debug(f"Deleted {result.rowcount} synced events for {calendar_id}")
        return result.rowcount


class SqlEventRepository(EventRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, event_id: uuid.UUID) -> Event | None:
        return await self.db.get(Event, event_id)

    async def find_by_family_id(
        self,
        family_id: uuid.UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        query = select(Event).where(Event.family_id == family_id)
        if start is not None:
            query = query.where(Event.end_time >= start)
        if end is not None:
            query = query.where(Event.start_time <= end)
        result = await self.db.execute(query.order_by(Event.start_time))
        return list(result.scalars().all())

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
        )
        self.db.add(event)
        await self.db.commit()
        await self.db.refresh(event)
        return event

    async def update(self, event_id: uuid.UUID, **changes: Any) -> Event:
        event = await self.find_by_id(event_id)
        if event is None:
            raise LookupError(f"Event {event_id} not found")
        for name, value in changes.items():
            setattr(event, name, value)
        await self.db.commit()
        await self.db.refresh(event)
        return event

    async def delete(self, event_id: uuid.UUID) -> None:
        await self.db.execute(delete(Event).where(Event.id == event_id))
        await self.db.commit()


class SqlFamilyRepository(FamilyRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_user_id(self, user_id: uuid.UUID) -> list[Family]:
        result = await self.db.execute(
            select(Family)
            .join(FamilyMember, FamilyMember.family_id == Family.id)
            .where(FamilyMember.user_id == user_id)
            .order_by(FamilyMember.joined_at, Family.created_at)
        )
        return list(result.scalars().all())


class SqlAuditLogRepository(AuditLogRepository):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, entry: AuditLogEntry) -> None:
        self.db.add(
            AuditLog(
                family_id=entry.family_id,
                actor_id=entry.actor_id,
                actor_type=entry.actor_type,
                action=entry.action,
                details=entry.details,
            )
        )
        await self.db.commit()


def build_sql_repositories(
    db: AsyncSession,
) -> tuple[
    SqlExternalCalendarRepository,
    SqlEventRepository,
    SqlFamilyRepository,
    SqlAuditLogRepository,
]:
    """Build the four repositories the sync service needs, sharing one session."""
    return (
        SqlExternalCalendarRepository(db),
        SqlEventRepository(db),
        SqlFamilyRepository(db),
        SqlAuditLogRepository(db),
    )
