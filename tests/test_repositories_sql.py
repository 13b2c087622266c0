"""Tests for the SQLAlchemy repositories against in-memory SQLite."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from family_calendar.calendar.service import ACTION_SYNC, ExternalCalendarService
from family_calendar.database.connection import (
    close_db,
    create_tables,
    get_db,
    init_db,
)
from family_calendar.database.models import (
    AuditLog,
    Base,
    EventType,
    Family,
    FamilyMember,
)
from family_calendar.repositories.base import AuditLogEntry
from family_calendar.repositories.sql import (
    SqlAuditLogRepository,
    SqlEventRepository,
    SqlExternalCalendarRepository,
    SqlFamilyRepository,
    build_sql_repositories,
)

from conftest import make_external_event

START = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
async def session():
    """A session on a fresh in-memory database."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


async def add_family(session, name: str, user_id: uuid.UUID, joined_at: datetime) -> Family:
    family = Family(name=name)
    session.add(family)
    await session.flush()
    session.add(FamilyMember(family_id=family.id, user_id=user_id, joined_at=joined_at))
    await session.commit()
    return family


async def add_calendar(session, user_id: uuid.UUID, email: str = "parent@example.com"):
    return await SqlExternalCalendarRepository(session).create(
        user_id=user_id,
        provider="google",
        account_email=email,
        access_token_encrypted="enc-access",
        refresh_token_encrypted="enc-refresh",
        expires_at=START + timedelta(hours=1),
    )


class TestSqlExternalCalendarRepository:
    """Tests for connection persistence."""

    async def test_create_and_find(self, session):
        user_id = uuid.uuid4()
        repo = SqlExternalCalendarRepository(session)
        calendar = await add_calendar(session, user_id)

        assert calendar.id is not None
        assert (await repo.find_by_id(calendar.id)).account_email == "parent@example.com"
        assert [c.id for c in await repo.find_by_user_id(user_id)] == [calendar.id]
        assert await repo.find_by_user_id(uuid.uuid4()) == []

    async def test_find_by_user_and_provider(self, session):
        user_id = uuid.uuid4()
        repo = SqlExternalCalendarRepository(session)
        calendar = await add_calendar(session, user_id)

        found = await repo.find_by_user_id_and_provider(
            user_id, "google", "parent@example.com"
        )
        assert found.id == calendar.id
        assert (
            await repo.find_by_user_id_and_provider(user_id, "microsoft", "parent@example.com")
            is None
        )

    async def test_update(self, session):
        repo = SqlExternalCalendarRepository(session)
        calendar = await add_calendar(session, uuid.uuid4())

        updated = await repo.update(calendar.id, access_token_encrypted="enc-new")
        await repo.update_last_synced_at(calendar.id, START)

        assert updated.access_token_encrypted == "enc-new"
        assert (await repo.find_by_id(calendar.id)).last_synced_at is not None

    async def test_update_unknown(self, session):
        with pytest.raises(LookupError):
            await SqlExternalCalendarRepository(session).update(uuid.uuid4(), provider="x")

    async def test_delete_with_events(self, session):
        """Test that only the connection's synced events are deleted."""
        user_id = uuid.uuid4()
        family = await add_family(session, "Smith", user_id, START)
        calendars = SqlExternalCalendarRepository(session)
        events = SqlEventRepository(session)
        calendar = await add_calendar(session, user_id)

        for hour in range(3):
            await events.create(
                family_id=family.id,
                title=f"Synced {hour}",
                start_time=START + timedelta(hours=hour),
                end_time=START + timedelta(hours=hour, minutes=30),
                is_synced=True,
                external_calendar_id=calendar.id,
            )
        manual = await events.create(
            family_id=family.id,
            title="Manual",
            start_time=START,
            end_time=START + timedelta(hours=1),
        )

        assert await calendars.delete_events_by_calendar_id(calendar.id) == 3
        await calendars.delete(calendar.id)

        assert await calendars.find_by_id(calendar.id) is None
        remaining = await events.find_by_family_id(family.id)
        assert [e.id for e in remaining] == [manual.id]


class TestSqlEventRepository:
    """Tests for event persistence."""

    async def test_find_by_family_in_window(self, session):
        family = await add_family(session, "Smith", uuid.uuid4(), START)
        repo = SqlEventRepository(session)
        inside = await repo.create(
            family_id=family.id,
            title="Inside",
            start_time=START,
            end_time=START + timedelta(hours=1),
            event_type=EventType.ELASTIC.value,
        )
        await repo.create(
            family_id=family.id,
            title="Outside",
            start_time=START - timedelta(days=30),
            end_time=START - timedelta(days=30) + timedelta(hours=1),
        )

        found = await repo.find_by_family_id(
            family.id, start=START - timedelta(days=1), end=START + timedelta(days=1)
        )

        assert [e.id for e in found] == [inside.id]
        assert found[0].event_type == "elastic"

    async def test_update_and_delete(self, session):
        family = await add_family(session, "Smith", uuid.uuid4(), START)
        repo = SqlEventRepository(session)
        event = await repo.create(
            family_id=family.id,
            title="dentist",
            start_time=START,
            end_time=START + timedelta(hours=1),
        )

        updated = await repo.update(event.id, title="Dentist")
        assert updated.title == "Dentist"

        await repo.delete(event.id)
        assert await repo.find_by_id(event.id) is None


class TestSqlFamilyRepository:
    async def test_families_in_join_order(self, session):
        """Test that the earliest membership comes first."""
        user_id = uuid.uuid4()
        later = await add_family(session, "Joneses", user_id, START)
        earlier = await add_family(session, "Smiths", user_id, START - timedelta(days=10))

        families = await SqlFamilyRepository(session).find_by_user_id(user_id)

        assert [f.id for f in families] == [earlier.id, later.id]

    async def test_no_membership(self, session):
        assert await SqlFamilyRepository(session).find_by_user_id(uuid.uuid4()) == []


class TestSqlAuditLogRepository:
    async def test_create(self, session):
        actor_id = uuid.uuid4()
        await SqlAuditLogRepository(session).create(
            AuditLogEntry(
                action=ACTION_SYNC,
                actor_id=actor_id,
                details={"events_added": 2, "status": "success"},
            )
        )

        (log,) = (await session.execute(select(AuditLog))).scalars().all()
        assert log.action == ACTION_SYNC
        assert log.actor_id == actor_id
        assert log.actor_type == "user"
        assert log.details == {"events_added": 2, "status": "success"}


class TestSyncWithSqlRepositories:
    """End-to-end sync through the SQL repositories."""

    async def test_sync_is_idempotent(
        self, session, providers, google, vault, state_codec, rate_limiter, clock
    ):
        user_id = uuid.uuid4()
        family = await add_family(session, "Smith", user_id, START)
        service = ExternalCalendarService(
            *build_sql_repositories(session),
            provider_factory=lambda provider: providers[provider],
            vault=vault,
            state_codec=state_codec,
            rate_limiter=rate_limiter,
        )

        callback = await service.handle_callback(
            "code", state_codec.generate(user_id), "google"
        )
        calendar_id = callback.value.connection_id
        soon = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=1)
        google.events = [
            make_external_event("Dentist", soon),
            make_external_event("Soccer", soon + timedelta(days=1)),
        ]

        first = await service.sync_calendar(user_id, calendar_id)
        clock.advance(300)
        second = await service.sync_calendar(user_id, calendar_id)

        assert first.value.events_added == 2
        assert (
            second.value.events_added,
            second.value.events_updated,
            second.value.events_removed,
        ) == (0, 0, 0)
        stored = await SqlEventRepository(session).find_by_family_id(family.id)
        assert sorted(e.title for e in stored) == ["Dentist", "Soccer"]
        assert all(e.is_synced and e.external_calendar_id == calendar_id for e in stored)


class TestConnection:
    async def test_init_create_and_close(self):
        await init_db("sqlite+aiosqlite:///:memory:")
        try:
            await create_tables()
            async with get_db() as session:
                assert await SqlFamilyRepository(session).find_by_user_id(uuid.uuid4()) == []
        finally:
            await close_db()

    async def test_get_db_requires_init(self):
        with pytest.raises(RuntimeError):
            async with get_db():
                pass
