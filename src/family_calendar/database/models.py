"""Database models for the family calendar.

## Security Notes

- OAuth tokens are encrypted at rest using Fernet symmetric encryption
- The encryption key is derived from the application secret
- Encryption happens in the service layer, never in the database
- PostgreSQL should be configured with SSL and disk encryption

## Schema Overview

```
families
├── family_members (1:N) - user_id from the identity provider
├── events (1:N)
│   └── external_calendar_id -> external_calendars (synced events only)
external_calendars - one row per (user, provider, account email), encrypted tokens
audit_logs - append-only action log
```
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


class CalendarProviderType(str, Enum):
    """Supported external calendar providers."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"


class EventType(str, Enum):
    """Scheduling weight of an event."""

    ELASTIC = "elastic"  # Informational, does not block time
    BLOCKER = "blocker"


class Family(Base):
    """A family whose members share one calendar."""

    __tablename__ = "families"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    members: Mapped[list["FamilyMember"]] = relationship(
        back_populates="family", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Family {self.name}>"


class FamilyMember(Base):
    """Membership of a user in a family."""

    __tablename__ = "family_members"

    family_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("families.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    role: Mapped[str] = mapped_column(String(16), default="member")  # admin, member
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    family: Mapped["Family"] = relationship(back_populates="members")

    __table_args__ = (Index("ix_family_members_user", "user_id"),)


class ExternalCalendar(Base):
    """A linked external calendar account.

    At most one row exists per (user, provider, account email). Tokens are
    stored encrypted; see `family_calendar.database.encryption`.
    """

    __tablename__ = "external_calendars"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    account_email: Mapped[str] = mapped_column(String(255), nullable=False)

    # Tokens (encrypted)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Sync state
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    synced_events: Mapped[list["Event"]] = relationship(
        back_populates="external_calendar", passive_deletes=True
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "account_email", name="uq_user_provider_account"
        ),
        Index("ix_external_calendars_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<ExternalCalendar {self.provider}:{self.account_email}>"


class Event(Base):
    """A family calendar event.

    Events created by calendar sync have ``is_synced`` set and reference the
    connection that produced them. Locally authored events have neither.
    """

    __tablename__ = "events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    family_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("families.id", ondelete="CASCADE")
    )

    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(512))

    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_all_day: Mapped[bool] = mapped_column(Boolean, default=False)
    event_type: Mapped[str] = mapped_column(String(16), default=EventType.BLOCKER.value)

    # Sync tagging
    is_synced: Mapped[bool] = mapped_column(Boolean, default=False)
    external_calendar_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("external_calendars.id", ondelete="CASCADE")
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    external_calendar: Mapped["ExternalCalendar | None"] = relationship(
        back_populates="synced_events"
    )

    __table_args__ = (
        Index("ix_events_family_time", "family_id", "start_time"),
        Index("ix_events_external_calendar", "external_calendar_id"),
    )

    def __repr__(self) -> str:
        return f"<Event {self.title[:30]}>"


class AuditLog(Base):
    """Append-only record of state-changing actions."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    family_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    actor_type: Mapped[str] = mapped_column(String(16), default="user")  # user, system
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (Index("ix_audit_logs_action", "action", "created_at"),)

    def __repr__(self) -> str:
        return f"<AuditLog {self.action}>"
