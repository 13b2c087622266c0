"""Storage interfaces and their SQL and in-memory implementations."""

from family_calendar.repositories.base import (
    AuditLogEntry,
    AuditLogRepository,
    EventRepository,
    ExternalCalendarRepository,
    FamilyRepository,
)
from family_calendar.repositories.memory import (
    InMemoryAuditLogRepository,
    InMemoryEventRepository,
    InMemoryExternalCalendarRepository,
    InMemoryFamilyRepository,
)
from family_calendar.repositories.sql import (
    SqlAuditLogRepository,
    SqlEventRepository,
    SqlExternalCalendarRepository,
    SqlFamilyRepository,
    build_sql_repositories,
)

__all__ = [
    # Interfaces
    "AuditLogEntry",
    "AuditLogRepository",
    "EventRepository",
    "ExternalCalendarRepository",
    "FamilyRepository",
    # SQL
    "SqlAuditLogRepository",
    "SqlEventRepository",
    "SqlExternalCalendarRepository",
    "SqlFamilyRepository",
    "build_sql_repositories",
    # In-memory
    "InMemoryAuditLogRepository",
    "InMemoryEventRepository",
    "InMemoryExternalCalendarRepository",
    "InMemoryFamilyRepository",
]
