"""Database module for the family calendar.

This module provides:
- SQLAlchemy async database connection
- Family, event, external calendar and audit log models
- Encrypted storage for OAuth tokens
"""

from family_calendar.database.connection import (
    close_db,
    create_tables,
    get_db,
    get_db_session,
    init_db,
)
from family_calendar.database.encryption import TokenVault, get_token_vault
from family_calendar.database.models import (
    AuditLog,
    Base,
    CalendarProviderType,
    Event,
    EventType,
    ExternalCalendar,
    Family,
    FamilyMember,
)

__all__ = [
    # Connection
    "get_db",
    "get_db_session",
    "init_db",
    "close_db",
    "create_tables",
    # Encryption
    "TokenVault",
    "get_token_vault",
    # Models
    "Base",
    "CalendarProviderType",
    "EventType",
    "Family",
    "FamilyMember",
    "ExternalCalendar",
    "Event",
    "AuditLog",
]
