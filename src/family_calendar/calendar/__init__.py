"""External calendar synchronization.

Pulls events from connected Google and Microsoft calendars into the family
calendar and keeps them current without duplicating them.

## Components

- `ExternalCalendarService`: OAuth connect/disconnect and sync orchestration
- `reconcile_events`: content-keyed reconciliation of fetched vs stored events
- `SyncRateLimiter`: per-connection sync cooldown

## Sync Modes

- **manual**: the user syncs one or all connections from the UI
- **scheduled**: an external scheduler runs `family-calendar sync`

Push notifications (webhooks) are not supported.
"""

from family_calendar.calendar.rate_limit import SyncRateLimiter
from family_calendar.calendar.reconciliation import (
    ReconciliationCounts,
    ReconciliationPlan,
    apply_reconciliation,
    match_key,
    plan_reconciliation,
    reconcile_events,
)
from family_calendar.calendar.service import (
    AuthorizationRequest,
    CallbackResult,
    ExternalCalendarService,
    ExternalCalendarSummary,
    FamilyLocks,
    SyncResult,
)

__all__ = [
    "ExternalCalendarService",
    "ExternalCalendarSummary",
    "AuthorizationRequest",
    "CallbackResult",
    "SyncResult",
    "FamilyLocks",
    "SyncRateLimiter",
    "ReconciliationCounts",
    "ReconciliationPlan",
    "apply_reconciliation",
    "match_key",
    "plan_reconciliation",
    "reconcile_events",
]
