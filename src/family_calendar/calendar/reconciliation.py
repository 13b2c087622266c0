"""Reconciliation of fetched external events against stored synced events.

## Matching

Providers' event ids are not stored, so events are matched by content:

    key = (normalized title, UTC start, UTC end)

where the normalized title has runs of whitespace collapsed and is
case-folded. Matching on the exact title would turn a provider that merely
re-cases or re-spaces a title into a delete plus a create; with the
normalized title it becomes an update of the same local event, which keeps
the event id stable. Keys are compared as a multiset, so two identical
external events map to two stored events one-to-one.

## Plan

For each external event, in order:
1. If an unconsumed stored event has the same key, consume it. Schedule an
   update if title, start, end or all-day flag differ exactly (e.g. only the
   title's case changed).
2. Otherwise schedule a create.

Stored synced events left unconsumed are scheduled for deletion. Events not
created by this connection are never passed in and never touched.

An event whose title and time both change upstream therefore shows up as one
deletion plus one creation.

## Example

```python
plan = plan_reconciliation(fetched, stored)
counts = await apply_reconciliation(plan, event_repo, family_id, connection_id)
```
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from family_calendar.database.models import Event, EventType
from family_calendar.providers.base import ExternalEvent
from family_calendar.repositories.base import EventRepository

logger = logging.getLogger(__name__)

MatchKey = tuple[str, datetime, datetime]


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_title(title: str) -> str:
    return " ".join(title.split()).casefold()


def match_key(title: str, start: datetime, end: datetime) -> MatchKey:
    """Content key used to pair an external event with a stored one."""
    return (normalize_title(title), to_utc(start), to_utc(end))


@dataclass
class EventUpdate:
    """Field changes for one stored event."""

    event_id: uuid.UUID
    changes: dict[str, Any]


@dataclass
class ReconciliationPlan:
    """Writes needed to make stored synced events mirror the external ones."""

    to_create: list[ExternalEvent] = field(default_factory=list)
    to_update: list[EventUpdate] = field(default_factory=list)
    to_delete: list[uuid.UUID] = field(default_factory=list)
    unchanged: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)


@dataclass
class ReconciliationCounts:
    added: int = 0
    updated: int = 0
    removed: int = 0


def _diff(stored: Event, external: ExternalEvent) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    if stored.title != external.title:
        changes["title"] = external.title
    if to_utc(stored.start_time) != to_utc(external.start_time):
        changes["start_time"] = external.start_time
    if to_utc(stored.end_time) != to_utc(external.end_time):
        changes["end_time"] = external.end_time
    if bool(stored.is_all_day) != external.is_all_day:
        changes["is_all_day"] = external.is_all_day
    return changes


def plan_reconciliation(
    external_events: Iterable[ExternalEvent],
    existing_synced: Iterable[Event],
) -> ReconciliationPlan:
    """Compute the writes for one reconciliation pass. Performs no I/O."""
    unmatched: dict[MatchKey, deque[Event]] = defaultdict(deque)
    for event in existing_synced:
        unmatched[match_key(event.title, event.start_time, event.end_time)].append(event)

    plan = ReconciliationPlan()
    for external in external_events:
        key = match_key(external.title, external.start_time, external.end_time)
        candidates = unmatched.get(key)
        if not candidates:
            plan.to_create.append(external)
            continue

        stored = candidates.popleft()
        changes = _diff(stored, external)
        if changes:
            plan.to_update.append(EventUpdate(event_id=stored.id, changes=changes))
        else:
            plan.unchanged += 1

    for leftovers in unmatched.values():
        plan.to_delete.extend(event.id for event in leftovers)

    return plan


async def apply_reconciliation(
    plan: ReconciliationPlan,
    event_repo: EventRepository,
    family_id: uuid.UUID,
    connection_id: uuid.UUID,
) -> ReconciliationCounts:
    """Perform the writes of a plan.

    Writes are not transactional; if one fails, earlier writes stand and the
    next pass converges.
    """
    counts = ReconciliationCounts()

    for external in plan.to_create:
        await event_repo.create(
            family_id=family_id,
            title=external.title,
            start_time=external.start_time,
            end_time=external.end_time,
            is_all_day=external.is_all_day,
            event_type=EventType.ELASTIC.value,
            description=external.description,
            location=external.location,
            is_synced=True,
            external_calendar_id=connection_id,
        )
        counts.added += 1

    for update in plan.to_update:
        await event_repo.update(update.event_id, **update.changes)
        counts.updated += 1

    for event_id in plan.to_delete:
        await event_repo.delete(event_id)
        counts.removed += 1

    return counts


async def reconcile_events(
    external_events: list[ExternalEvent],
    event_repo: EventRepository,
    family_id: uuid.UUID,
    connection_id: uuid.UUID,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
) -> ReconciliationCounts:
    """Reconcile a connection's stored events with freshly fetched ones.

    Only stored events synced from ``connection_id`` and overlapping the
    fetch window take part, so events outside the window are kept.
    """
    family_events = await event_repo.find_by_family_id(
        family_id, start=window_start, end=window_end
    )
    existing = [
        event
        for event in family_events
        if event.is_synced and event.external_calendar_id == connection_id
    ]

    plan = plan_reconciliation(external_events, existing)
    if plan.is_empty:
        logger.debug(
            f"Events of {connection_id} already up to date ({plan.unchanged} unchanged)"
        )
        return ReconciliationCounts()

    counts = await apply_reconciliation(plan, event_repo, family_id, connection_id)

    logger.debug(
        f"Reconciled {len(external_events)} external events for {connection_id}: "
        f"{counts.added} added, {counts.updated} updated, "
        f"{counts.removed} removed, {plan.unchanged} unchanged"
    )
    return counts
