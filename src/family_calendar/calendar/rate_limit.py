"""Per-connection sync cooldown.

A connection may be synced at most once per cooldown window (5 minutes by
default). Checking and recording are separate steps: the orchestrator checks
before doing any work and records as soon as the attempt is about to reach
the provider. An attempt that fails after that point still counts, so a
failing sync cannot be retried against the provider without limit.

Recording also drops entries whose cooldown has passed, which keeps the
shared instance from growing with every connection ever synced.

State is in-process. One limiter instance must be shared by every request
that can sync (the API keeps it on ``app.state``).
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from typing import Callable

from family_calendar.errors import Err, Ok, RateLimitError, Result

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 300


class SyncRateLimiter:
    """Tracks the last sync time of each connection.

    Args:
        cooldown_seconds: Minimum time between two syncs of one connection
        clock: Monotonic time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._last_sync: dict[uuid.UUID, float] = {}

    def check_sync_rate_limit(
        self, connection_id: uuid.UUID
    ) -> Result[None, RateLimitError]:
        """Check whether a connection may be synced now. Does not record."""
        last = self._last_sync.get(connection_id)
        if last is None:
            return Ok(None)

        remaining = self.cooldown_seconds - (self._clock() - last)
        if remaining <= 0:
            return Ok(None)

        retry_after = math.ceil(remaining)
        logger.debug(f"Sync of {connection_id} rate limited for {retry_after}s")
        return Err(
            RateLimitError(
                f"Calendar was synced recently. Try again in {retry_after} seconds.",
                retry_after=retry_after,
            )
        )

    def record_sync(self, connection_id: uuid.UUID) -> None:
        """Start the cooldown for a connection."""
        self.clear_expired()
        self._last_sync[connection_id] = self._clock()

    def clear(self, connection_id: uuid.UUID) -> None:
        """Forget a connection (e.g. after it was disconnected)."""
        self._last_sync.pop(connection_id, None)

    def clear_expired(self) -> int:
        """Drop entries whose cooldown has passed.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [
            connection_id
            for connection_id, last in self._last_sync.items()
            if now - last >= self.cooldown_seconds
        ]
        for connection_id in expired:
            del self._last_sync[connection_id]
        return len(expired)

    def __len__(self) -> int:
        return len(self._last_sync)
