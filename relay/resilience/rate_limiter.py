"""Fixed-window admission limiter.

A single counter bounds how many submissions are admitted per window.
The window resets lazily: whenever the limiter is read or written after
``window_reset_time``, the count drops to zero and the next window ends
``window_seconds`` from *now*.  This is a fixed window, not a sliding
log, so a burst straddling a reset can admit up to ``2 * limit``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from relay.core.clock import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitStatus:
    """Point-in-time view of the limiter.

    Attributes:
        admitted_count:    Admissions in the current window.
        limit:             Admissions allowed per window.
        window_reset_time: When the current window expires (UTC).
    """

    admitted_count: int
    limit: int
    window_reset_time: datetime


class RateLimiter:
    """In-memory fixed-window rate limiter."""

    def __init__(self, limit: int = 100, window_seconds: float = 60.0, clock: Clock = utc_now) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._count = 0
        self._reset_time = clock() + timedelta(seconds=window_seconds)
        self._lock = asyncio.Lock()

    def _roll_window(self) -> None:
        now = self._clock()
        if now >= self._reset_time:
            self._count = 0
            self._reset_time = now + timedelta(seconds=self.window_seconds)

    async def admit(self) -> bool:
        """Consume one admission; return ``False`` if the window is full."""
        async with self._lock:
            self._roll_window()
            if self._count >= self.limit:
                logger.debug("Admission denied (%d/%d)", self._count, self.limit)
                return False
            self._count += 1
            return True

    def status(self) -> RateLimitStatus:
        self._roll_window()
        return RateLimitStatus(
            admitted_count=self._count,
            limit=self.limit,
            window_reset_time=self._reset_time,
        )
