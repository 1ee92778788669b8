"""Per-backend circuit breakers.

A breaker moves between three states:

    CLOSED    ->  OPEN       once ``failure_count`` reaches the threshold
    OPEN      ->  HALF_OPEN  when ``pre_check`` runs at or after ``resume_at``
    HALF_OPEN ->  CLOSED     when the probe succeeds
    HALF_OPEN ->  OPEN       when the probe fails (with a fresh ``resume_at``)

``state`` is whatever was last stored.  Nothing flips an OPEN breaker
except the dispatcher's next ``pre_check``, so status reports keep
showing OPEN after ``resume_at`` has passed.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from relay.core.clock import Clock, utc_now
from relay.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure gate for one backend.

    Args:
        name:               Backend the breaker guards.
        failure_threshold:  Failures that trip a CLOSED breaker.
        reset_timeout:      Seconds between tripping and the first probe.
        half_open_max:      Probes allowed in flight while HALF_OPEN.
        clock:              Source of the current UTC time.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max: int = 1,
        clock: Clock = utc_now,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max = half_open_max
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: datetime | None = None
        self._resume_at: datetime | None = None
        self._probes_in_flight = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def resume_at(self) -> datetime | None:
        """When an OPEN breaker will next let a probe through."""
        return self._resume_at

    async def pre_check(self) -> None:
        """Gate a call to the backend.

        Raises:
            CircuitOpenError: If the breaker is OPEN and ``resume_at`` is
                still ahead, or if HALF_OPEN already has its probes out.
        """
        async with self._lock:
            if self._state == CircuitState.OPEN:
                now = self._clock()
                if self._resume_at is not None and now < self._resume_at:
                    raise CircuitOpenError(self.name, (self._resume_at - now).total_seconds())
                self._enter_half_open()

            if self._state == CircuitState.HALF_OPEN:
                if self._probes_in_flight >= self.half_open_max:
                    raise CircuitOpenError(self.name, 0.0)
                self._probes_in_flight += 1

    def _enter_half_open(self) -> None:
        self._state = CircuitState.HALF_OPEN
        self._resume_at = None
        self._probes_in_flight = 0
        logger.info("Circuit breaker half-open for %s", self.name)

    async def on_success(self) -> None:
        """Close the breaker and forget every recorded failure."""
        async with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._probes_in_flight = 0
            self._last_failure_time = None
            self._resume_at = None

    async def on_failure(self) -> None:
        """Count a failure; trip the breaker on a failed probe or at the threshold."""
        async with self._lock:
            now = self._clock()
            self._failure_count += 1
            self._last_failure_time = now

            tripped = self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold
            if tripped:
                self._state = CircuitState.OPEN
                self._probes_in_flight = 0
                self._resume_at = now + timedelta(seconds=self.reset_timeout)
                logger.warning(
                    "Circuit breaker opened for %s after %d failure(s)",
                    self.name,
                    self._failure_count,
                )

    def release_probe(self) -> None:
        """Give back a HALF_OPEN slot whose call never produced an outcome.

        Used when the call is cancelled, so neither ``on_success`` nor
        ``on_failure`` will run for it.  No-op outside HALF_OPEN.
        """
        if self._state == CircuitState.HALF_OPEN and self._probes_in_flight > 0:
            self._probes_in_flight -= 1

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable view for ``/backends``."""
        return {
            "name": self.name,
            "state": self._state.value,
            "is_open": self.is_open,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_time.isoformat() if self._last_failure_time else None,
            "resume_at": self._resume_at.isoformat() if self._resume_at else None,
        }


class CircuitBreakerRegistry:
    """Lazily creates one ``CircuitBreaker`` per backend name, sharing config."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max: int = 1,
        clock: Clock = utc_now,
    ) -> None:
        self._threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._half_open_max = half_open_max
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, backend_name: str) -> CircuitBreaker:
        breaker = self._breakers.get(backend_name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=backend_name,
                failure_threshold=self._threshold,
                reset_timeout=self._reset_timeout,
                half_open_max=self._half_open_max,
                clock=self._clock,
            )
            self._breakers[backend_name] = breaker
        return breaker
