"""RelayEngine — the dispatch engine context.

Owns the ledger, circuit breakers, rate limiter, dispatcher, event
notifier and activity log for one engine instance, and exposes the
submission, query and observability APIs.  Nothing is module-global, so
independent engines can coexist (e.g. one per test).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from relay.activity_log import ActivityLog, LogEntry
from relay.backends.base import Backend
from relay.core.clock import Clock, utc_now
from relay.core.config import Settings
from relay.core.errors import RateLimitExceededError
from relay.dispatcher import Dispatcher, QueueStatus, RetryPolicy
from relay.events import AttemptHandler, EventKind, EventNotifier
from relay.ledger import AttemptLedger
from relay.models.message import Attempt, AttemptStatus, Message
from relay.resilience.circuit_breaker import CircuitBreakerRegistry
from relay.resilience.rate_limiter import RateLimiter, RateLimitStatus

logger = logging.getLogger(__name__)


class BackendHealth(str, Enum):
    """Health derived from a backend's circuit breaker."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass(frozen=True)
class BackendStatus:
    name: str
    health: BackendHealth
    breaker: dict


class RelayEngine:
    """Resilient multi-backend message dispatcher.

    Args:
        backends:             Backends in priority order.
        max_attempts:         Retry rounds per attempt.
        retry_policy:         Backoff between rounds.
        failure_threshold:    Breaker failures before OPEN.
        reset_timeout:        Seconds an OPEN breaker waits before probing.
        rate_limit:           Admissions per rate-limit window.
        rate_window_seconds:  Rate-limit window length.
        dedup_window_seconds: Idempotency window.
        activity_log_size:    Activity log retention.
        backend_timeout:      Optional per-call timeout (``None`` = none).
        clock:                Source of the current UTC time.
    """

    def __init__(
        self,
        backends: Sequence[Backend],
        *,
        max_attempts: int = 3,
        retry_policy: RetryPolicy | None = None,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        rate_limit: int = 100,
        rate_window_seconds: float = 60.0,
        dedup_window_seconds: float = 300.0,
        activity_log_size: int = 100,
        backend_timeout: float | None = None,
        clock: Clock = utc_now,
    ) -> None:
        names = [b.name for b in backends]
        if len(set(names)) != len(names):
            raise ValueError(f"Backend names must be unique: {names}")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.max_attempts = max_attempts
        self._backends = list(backends)
        self._clock = clock

        self._activity_log = ActivityLog(max_entries=activity_log_size, clock=clock)
        self._notifier = EventNotifier(self._activity_log)
        self._ledger = AttemptLedger(self._notifier, dedup_window_seconds=dedup_window_seconds, clock=clock)
        self._breakers = CircuitBreakerRegistry(
            failure_threshold=failure_threshold,
            reset_timeout=reset_timeout,
            clock=clock,
        )
        for name in names:
            self._breakers.get(name)
        self._rate_limiter = RateLimiter(limit=rate_limit, window_seconds=rate_window_seconds, clock=clock)
        self._dispatcher = Dispatcher(
            self._ledger,
            self._backends,
            self._breakers,
            self._activity_log,
            retry_policy=retry_policy,
            backend_timeout=backend_timeout,
            clock=clock,
        )

        self._activity_log.info("Relay engine initialized", providers=names, max_attempts=max_attempts)

    @classmethod
    def from_settings(cls, settings: Settings, backends: Sequence[Backend], clock: Clock = utc_now) -> RelayEngine:
        """Build an engine from ``Settings``."""
        return cls(
            backends,
            max_attempts=settings.MAX_ATTEMPTS,
            retry_policy=RetryPolicy(
                initial_delay=settings.INITIAL_DELAY_SECONDS,
                max_delay=settings.MAX_DELAY_SECONDS,
                multiplier=settings.BACKOFF_MULTIPLIER,
            ),
            failure_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
            reset_timeout=settings.CIRCUIT_BREAKER_RESET_SECONDS,
            rate_limit=settings.RATE_LIMIT_PER_WINDOW,
            rate_window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            dedup_window_seconds=settings.DEDUP_WINDOW_SECONDS,
            activity_log_size=settings.ACTIVITY_LOG_SIZE,
            backend_timeout=settings.BACKEND_TIMEOUT_SECONDS,
            clock=clock,
        )

    # ── Submission ──────────────────────────────────────────────────

    async def submit(self, message: Message) -> str:
        """Queue *message* for delivery and return its attempt id.

        Returns the existing id when an identical message is still live
        inside the dedup window.  Does not wait for delivery.

        Raises:
            RateLimitExceededError: If the admission window is full.  The
                attempt is kept with status ``rate_limited``.
        """
        existing = self._ledger.find_duplicate(message)
        if existing is not None:
            self._activity_log.warning("Duplicate message detected", existing_id=existing.id)
            return existing.id

        attempt = self._ledger.create(message, self.max_attempts)

        if not await self._rate_limiter.admit():
            self._ledger.update(
                attempt.id,
                status=AttemptStatus.RATE_LIMITED,
                last_error="Rate limit exceeded",
            )
            self._activity_log.warning("Rate limit exceeded", attempt_id=attempt.id)
            raise RateLimitExceededError(attempt.id, self._rate_limiter.limit)

        self._ledger.update(attempt.id, status=AttemptStatus.QUEUED)
        self._activity_log.info("Message queued for sending", attempt_id=attempt.id, to=message.recipient)
        self._dispatcher.enqueue(attempt.id)
        return attempt.id

    # ── Queries ─────────────────────────────────────────────────────

    def get_attempt(self, attempt_id: str) -> Attempt | None:
        return self._ledger.get(attempt_id)

    def list_attempts(self) -> list[Attempt]:
        """All attempts, most recent first."""
        return self._ledger.list_all()

    def get_backend_status(self) -> list[BackendStatus]:
        statuses = []
        for backend in self._backends:
            breaker = self._breakers.get(backend.name)
            if breaker.is_open:
                health = BackendHealth.FAILED
            elif breaker.failure_count > 0:
                health = BackendHealth.DEGRADED
            else:
                health = BackendHealth.HEALTHY
            statuses.append(BackendStatus(name=backend.name, health=health, breaker=breaker.snapshot()))
        return statuses

    def get_queue_status(self) -> QueueStatus:
        return self._dispatcher.status()

    def get_rate_limit_status(self) -> RateLimitStatus:
        return self._rate_limiter.status()

    # ── Observability ───────────────────────────────────────────────

    def subscribe(self, kind: EventKind, handler: AttemptHandler) -> None:
        self._notifier.subscribe(kind, handler)

    def unsubscribe(self, kind: EventKind, handler: AttemptHandler) -> None:
        self._notifier.unsubscribe(kind, handler)

    def get_activity_log(self) -> list[LogEntry]:
        return self._activity_log.entries()

    def clear_activity_log(self) -> None:
        self._activity_log.clear()

    # ── Lifecycle ───────────────────────────────────────────────────

    @property
    def circuit_breakers(self) -> CircuitBreakerRegistry:
        """Expose circuit breaker registry for status endpoints and tests."""
        return self._breakers

    async def wait_until_idle(self) -> None:
        """Wait for the current drain (and anything it picks up) to finish."""
        await self._dispatcher.wait_until_idle()

    async def aclose(self) -> None:
        """Finish queued work, then close backends that hold resources."""
        await self.wait_until_idle()
        for backend in self._backends:
            close = getattr(backend, "aclose", None)
            if close is not None:
                await close()
        logger.info("Relay engine closed")
