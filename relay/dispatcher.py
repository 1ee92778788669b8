"""Dispatcher — queue drain with retry rounds and backend fallback.

A single drain task pulls attempt ids from a FIFO queue.  Each attempt
gets up to ``max_attempts`` rounds; within a round every backend is tried
in priority order, skipping those whose circuit breaker is open.  The
first success ends the attempt.  Between failed rounds the drain sleeps
``min(initial_delay * multiplier**round, max_delay)``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass

from relay.activity_log import ActivityLog
from relay.backends.base import Backend, DeliveryResult
from relay.core.clock import Clock, utc_now
from relay.core.errors import (
    AllBackendsExhaustedError,
    BackendFailureError,
    BackendTimeoutError,
    CircuitOpenError,
)
from relay.ledger import AttemptLedger
from relay.models.message import Attempt, AttemptStatus
from relay.resilience.circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters between retry rounds (seconds)."""

    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0

    def delay_for(self, round_index: int) -> float:
        """Delay after failed round *round_index* (0-based), capped at ``max_delay``."""
        try:
            delay = self.initial_delay * (self.multiplier**round_index)
        except OverflowError:
            return self.max_delay
        return min(delay, self.max_delay)


@dataclass(frozen=True)
class QueueStatus:
    queue_length: int
    is_draining: bool


class Dispatcher:
    """Drains queued attempts against the configured backends.

    Args:
        ledger:          Attempt store (all mutations go through it).
        backends:        Backends in priority order.
        breakers:        Per-backend circuit breakers.
        activity_log:    Diagnostic log.
        retry_policy:    Backoff between rounds.
        backend_timeout: Optional per-call timeout in seconds (``None`` = none).
        clock:           Source of the current UTC time.
    """

    def __init__(
        self,
        ledger: AttemptLedger,
        backends: Sequence[Backend],
        breakers: CircuitBreakerRegistry,
        activity_log: ActivityLog,
        retry_policy: RetryPolicy | None = None,
        backend_timeout: float | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._ledger = ledger
        self._backends = list(backends)
        self._breakers = breakers
        self._log = activity_log
        self._retry_policy = retry_policy or RetryPolicy()
        self._backend_timeout = backend_timeout
        self._clock = clock

        self._queue: deque[str] = deque()
        self._drain_task: asyncio.Task | None = None
        self._draining = False

    # ── Queue ───────────────────────────────────────────────────────

    def enqueue(self, attempt_id: str) -> None:
        """Append *attempt_id* and make sure a drain is running."""
        self._queue.append(attempt_id)
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    def status(self) -> QueueStatus:
        return QueueStatus(queue_length=len(self._queue), is_draining=self._draining)

    async def wait_until_idle(self) -> None:
        """Wait until the queue is empty and no drain is running."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def _drain(self) -> None:
        self._draining = True
        try:
            while self._queue:
                attempt_id = self._queue.popleft()
                attempt = self._ledger.get(attempt_id)
                if attempt is None:
                    continue
                try:
                    await self.process(attempt)
                except Exception as exc:
                    logger.exception("Error processing attempt %s", attempt_id)
                    self._log.error("Error processing attempt", attempt_id=attempt_id, error=str(exc))
        finally:
            self._draining = False

    # ── Retry / fallback loop ───────────────────────────────────────

    async def process(self, attempt: Attempt) -> None:
        """Run every retry round for *attempt* until it is sent or exhausted."""
        attempt_id = attempt.id
        self._ledger.update(attempt_id, status=AttemptStatus.SENDING)
        rounds = attempt.max_attempts
        invoked_any = False

        for round_index in range(rounds):
            self._ledger.update(attempt_id, attempt_count=round_index + 1)

            for backend in self._backends:
                breaker = self._breakers.get(backend.name)
                try:
                    await breaker.pre_check()
                except CircuitOpenError:
                    self._log.warning(
                        "Circuit breaker open, skipping provider",
                        provider=backend.name,
                        attempt_id=attempt_id,
                    )
                    continue

                invoked_any = True
                self._log.info(
                    "Attempting to send message",
                    provider=backend.name,
                    attempt=round_index + 1,
                    attempt_id=attempt_id,
                )
                try:
                    result = await self._invoke(backend, attempt)
                except asyncio.CancelledError:
                    breaker.release_probe()
                    raise
                except Exception as exc:
                    await self._record_failure(attempt_id, backend.name, exc)
                    continue

                await breaker.on_success()
                self._ledger.update(
                    attempt_id,
                    status=AttemptStatus.SENT,
                    backend=backend.name,
                    backend_message_id=result.message_id,
                    sent_at=self._clock(),
                )
                self._log.info(
                    "Message sent successfully",
                    attempt_id=attempt_id,
                    provider=backend.name,
                    message_id=result.message_id,
                )
                return

            if round_index < rounds - 1:
                delay = self._retry_policy.delay_for(round_index)
                self._log.info(
                    "All providers failed, retrying after delay",
                    attempt_id=attempt_id,
                    delay=delay,
                    attempt=round_index + 1,
                )
                await asyncio.sleep(delay)

        changes = {"status": AttemptStatus.FAILED}
        if not invoked_any:
            changes["last_error"] = str(AllBackendsExhaustedError(attempt_id, rounds))
        self._ledger.update(attempt_id, **changes)
        self._log.error("Message failed after all retries", attempt_id=attempt_id, rounds=rounds)

    async def _invoke(self, backend: Backend, attempt: Attempt) -> DeliveryResult:
        """Call *backend*; a failed result is raised as ``BackendFailureError``."""
        if self._backend_timeout is None:
            result = await backend.send(attempt.message)
        else:
            try:
                result = await asyncio.wait_for(backend.send(attempt.message), timeout=self._backend_timeout)
            except TimeoutError:
                raise BackendTimeoutError(backend.name, self._backend_timeout) from None

        if not result.success:
            raise BackendFailureError(backend.name, result.reason or "unknown failure")
        return result

    async def _record_failure(self, attempt_id: str, backend_name: str, exc: Exception) -> None:
        reason = exc.reason if isinstance(exc, BackendFailureError) and exc.reason else str(exc) or type(exc).__name__
        self._log.error(
            "Provider failed to send message",
            provider=backend_name,
            attempt_id=attempt_id,
            error=reason,
        )
        await self._breakers.get(backend_name).on_failure()
        self._ledger.update(attempt_id, last_error=reason)
