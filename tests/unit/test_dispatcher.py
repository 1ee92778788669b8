"""Tests for the retry/fallback dispatcher.

Covers:
- Fallback across backends within a round
- Retry rounds with capped exponential backoff
- Circuit breaker integration (skip open backends)
- Optional per-call timeout
- Drain loop FIFO order and isolation of per-attempt errors
"""

from __future__ import annotations

import asyncio

import pytest

from relay.activity_log import ActivityLog
from relay.dispatcher import Dispatcher, RetryPolicy
from relay.events import EventNotifier
from relay.ledger import AttemptLedger
from relay.models.message import AttemptStatus
from relay.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from tests.fakes import FakeClock, ScriptedBackend, make_message

FAST_RETRY = RetryPolicy(initial_delay=0.001, max_delay=0.003, multiplier=2.0)


class Harness:
    """Dispatcher wired to an in-memory ledger for direct inspection."""

    def __init__(self, backends, *, threshold=10, timeout=None, max_attempts=3):
        self.clock = FakeClock()
        self.log = ActivityLog(clock=self.clock)
        self.ledger = AttemptLedger(EventNotifier(self.log), clock=self.clock)
        self.breakers = CircuitBreakerRegistry(failure_threshold=threshold, reset_timeout=60.0, clock=self.clock)
        self.max_attempts = max_attempts
        self.dispatcher = Dispatcher(
            self.ledger,
            backends,
            self.breakers,
            self.log,
            retry_policy=FAST_RETRY,
            backend_timeout=timeout,
            clock=self.clock,
        )

    def queue(self, **message_fields) -> str:
        attempt = self.ledger.create(make_message(**message_fields), self.max_attempts)
        self.ledger.update(attempt.id, status=AttemptStatus.QUEUED)
        return attempt.id

    async def run(self, **message_fields):
        attempt_id = self.queue(**message_fields)
        await self.dispatcher.process(self.ledger.get(attempt_id))
        return self.ledger.get(attempt_id)

    def messages(self, text: str) -> list:
        return [e for e in self.log.entries() if e.message == text]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# RetryPolicy
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestRetryPolicy:
    def test_exponential_growth(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=100.0, multiplier=2.0)
        assert [policy.delay_for(i) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=10.0, multiplier=2.0)
        assert policy.delay_for(3) == 8.0
        assert policy.delay_for(4) == 10.0
        assert policy.delay_for(50) == 10.0

    def test_huge_round_index_does_not_overflow(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=10.0, multiplier=2.0)
        assert policy.delay_for(5000) == 10.0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Fallback + retry
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestFallback:
    async def test_first_backend_success_stops_processing(self):
        a, b = ScriptedBackend("a"), ScriptedBackend("b")
        h = Harness([a, b])
        attempt = await h.run()
        assert attempt.status == AttemptStatus.SENT
        assert attempt.backend == "a"
        assert attempt.backend_message_id == "a-msg-1"
        assert attempt.sent_at == h.clock.now
        assert attempt.attempt_count == 1
        assert b.calls == 0

    async def test_falls_back_when_first_backend_raises(self):
        a, b = ScriptedBackend("a", default="raise"), ScriptedBackend("b")
        h = Harness([a, b])
        attempt = await h.run()
        assert attempt.status == AttemptStatus.SENT
        assert attempt.backend == "b"
        assert attempt.last_error == "a unreachable"
        assert h.breakers.get("a").failure_count == 1
        assert h.breakers.get("b").failure_count == 0

    async def test_failed_result_is_treated_as_failure(self):
        a, b = ScriptedBackend("a", default="fail"), ScriptedBackend("b")
        h = Harness([a, b])
        attempt = await h.run()
        assert attempt.backend == "b"
        assert attempt.last_error == "a rejected"

    async def test_success_resets_backend_breaker(self):
        a = ScriptedBackend("a", outcomes=["raise", "raise"])
        h = Harness([a], max_attempts=3)
        attempt = await h.run()
        assert attempt.status == AttemptStatus.SENT
        assert attempt.attempt_count == 3
        assert h.breakers.get("a").failure_count == 0


class TestRetryRounds:
    async def test_exhaustion_marks_failed(self):
        a, b = ScriptedBackend("a", default="raise"), ScriptedBackend("b", default="raise")
        h = Harness([a, b], max_attempts=3)
        attempt = await h.run()
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.attempt_count == 3
        assert attempt.last_error == "b unreachable"
        assert (a.calls, b.calls) == (3, 3)
        assert len(h.messages("Message failed after all retries")) == 1

    async def test_recovers_in_later_round(self):
        a = ScriptedBackend("a", default="ok", outcomes=["raise", "raise"])
        b = ScriptedBackend("b", default="raise")
        h = Harness([a, b], max_attempts=3)
        attempt = await h.run()
        assert attempt.status == AttemptStatus.SENT
        assert attempt.backend == "a"
        assert attempt.attempt_count == 3

    async def test_backoff_between_rounds_is_capped(self):
        a = ScriptedBackend("a", default="raise")
        h = Harness([a], max_attempts=4)
        await h.run()
        delays = [e.context["delay"] for e in h.messages("All providers failed, retrying after delay")]
        # No sleep after the last round.
        assert delays == [0.001, 0.002, 0.003]


class TestCircuitBreakerIntegration:
    async def test_open_backend_is_skipped(self):
        a, b = ScriptedBackend("a", default="raise"), ScriptedBackend("b", default="raise")
        h = Harness([a, b], threshold=1, max_attempts=3)
        attempt = await h.run()
        assert attempt.status == AttemptStatus.FAILED
        # Both trip on round 1 and are skipped afterwards.
        assert (a.calls, b.calls) == (1, 1)
        assert len(h.messages("Circuit breaker open, skipping provider")) == 4

    async def test_all_breakers_open_records_exhaustion(self):
        a = ScriptedBackend("a")
        h = Harness([a], threshold=1, max_attempts=2)
        await h.breakers.get("a").on_failure()
        attempt = await h.run()
        assert attempt.status == AttemptStatus.FAILED
        assert a.calls == 0
        assert "All backends exhausted" in attempt.last_error

    async def test_probe_after_reset_interval(self):
        a = ScriptedBackend("a")
        h = Harness([a], threshold=1, max_attempts=1)
        await h.breakers.get("a").on_failure()
        h.clock.advance(60)
        attempt = await h.run()
        assert attempt.status == AttemptStatus.SENT
        assert h.breakers.get("a").failure_count == 0
        assert not h.breakers.get("a").is_open

    async def test_cancelled_probe_frees_half_open_slot(self):
        slow = ScriptedBackend("slow", delay=10)
        h = Harness([slow], threshold=1, max_attempts=1)
        breaker = h.breakers.get("slow")
        await breaker.on_failure()
        h.clock.advance(60)

        attempt_id = h.queue()
        task = asyncio.create_task(h.dispatcher.process(h.ledger.get(attempt_id)))
        await asyncio.sleep(0.01)
        assert breaker.state == CircuitState.HALF_OPEN

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # The slot is free again, so a new probe is admitted.
        await breaker.pre_check()


class TestBackendTimeout:
    async def test_slow_backend_times_out_and_falls_back(self):
        slow = ScriptedBackend("slow", delay=0.5)
        fast = ScriptedBackend("fast")
        h = Harness([slow, fast], timeout=0.01)
        attempt = await h.run()
        assert attempt.backend == "fast"
        assert attempt.last_error == "timed out after 0.01s"
        assert h.breakers.get("slow").failure_count == 1

    async def test_no_timeout_by_default(self):
        slow = ScriptedBackend("slow", delay=0.02)
        h = Harness([slow])
        attempt = await h.run()
        assert attempt.backend == "slow"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Drain loop
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestDrain:
    async def test_processes_in_fifo_order(self):
        a = ScriptedBackend("a", delay=0.001)
        h = Harness([a])
        for name in ("first", "second", "third"):
            h.dispatcher.enqueue(h.queue(recipient=f"{name}@example.com"))
        await h.dispatcher.wait_until_idle()
        assert [m.recipient for m in a.sent] == ["first@example.com", "second@example.com", "third@example.com"]

    async def test_continues_after_failed_attempt(self):
        a = ScriptedBackend("a", outcomes=["raise"])
        h = Harness([a], max_attempts=1)
        failed_id = h.queue(recipient="first@example.com")
        sent_id = h.queue(recipient="second@example.com")
        h.dispatcher.enqueue(failed_id)
        h.dispatcher.enqueue(sent_id)
        await h.dispatcher.wait_until_idle()
        assert h.ledger.get(failed_id).status == AttemptStatus.FAILED
        assert h.ledger.get(sent_id).status == AttemptStatus.SENT

    async def test_processing_error_does_not_stop_drain(self):
        a = ScriptedBackend("a")
        h = Harness([a])
        finalized = h.queue(recipient="first@example.com")
        h.ledger.update(finalized, status=AttemptStatus.FAILED)
        pending = h.queue(recipient="second@example.com")
        h.dispatcher.enqueue(finalized)
        h.dispatcher.enqueue(pending)
        await h.dispatcher.wait_until_idle()
        assert h.ledger.get(pending).status == AttemptStatus.SENT
        assert len(h.messages("Error processing attempt")) == 1

    async def test_queue_status_while_draining(self):
        a = ScriptedBackend("a", delay=0.05)
        h = Harness([a])
        h.dispatcher.enqueue(h.queue(recipient="first@example.com"))
        h.dispatcher.enqueue(h.queue(recipient="second@example.com"))
        await asyncio.sleep(0.01)

        status = h.dispatcher.status()
        assert status.is_draining is True
        assert status.queue_length == 1

        await h.dispatcher.wait_until_idle()
        status = h.dispatcher.status()
        assert status.is_draining is False
        assert status.queue_length == 0

    async def test_enqueue_while_draining_reuses_drain(self):
        a = ScriptedBackend("a", delay=0.01)
        h = Harness([a])
        h.dispatcher.enqueue(h.queue(recipient="first@example.com"))
        await asyncio.sleep(0.001)
        task = h.dispatcher._drain_task
        h.dispatcher.enqueue(h.queue(recipient="second@example.com"))
        assert h.dispatcher._drain_task is task
        await h.dispatcher.wait_until_idle()
        assert a.calls == 2
