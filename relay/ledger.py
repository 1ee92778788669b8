"""Attempt ledger — the authoritative record of every submitted message.

Owns the id → ``Attempt`` mapping, enforces the terminal-status rule on
mutation, publishes a lifecycle event for every insert/update, and
answers the idempotency check through an index keyed by
``(recipient, subject, body)``.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from relay.core.clock import Clock, utc_now
from relay.core.errors import AttemptFinalizedError
from relay.events import EventKind, EventNotifier
from relay.models.message import Attempt, AttemptStatus, Message, new_attempt_id

_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "attempt_count",
        "sent_at",
        "backend",
        "backend_message_id",
        "last_error",
    }
)

# A failed attempt never absorbs a resubmission.
_NON_DEDUP_STATUSES = frozenset({AttemptStatus.FAILED})


class AttemptLedger:
    """In-memory store of attempts, in insertion order.

    Args:
        notifier:             Receives ``created``/``updated`` events.
        dedup_window_seconds: Age below which an identical message is a duplicate.
        clock:                Source of the current UTC time.
    """

    def __init__(
        self,
        notifier: EventNotifier,
        dedup_window_seconds: float = 300.0,
        clock: Clock = utc_now,
    ) -> None:
        self._notifier = notifier
        self._dedup_window = timedelta(seconds=dedup_window_seconds)
        self._clock = clock
        self._attempts: dict[str, Attempt] = {}
        self._dedup_index: dict[tuple[str, str, str], list[str]] = {}

    def __len__(self) -> int:
        return len(self._attempts)

    def __contains__(self, attempt_id: object) -> bool:
        return attempt_id in self._attempts

    # ── Idempotency ─────────────────────────────────────────────────

    def find_duplicate(self, message: Message) -> Attempt | None:
        """Return a live attempt for the same message inside the dedup window."""
        now = self._clock()
        for attempt_id in self._dedup_index.get(message.dedup_key, ()):
            attempt = self._attempts[attempt_id]
            if attempt.status in _NON_DEDUP_STATUSES:
                continue
            if now - attempt.created_at < self._dedup_window:
                return attempt.snapshot()
        return None

    # ── Mutation ────────────────────────────────────────────────────

    def create(self, message: Message, max_attempts: int) -> Attempt:
        """Insert a new ``pending`` attempt and publish ``created``."""
        now = self._clock()
        attempt = Attempt(
            id=new_attempt_id(),
            message=message,
            status=AttemptStatus.PENDING,
            max_attempts=max_attempts,
            created_at=now,
            updated_at=now,
        )
        self._attempts[attempt.id] = attempt
        self._dedup_index.setdefault(message.dedup_key, []).append(attempt.id)
        self._notifier.publish(EventKind.CREATED, attempt)
        return attempt.snapshot()

    def update(self, attempt_id: str, **changes: Any) -> Attempt:
        """Apply *changes* to an attempt and publish ``updated``.

        Raises:
            KeyError: If *attempt_id* is unknown.
            AttemptFinalizedError: If the attempt is already terminal.
            ValueError: If a change names a field that is not mutable.
        """
        attempt = self._attempts[attempt_id]
        if attempt.status.is_terminal:
            raise AttemptFinalizedError(attempt_id, attempt.status.value)

        unknown = set(changes) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update attempt fields: {sorted(unknown)}")

        for name, value in changes.items():
            setattr(attempt, name, value)
        attempt.updated_at = self._clock()
        self._notifier.publish(EventKind.UPDATED, attempt)
        return attempt.snapshot()

    # ── Queries ─────────────────────────────────────────────────────

    def get(self, attempt_id: str) -> Attempt | None:
        attempt = self._attempts.get(attempt_id)
        return attempt.snapshot() if attempt is not None else None

    def list_all(self) -> list[Attempt]:
        """Return all attempts, most recently created first."""
        newest_inserted_first = reversed(list(self._attempts.values()))
        ordered = sorted(newest_inserted_first, key=lambda a: a.created_at, reverse=True)
        return [a.snapshot() for a in ordered]
