"""Message and Attempt models.

``Message`` is the caller-supplied payload (validated, immutable).
``Attempt`` is the ledger record tracking one message's delivery
lifecycle; the engine only ever hands out copies via ``snapshot()``.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AttemptStatus(str, Enum):
    """Lifecycle states of an attempt."""

    PENDING = "pending"
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({AttemptStatus.SENT, AttemptStatus.FAILED, AttemptStatus.RATE_LIMITED})


class Message(BaseModel):
    """Outbound message payload."""

    model_config = ConfigDict(frozen=True)

    recipient: str = Field(..., min_length=1)
    subject: str
    body: str
    sender: str | None = None

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        """Fields compared by the idempotency check."""
        return (self.recipient, self.subject, self.body)


def new_attempt_id() -> str:
    return f"att_{uuid.uuid4().hex}"


@dataclass
class Attempt:
    """Tracked delivery of one message.

    Attributes:
        id:                 Opaque identity returned by ``submit``.
        message:            The submitted payload.
        status:             Current ``AttemptStatus``.
        attempt_count:      Retry rounds consumed so far.
        max_attempts:       Retry-round ceiling.
        created_at:         Submission time (UTC).
        updated_at:         Time of the last mutation (UTC).
        sent_at:            Delivery time, set only when ``sent``.
        backend:            Name of the backend that delivered the message.
        backend_message_id: Identifier assigned by that backend.
        last_error:         Most recent failure description.
    """

    id: str
    message: Message
    status: AttemptStatus
    max_attempts: int
    created_at: datetime
    updated_at: datetime
    attempt_count: int = 0
    sent_at: datetime | None = None
    backend: str | None = None
    backend_message_id: str | None = None
    last_error: str | None = None

    def snapshot(self) -> Attempt:
        """Return an independent copy (``Message`` is immutable)."""
        return dataclasses.replace(self)
