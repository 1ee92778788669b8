"""Attempt lifecycle notifications.

Observers subscribe per ``EventKind``.  ``publish`` calls every current
subscriber synchronously with its own snapshot of the attempt; a handler
that raises is logged as a ``HandlerError`` and never reaches the
dispatcher or the other handlers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

from relay.activity_log import ActivityLog
from relay.core.errors import HandlerError
from relay.models.message import Attempt

_events_logger = logging.getLogger("relay.events")

AttemptHandler = Callable[[Attempt], None]


class EventKind(str, Enum):
    """Closed set of attempt lifecycle events."""

    CREATED = "created"
    UPDATED = "updated"


class EventNotifier:
    """Observer registry keyed by ``EventKind``."""

    def __init__(self, activity_log: ActivityLog | None = None) -> None:
        self._handlers: dict[EventKind, list[AttemptHandler]] = {kind: [] for kind in EventKind}
        self._activity_log = activity_log

    def subscribe(self, kind: EventKind, handler: AttemptHandler) -> None:
        self._handlers[EventKind(kind)].append(handler)

    def unsubscribe(self, kind: EventKind, handler: AttemptHandler) -> None:
        """Remove *handler*; unknown handlers are ignored."""
        handlers = self._handlers[EventKind(kind)]
        if handler in handlers:
            handlers.remove(handler)

    def subscriber_count(self, kind: EventKind) -> int:
        return len(self._handlers[EventKind(kind)])

    def publish(self, kind: EventKind, attempt: Attempt) -> None:
        kind = EventKind(kind)
        # Copy so handlers may (un)subscribe while being notified.
        for handler in list(self._handlers[kind]):
            try:
                handler(attempt.snapshot())
            except Exception as exc:
                err = HandlerError(kind.value, exc)
                _events_logger.exception("Event handler failed for %s", attempt.id)
                if self._activity_log is not None:
                    self._activity_log.error(
                        "Event listener error",
                        event=kind.value,
                        attempt_id=attempt.id,
                        error=str(err),
                    )
