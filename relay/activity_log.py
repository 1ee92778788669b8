"""Bounded activity log for engine diagnostics.

Keeps the most recent ``max_entries`` engine actions in memory (oldest
evicted first) and mirrors each one to the ``relay.activity`` logger so
the host process decides formatting and destination.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from relay.core.clock import Clock, utc_now

_activity_logger = logging.getLogger("relay.activity")

_LEVELS: dict[str, int] = {
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass(frozen=True)
class LogEntry:
    """One activity record."""

    timestamp: datetime
    level: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


class ActivityLog:
    """Append-only ring buffer of ``LogEntry`` records."""

    def __init__(self, max_entries: int = 100, clock: Clock = utc_now) -> None:
        self.max_entries = max_entries
        self._clock = clock
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)

    def info(self, message: str, **context: Any) -> None:
        self.log("INFO", message, context)

    def warning(self, message: str, **context: Any) -> None:
        self.log("WARNING", message, context)

    def error(self, message: str, **context: Any) -> None:
        self.log("ERROR", message, context)

    def log(self, level: str, message: str, context: dict[str, Any] | None = None) -> None:
        entry = LogEntry(timestamp=self._clock(), level=level, message=message, context=dict(context or {}))
        self._entries.append(entry)
        _activity_logger.log(_LEVELS.get(level, logging.INFO), "%s %s", message, entry.context or "")

    def entries(self) -> list[LogEntry]:
        """Return entries oldest first."""
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
