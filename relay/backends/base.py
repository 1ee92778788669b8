"""Backend capability interface.

A backend attempts one transmission of a ``Message``.  It either returns
a ``DeliveryResult`` (success with an id, or failure with a reason) or
raises; the dispatcher treats a raised exception and a failed result
the same way.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from relay.models.message import Message


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a single backend transmission.

    Attributes:
        success:    Whether the backend accepted the message.
        message_id: Backend-assigned identifier (success only).
        reason:     Failure description (failure only).
    """

    success: bool
    message_id: str | None = None
    reason: str | None = None

    @classmethod
    def ok(cls, message_id: str) -> DeliveryResult:
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, reason: str) -> DeliveryResult:
        return cls(success=False, reason=reason)


@runtime_checkable
class Backend(Protocol):
    """Delivery capability consumed by the dispatcher."""

    name: str

    async def send(self, message: Message) -> DeliveryResult:
        """Attempt one transmission of *message*."""
        ...
