"""Simulated provider for demos and tests.

Sleeps for a configurable latency and then fails with probability
``failure_rate``.  The rate and latency can be changed at runtime to
script outages.
"""

from __future__ import annotations

import asyncio
import random
import secrets
import time

from relay.backends.base import DeliveryResult
from relay.core.errors import BackendFailureError
from relay.models.message import Message


class SimulatedBackend:
    """Random-failure backend with simulated network latency.

    Args:
        name:         Backend name.
        failure_rate: Probability in ``[0, 1]`` that a send fails.
        latency:      Base latency in seconds.
        jitter:       Extra random latency in seconds (uniform ``[0, jitter)``).
        rng:          Random source (seed it for deterministic runs).
    """

    def __init__(
        self,
        name: str,
        failure_rate: float = 0.2,
        latency: float = 1.0,
        jitter: float = 0.5,
        rng: random.Random | None = None,
    ) -> None:
        self.name = name
        self.set_failure_rate(failure_rate)
        self.latency = latency
        self.jitter = jitter
        self._rng = rng or random.Random()
        self.calls = 0

    def set_failure_rate(self, rate: float) -> None:
        if not 0.0 <= rate <= 1.0:
            raise ValueError(f"failure_rate must be between 0 and 1, got {rate}")
        self.failure_rate = rate

    def set_latency(self, seconds: float) -> None:
        self.latency = max(0.0, seconds)

    async def send(self, message: Message) -> DeliveryResult:
        self.calls += 1
        delay = self.latency + (self._rng.random() * self.jitter if self.jitter else 0.0)
        if delay:
            await asyncio.sleep(delay)

        if self._rng.random() < self.failure_rate:
            raise BackendFailureError(self.name, f"{self.name} provider failure: Network timeout")

        return DeliveryResult.ok(f"{self.name}-{int(time.time() * 1000)}-{secrets.token_hex(5)}")
