"""Delivery backends — the capability interface and bundled providers."""

from relay.backends.base import Backend, DeliveryResult
from relay.backends.http import HttpBackend
from relay.backends.registry import load_backends
from relay.backends.simulated import SimulatedBackend

__all__ = [
    "Backend",
    "DeliveryResult",
    "HttpBackend",
    "SimulatedBackend",
    "load_backends",
]
