"""Resilience patterns — circuit breakers and admission control.

Provides per-backend circuit breakers and a fixed-window rate limiter
that protect the relay and its backends from overload and cascading
failures.
"""

from relay.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from relay.resilience.rate_limiter import RateLimiter, RateLimitStatus

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RateLimitStatus",
    "RateLimiter",
]
