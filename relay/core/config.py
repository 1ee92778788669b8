"""Settings — centralized configuration for the message relay.

All settings are loaded from environment variables with the RELAY_ prefix.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Message relay configuration.

    All fields can be overridden by environment variables prefixed with
    ``RELAY_``.  For example, ``RELAY_MAX_ATTEMPTS=5`` overrides the
    default retry-round ceiling.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "message-relay"
    SERVICE_VERSION: str = "0.1.0"

    # ── Retry / backoff ─────────────────────────────────────────────
    MAX_ATTEMPTS: int = 3  # Retry rounds per attempt (all backends per round)
    INITIAL_DELAY_SECONDS: float = 1.0
    MAX_DELAY_SECONDS: float = 10.0
    BACKOFF_MULTIPLIER: float = 2.0

    # ── Resilience (circuit breakers) ───────────────────────────────
    CIRCUIT_BREAKER_THRESHOLD: int = 5  # Failures before OPEN
    CIRCUIT_BREAKER_RESET_SECONDS: float = 60.0  # Seconds before half-open probe

    # ── Admission ───────────────────────────────────────────────────
    RATE_LIMIT_PER_WINDOW: int = 100
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    DEDUP_WINDOW_SECONDS: float = 300.0

    # ── Diagnostics ─────────────────────────────────────────────────
    ACTIVITY_LOG_SIZE: int = 100

    # ── Backends ────────────────────────────────────────────────────
    BACKEND_TIMEOUT_SECONDS: float | None = None  # None = no per-call timeout
    BACKENDS_CONFIG_PATH: str = "config/backends.yaml"

    model_config = {
        "env_prefix": "RELAY_",
    }
