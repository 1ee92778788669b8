"""Structured errors for the message relay.

Custom exception hierarchy for the dispatch engine plus the
``ErrorResponse`` model used by the HTTP surface.
"""

from pydantic import BaseModel


class RelayError(Exception):
    """Base exception for all message relay errors."""


class RateLimitExceededError(RelayError):
    """Raised from ``submit`` when the admission window is full.

    The attempt is recorded as ``rate_limited`` and never retried.
    """

    def __init__(self, attempt_id: str, limit: int) -> None:
        self.attempt_id = attempt_id
        self.limit = limit
        super().__init__(f"Rate limit exceeded ({limit} per window). Please try again later.")


class BackendFailureError(RelayError):
    """A single backend invocation failed.

    Recorded on the attempt and fed to the backend's circuit breaker;
    never surfaced to the submitter.
    """

    def __init__(self, backend_name: str, reason: str = "") -> None:
        self.backend_name = backend_name
        self.reason = reason
        msg = f"Backend '{backend_name}' failed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class BackendTimeoutError(BackendFailureError):
    """A backend invocation exceeded the configured per-call timeout."""

    def __init__(self, backend_name: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(backend_name, f"timed out after {timeout_seconds}s")


class AllBackendsExhaustedError(RelayError):
    """Describes an attempt that failed every retry round.

    Reported through the ledger (status ``failed``), not raised.
    """

    def __init__(self, attempt_id: str, rounds: int) -> None:
        self.attempt_id = attempt_id
        self.rounds = rounds
        super().__init__(f"All backends exhausted for {attempt_id} after {rounds} round(s)")


class CircuitOpenError(RelayError):
    """Raised when a circuit breaker rejects a call.

    The dispatcher catches this and skips the backend for the round.
    """

    def __init__(self, backend_name: str, retry_after: float) -> None:
        self.backend_name = backend_name
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Circuit open for '{backend_name}', retry after {self.retry_after:.1f}s")


class HandlerError(RelayError):
    """Wraps an exception raised by an event subscriber."""

    def __init__(self, event_kind: str, cause: BaseException) -> None:
        self.event_kind = event_kind
        self.cause = cause
        super().__init__(f"Handler for '{event_kind}' raised {type(cause).__name__}: {cause}")


class AttemptFinalizedError(RelayError):
    """Raised when something tries to mutate an attempt in a terminal status."""

    def __init__(self, attempt_id: str, status: str) -> None:
        self.attempt_id = attempt_id
        self.status = status
        super().__init__(f"Attempt {attempt_id} is already {status}")


class ErrorResponse(BaseModel):
    """Structured error body for the HTTP surface.

    Returns ``{"error": str, "code": str, "request_id": str}``, no stack traces.
    """

    error: str
    code: str
    request_id: str

    @classmethod
    def from_exception(cls, exc: Exception, request_id: str) -> "ErrorResponse":
        """Create from an exception, mapping to machine-readable codes.

        Never leaks internal details for unhandled exceptions.
        """
        if isinstance(exc, RateLimitExceededError):
            return cls(error=str(exc), code="RATE_LIMITED", request_id=request_id)
        if isinstance(exc, CircuitOpenError):
            return cls(error=str(exc), code="CIRCUIT_OPEN", request_id=request_id)
        if isinstance(exc, BackendFailureError):
            return cls(error=str(exc), code="BACKEND_FAILURE", request_id=request_id)
        if isinstance(exc, RelayError):
            return cls(error=str(exc), code="RELAY_ERROR", request_id=request_id)
        return cls(
            error="An internal error occurred",
            code="INTERNAL_ERROR",
            request_id=request_id,
        )
