"""FastAPI application entrypoint.

Exposes the relay engine's submission and query APIs over HTTP together
with a ``/health`` endpoint and request-ID middleware.  Run with::

    uvicorn relay.main:app
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from relay.backends.registry import load_backends
from relay.core.config import Settings
from relay.core.errors import ErrorResponse, RateLimitExceededError
from relay.engine import RelayEngine
from relay.models.schemas import (
    AttemptResponse,
    BackendStatusResponse,
    HealthResponse,
    LogEntryResponse,
    QueueStatusResponse,
    RateLimitStatusResponse,
    SubmitRequest,
    SubmitResponse,
)

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> RelayEngine:
    """Create an engine from *settings* and the YAML backend catalogue."""
    config_path = Path(settings.BACKENDS_CONFIG_PATH)
    if config_path.exists():
        backends = load_backends(config_path)
        logger.info("Loaded %d backend(s) from %s", len(backends), config_path)
    else:
        backends = []
        logger.warning("%s not found, relay has no backends and every message will fail", config_path)
    return RelayEngine.from_settings(settings, backends)


def create_app(settings: Settings | None = None, engine: RelayEngine | None = None) -> FastAPI:
    """Build the FastAPI app around *engine* (built from *settings* if omitted)."""
    settings = settings or Settings()
    engine = engine or build_engine(settings)
    start_time = time.monotonic()

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await engine.aclose()

    app = FastAPI(title=settings.SERVICE_NAME, version=settings.SERVICE_VERSION, lifespan=lifespan)
    app.state.engine = engine

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign or preserve a unique request ID on every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(RateLimitExceededError)
    async def rate_limited(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "")
        body = ErrorResponse.from_exception(exc, request_id)
        return JSONResponse(status_code=status.HTTP_429_TOO_MANY_REQUESTS, content=body.model_dump())

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Return service health with name, version, status, and uptime."""
        return HealthResponse(
            service=settings.SERVICE_NAME,
            version=settings.SERVICE_VERSION,
            status="healthy",
            uptime_seconds=round(time.monotonic() - start_time, 2),
        )

    @app.post("/messages", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED)
    async def submit_message(body: SubmitRequest) -> SubmitResponse:
        attempt_id = await engine.submit(body.to_message())
        return SubmitResponse(attempt_id=attempt_id)

    @app.get("/attempts", response_model=list[AttemptResponse])
    async def list_attempts() -> list[AttemptResponse]:
        return [AttemptResponse.model_validate(a) for a in engine.list_attempts()]

    @app.get("/attempts/{attempt_id}", response_model=AttemptResponse)
    async def get_attempt(attempt_id: str) -> AttemptResponse:
        attempt = engine.get_attempt(attempt_id)
        if attempt is None:
            raise HTTPException(status_code=404, detail=f"Attempt not found: {attempt_id}")
        return AttemptResponse.model_validate(attempt)

    @app.get("/backends", response_model=list[BackendStatusResponse])
    async def backend_status() -> list[BackendStatusResponse]:
        return [
            BackendStatusResponse(name=s.name, health=s.health.value, breaker=s.breaker)
            for s in engine.get_backend_status()
        ]

    @app.get("/queue", response_model=QueueStatusResponse)
    async def queue_status() -> QueueStatusResponse:
        return QueueStatusResponse.model_validate(engine.get_queue_status())

    @app.get("/rate-limit", response_model=RateLimitStatusResponse)
    async def rate_limit_status() -> RateLimitStatusResponse:
        return RateLimitStatusResponse.model_validate(engine.get_rate_limit_status())

    @app.get("/activity", response_model=list[LogEntryResponse])
    async def activity_log() -> list[LogEntryResponse]:
        return [LogEntryResponse.model_validate(e) for e in engine.get_activity_log()]

    @app.delete("/activity", status_code=status.HTTP_204_NO_CONTENT)
    async def clear_activity_log() -> Response:
        engine.clear_activity_log()
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    return app


app = create_app()
