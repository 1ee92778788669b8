"""HTTP request/response models for the relay's status API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from relay.models.message import AttemptStatus, Message


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    service: str
    version: str
    status: str
    uptime_seconds: float


class SubmitRequest(Message):
    """Body of POST /messages."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    def to_message(self) -> Message:
        return Message(**self.model_dump())


class SubmitResponse(BaseModel):
    attempt_id: str


class AttemptResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    message: Message
    status: AttemptStatus
    attempt_count: int
    max_attempts: int
    created_at: datetime
    updated_at: datetime
    sent_at: datetime | None = None
    backend: str | None = None
    backend_message_id: str | None = None
    last_error: str | None = None


class BackendStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    health: str
    breaker: dict[str, Any]


class QueueStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    queue_length: int
    is_draining: bool


class RateLimitStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    admitted_count: int
    limit: int
    window_reset_time: datetime


class LogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    level: str
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
