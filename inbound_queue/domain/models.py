"""Domain models for the inbound message queue.

All models use Pydantic v2 for validation and serialization.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are taken as UTC)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class Platform(StrEnum):
    """Chat platforms that deliver inbound events."""

    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"


class MessageStatus(StrEnum):
    """Lifecycle states of a queued message."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StageStatus(StrEnum):
    """Status recorded with a processing stage event."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingStage(StrEnum):
    """Well-known stage labels. The status log accepts any other label too."""

    RECEIVED = "received"
    PROCESSING_STARTED = "processing_started"
    PROCESSING_FAILED = "processing_failed"
    PROCESSING_RECLAIMED = "processing_reclaimed"
    RESPONSE_SENT = "response_sent"
    DEAD_LETTERED = "dead_lettered"
    REPLAYED = "replayed"


class DeadLetterStatus(StrEnum):
    """Operator-facing states of a dead-letter entry."""

    FAILED = "failed"
    RETRYING = "retrying"
    RESOLVED = "resolved"


class QueuedMessageCreate(BaseModel):
    """Canonical inbound message handed over by the webhook collaborator."""

    user_id: str = Field(..., min_length=1)
    platform: Platform
    sender_id: str = Field(..., min_length=1)
    recipient_id: str = Field(..., min_length=1)
    content: dict[str, Any]
    received_at: datetime = Field(default_factory=utc_now)

    @field_validator("received_at")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class QueuedMessage(BaseModel):
    """Persisted queue row.

    ``retry_count`` counts failed attempts and only ever grows;
    ``attempt_count`` counts successful claims.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    platform: Platform
    sender_id: str
    recipient_id: str
    content: dict[str, Any]
    received_at: datetime
    status: MessageStatus
    retry_count: int = Field(default=0, ge=0)
    attempt_count: int = Field(default=0, ge=0)
    last_retry_at: datetime | None = None
    next_eligible_at: datetime | None = None
    created_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    dead_letter_id: UUID | None = None

    @field_validator(
        "received_at",
        "last_retry_at",
        "next_eligible_at",
        "created_at",
        "completed_at",
    )
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)

    @property
    def is_dead_lettered(self) -> bool:
        return self.dead_letter_id is not None


class ProcessingStatusEventCreate(BaseModel):
    """Append request for the status log."""

    message_id: UUID
    stage: str = Field(..., min_length=1)
    status: StageStatus
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ProcessingStatusEvent(BaseModel):
    """Append-only audit fact about one processing stage of a message."""

    id: UUID = Field(default_factory=uuid4)
    message_id: UUID
    stage: str
    status: StageStatus
    error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class DeadLetterEntry(BaseModel):
    """Terminal record of a message that will not be retried automatically."""

    id: UUID = Field(default_factory=uuid4)
    message_id: UUID
    user_id: str
    message_content: str
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    failed_at: datetime
    retry_count: int = Field(default=0, ge=0)
    status: DeadLetterStatus = DeadLetterStatus.FAILED
    updated_at: datetime | None = None

    @field_validator("failed_at", "updated_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return ensure_utc(value)


class FailureRecord(BaseModel):
    """Result of recording a failed attempt against the queue store."""

    message: QueuedMessage
    dead_letter: DeadLetterEntry | None = None

    @property
    def dead_lettered(self) -> bool:
        return self.dead_letter is not None


class ProcessingOutcome(BaseModel):
    """Structured, caller-facing result of one ``process_one`` call."""

    success: bool
    message_id: UUID
    transient: bool | None = None
    error: str | None = None
    skipped: bool = False
    dead_lettered: bool = False


class DeadLetterReplayResult(BaseModel):
    """Outcome of an operator replay of a dead-letter entry."""

    dead_letter: DeadLetterEntry
    message: QueuedMessage


class BatchResult(BaseModel):
    """Aggregated result of one batch run."""

    processed_count: int = 0
    results: list[ProcessingOutcome] = Field(default_factory=list)
    reclaimed_count: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.results if outcome.success)

    @property
    def failed(self) -> int:
        return sum(
            1 for outcome in self.results if not outcome.success and not outcome.skipped
        )

    @property
    def skipped(self) -> int:
        return sum(1 for outcome in self.results if outcome.skipped)


__all__ = [
    "BatchResult",
    "DeadLetterEntry",
    "DeadLetterReplayResult",
    "DeadLetterStatus",
    "FailureRecord",
    "MessageStatus",
    "Platform",
    "ProcessingOutcome",
    "ProcessingStage",
    "ProcessingStatusEvent",
    "ProcessingStatusEventCreate",
    "QueuedMessage",
    "QueuedMessageCreate",
    "StageStatus",
    "ensure_utc",
    "utc_now",
]
