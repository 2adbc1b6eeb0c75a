"""Port definitions for queue, status log and dead-letter backends."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from inbound_queue.domain.models import (
    DeadLetterEntry,
    DeadLetterReplayResult,
    DeadLetterStatus,
    FailureRecord,
    MessageStatus,
    ProcessingStatusEvent,
    ProcessingStatusEventCreate,
    QueuedMessage,
    QueuedMessageCreate,
)


@runtime_checkable
class QueueStorePort(Protocol):
    """Durable queue of inbound messages and their state transitions."""

    def enqueue(self, message: QueuedMessageCreate) -> QueuedMessage:
        """Persist a ``pending`` message together with its ``received`` event."""

    def get_message(self, message_id: UUID) -> QueuedMessage | None:
        """Load a single message."""

    def list_pending(
        self, limit: int, *, max_retries: int, now: datetime
    ) -> list[QueuedMessage]:
        """Oldest-first messages that are eligible for a processing attempt."""

    def claim(
        self, message_id: UUID, *, max_retries: int, now: datetime
    ) -> QueuedMessage | None:
        """Atomically move a message to ``processing``; ``None`` if another caller won."""

    def succeed(
        self, message_id: UUID, *, result: Any, now: datetime
    ) -> QueuedMessage | None:
        """``processing -> completed``; ``None`` if the message is no longer ours."""

    def fail_transient(
        self,
        message_id: UUID,
        *,
        error: str,
        max_retries: int,
        next_eligible_at: datetime,
        metadata: dict[str, Any],
        now: datetime,
    ) -> FailureRecord | None:
        """Record a transient failure: back to ``pending`` or dead-lettered when exhausted."""

    def fail_permanent(
        self,
        message_id: UUID,
        *,
        error: str,
        metadata: dict[str, Any],
        now: datetime,
    ) -> FailureRecord | None:
        """Record a permanent failure and dead-letter the message."""

    def reclaim_stale(
        self,
        *,
        stale_before: datetime,
        max_retries: int,
        backoff: Callable[[int], timedelta],
        now: datetime,
    ) -> list[FailureRecord]:
        """Treat abandoned ``processing`` rows as transient failures.

        ``backoff`` maps the failed-attempt count of each row to its retry delay.
        """

    def count_by_status(self) -> dict[MessageStatus, int]:
        """Number of messages per status."""


@runtime_checkable
class StatusLogPort(Protocol):
    """Append-only per-stage audit trail."""

    def append_event(
        self, event: ProcessingStatusEventCreate, *, now: datetime | None = None
    ) -> ProcessingStatusEvent:
        """Append a stage event stamped with ``now``; existing events are never modified."""

    def list_events(self, message_id: UUID) -> list[ProcessingStatusEvent]:
        """Events for ``message_id`` in the order they were written."""


@runtime_checkable
class DeadLetterStorePort(Protocol):
    """Durable record of permanently failed messages."""

    def get_dead_letter(self, dead_letter_id: UUID) -> DeadLetterEntry | None:
        """Load a dead-letter entry."""

    def get_dead_letter_for_message(self, message_id: UUID) -> DeadLetterEntry | None:
        """Load the entry created for ``message_id``, if any."""

    def list_dead_letters(
        self, *, status: DeadLetterStatus | None = None, limit: int = 50
    ) -> list[DeadLetterEntry]:
        """Most recent entries first, optionally filtered by status."""

    def update_dead_letter_status(
        self,
        dead_letter_id: UUID,
        *,
        status: DeadLetterStatus,
        metadata: dict[str, Any] | None = None,
        now: datetime,
    ) -> DeadLetterEntry | None:
        """Change the operator-facing status, merging ``metadata`` into the entry."""

    def replay_dead_letter(
        self,
        dead_letter_id: UUID,
        *,
        message: QueuedMessageCreate,
        now: datetime,
    ) -> DeadLetterReplayResult | None:
        """Move a ``failed`` entry to ``retrying`` and enqueue ``message`` atomically.

        Returns None when the entry is missing or no longer ``failed``.
        """


@runtime_checkable
class MessageStorePort(QueueStorePort, StatusLogPort, DeadLetterStorePort, Protocol):
    """A single backend that implements all three stores transactionally."""

    def close(self) -> None:
        """Release backend resources."""


__all__ = [
    "DeadLetterStorePort",
    "MessageStorePort",
    "QueueStorePort",
    "StatusLogPort",
]
