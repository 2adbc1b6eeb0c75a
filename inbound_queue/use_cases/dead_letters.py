"""Dead-letter administration use cases.

Operators list, replay or resolve dead-letter entries. Replay is always an
explicit action: it enqueues a fresh message built from the stored content
and routing metadata; the original message stays ``failed``.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from inbound_queue.config.logging_config import get_logger
from inbound_queue.domain.exceptions import DeadLetterStateError, MessageNotFoundError
from inbound_queue.domain.models import (
    DeadLetterEntry,
    DeadLetterReplayResult,
    DeadLetterStatus,
    QueuedMessageCreate,
    utc_now,
)
from inbound_queue.observability.metrics import MESSAGES_ENQUEUED_TOTAL
from inbound_queue.ports.queue_store import MessageStorePort

logger = get_logger(__name__)


def _require_entry(store: MessageStorePort, dead_letter_id: UUID) -> DeadLetterEntry:
    entry = store.get_dead_letter(dead_letter_id)
    if entry is None:
        raise MessageNotFoundError(f"Dead-letter entry not found: {dead_letter_id}")
    return entry


def _ensure_replayable(entry: DeadLetterEntry) -> None:
    if entry.status is not DeadLetterStatus.FAILED:
        raise DeadLetterStateError(
            f"Dead-letter entry {entry.id} is {entry.status.value}; only failed entries can be replayed"
        )


def list_dead_letters_use_case(
    store: MessageStorePort,
    *,
    status: DeadLetterStatus | None = None,
    limit: int = 50,
) -> list[DeadLetterEntry]:
    return store.list_dead_letters(status=status, limit=limit)


def _rebuild_message(entry: DeadLetterEntry) -> QueuedMessageCreate:
    metadata = entry.metadata
    try:
        content = json.loads(entry.message_content)
        return QueuedMessageCreate(
            user_id=entry.user_id,
            platform=metadata.get("platform"),
            sender_id=metadata.get("sender_id"),
            recipient_id=metadata.get("recipient_id"),
            content=content,
            received_at=metadata.get("received_at"),
        )
    except (json.JSONDecodeError, PydanticValidationError) as exc:
        raise DeadLetterStateError(
            f"Dead-letter entry {entry.id} cannot be replayed: {exc}"
        ) from exc


def replay_dead_letter_use_case(
    store: MessageStorePort,
    dead_letter_id: UUID,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> DeadLetterReplayResult:
    """Re-enqueue the content of a ``failed`` dead-letter entry.

    The store moves the entry to ``retrying`` and enqueues the new message in
    one transaction, so concurrent replays of one entry enqueue at most once.

    Raises:
        MessageNotFoundError: If the entry does not exist
        DeadLetterStateError: If the entry is not ``failed`` or lacks the
            routing metadata needed to rebuild the message
    """
    entry = _require_entry(store, dead_letter_id)
    _ensure_replayable(entry)
    request = _rebuild_message(entry)

    result = store.replay_dead_letter(entry.id, message=request, now=clock())
    if result is None:
        current = _require_entry(store, dead_letter_id)
        logger.warning(
            "dead_letter_replay_conflict",
            dead_letter_id=str(entry.id),
            status=current.status.value,
        )
        _ensure_replayable(current)
        raise DeadLetterStateError(
            f"Dead-letter entry {entry.id} changed while it was being replayed"
        )

    MESSAGES_ENQUEUED_TOTAL.labels(platform=result.message.platform.value).inc()
    logger.info(
        "dead_letter_replayed",
        dead_letter_id=str(entry.id),
        original_message_id=str(entry.message_id),
        replayed_message_id=str(result.message.id),
    )
    return result


def resolve_dead_letter_use_case(
    store: MessageStorePort,
    dead_letter_id: UUID,
    *,
    note: str | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> DeadLetterEntry:
    """Mark an entry as handled by an operator. Resolving twice is a no-op."""
    entry = _require_entry(store, dead_letter_id)
    if entry.status is DeadLetterStatus.RESOLVED:
        return entry

    now = clock()
    metadata: dict[str, str] = {"resolved_at": now.isoformat()}
    if note:
        metadata["resolution_note"] = note

    updated = store.update_dead_letter_status(
        entry.id, status=DeadLetterStatus.RESOLVED, metadata=metadata, now=now
    )
    if updated is None:
        raise MessageNotFoundError(f"Dead-letter entry not found: {dead_letter_id}")

    logger.info(
        "dead_letter_resolved",
        dead_letter_id=str(entry.id),
        previous_status=entry.status.value,
    )
    return updated


__all__ = [
    "list_dead_letters_use_case",
    "replay_dead_letter_use_case",
    "resolve_dead_letter_use_case",
]
