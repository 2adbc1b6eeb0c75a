"""PostgreSQL implementation of the message store ports.

Schema lives in ``alembic/versions``. Each port call runs in a single
transaction on a connection borrowed from ``connection_provider``.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from psycopg2.extras import Json, RealDictCursor

from inbound_queue.config.logging_config import get_logger
from inbound_queue.domain.exceptions import RepositoryError
from inbound_queue.domain.models import (
    DeadLetterEntry,
    DeadLetterReplayResult,
    DeadLetterStatus,
    FailureRecord,
    MessageStatus,
    ProcessingStage,
    ProcessingStatusEvent,
    ProcessingStatusEventCreate,
    QueuedMessage,
    QueuedMessageCreate,
    StageStatus,
    ensure_utc,
    utc_now,
)
from inbound_queue.domain.queue_constants import STALE_PROCESSING_ERROR

logger = get_logger(__name__)


def _load_json(value: Any) -> Any:
    if value is None:
        return {}
    if isinstance(value, (str, bytes, bytearray)):
        return json.loads(value)
    return value


def _iso(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    return value


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class PostgresQueueStore:
    """Message queue, status log and dead-letter store on PostgreSQL."""

    def __init__(
        self,
        connection_provider: Callable[[], AbstractContextManager[Any]],
        *,
        on_close: Callable[[], None] | None = None,
    ):
        self._connection_provider = connection_provider
        self._on_close = on_close

    def close(self) -> None:
        if self._on_close is not None:
            self._on_close()

    # === Row mapping ===

    @staticmethod
    def _row_to_message(row: dict[str, Any]) -> QueuedMessage:
        data = dict(row)
        data["content"] = _load_json(data.pop("message_content"))
        return QueuedMessage.model_validate(data)

    @staticmethod
    def _row_to_event(row: dict[str, Any]) -> ProcessingStatusEvent:
        return ProcessingStatusEvent(
            id=row["id"],
            message_id=row["message_queue_id"],
            stage=row["stage"],
            status=StageStatus(row["status"]),
            error=row["error"],
            metadata=_load_json(row["metadata"]),
            timestamp=row["created_at"],
        )

    @staticmethod
    def _row_to_dead_letter(row: dict[str, Any]) -> DeadLetterEntry:
        data = dict(row)
        data["metadata"] = _load_json(data["metadata"])
        return DeadLetterEntry.model_validate(data)

    # === Shared statements ===

    def _insert_event(
        self,
        cur: Any,
        *,
        message_id: UUID,
        stage: str,
        status: StageStatus,
        error: str | None,
        metadata: dict[str, Any],
        now: datetime,
    ) -> ProcessingStatusEvent:
        cur.execute(
            """
            INSERT INTO message_processing_status (
                id, message_queue_id, stage, status, error, metadata, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                uuid4(),
                message_id,
                stage,
                status.value,
                error,
                Json(_jsonable(metadata)),
                ensure_utc(now),
            ),
        )
        return self._row_to_event(cur.fetchone())

    def _record_failure(
        self,
        cur: Any,
        row: dict[str, Any],
        *,
        error: str,
        transient: bool,
        max_retries: int,
        next_eligible_at: datetime | None,
        metadata: dict[str, Any],
        stage: str,
        now: datetime,
    ) -> FailureRecord:
        message_id = row["id"]
        retry_count = int(row["retry_count"]) + 1

        self._insert_event(
            cur,
            message_id=message_id,
            stage=stage,
            status=StageStatus.FAILED,
            error=error,
            metadata={**metadata, "retry_count": retry_count, "transient": transient},
            now=now,
        )

        if transient and retry_count < max_retries:
            cur.execute(
                """
                UPDATE message_queue
                SET status = %s, retry_count = %s, error = %s, next_eligible_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    MessageStatus.PENDING.value,
                    retry_count,
                    error,
                    ensure_utc(next_eligible_at) if next_eligible_at else None,
                    message_id,
                ),
            )
            return FailureRecord(message=self._row_to_message(cur.fetchone()))

        cur.execute(
            """
            INSERT INTO message_dead_letters (
                id, message_id, user_id, message_content, error_message,
                metadata, failed_at, retry_count, status
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (message_id) DO NOTHING
            RETURNING *
            """,
            (
                uuid4(),
                message_id,
                row["user_id"],
                json.dumps(_load_json(row["message_content"])),
                error,
                Json(
                    _jsonable(
                        {
                            **metadata,
                            "platform": row["platform"],
                            "sender_id": row["sender_id"],
                            "recipient_id": row["recipient_id"],
                            "received_at": _iso(row["received_at"]),
                        }
                    )
                ),
                ensure_utc(now),
                retry_count,
                DeadLetterStatus.FAILED.value,
            ),
        )
        dl_row = cur.fetchone()
        if dl_row is None:
            cur.execute(
                "SELECT * FROM message_dead_letters WHERE message_id = %s",
                (message_id,),
            )
            dl_row = cur.fetchone()
        dead_letter = self._row_to_dead_letter(dl_row)

        cur.execute(
            """
            UPDATE message_queue
            SET status = %s, retry_count = %s, error = %s,
                next_eligible_at = NULL, dead_letter_id = %s
            WHERE id = %s
            RETURNING *
            """,
            (
                MessageStatus.FAILED.value,
                retry_count,
                error,
                dead_letter.id,
                message_id,
            ),
        )
        updated = cur.fetchone()
        self._insert_event(
            cur,
            message_id=message_id,
            stage=ProcessingStage.DEAD_LETTERED.value,
            status=StageStatus.FAILED,
            error=error,
            metadata={"dead_letter_id": str(dead_letter.id), "retry_count": retry_count},
            now=now,
        )
        return FailureRecord(message=self._row_to_message(updated), dead_letter=dead_letter)

    def _insert_message(self, cur: Any, message: QueuedMessageCreate) -> dict[str, Any]:
        now = utc_now()
        cur.execute(
            """
            INSERT INTO message_queue (
                id, user_id, platform, sender_id, recipient_id,
                message_content, received_at, status, retry_count,
                attempt_count, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, 0, 0, %s)
            RETURNING *
            """,
            (
                uuid4(),
                message.user_id,
                message.platform.value,
                message.sender_id,
                message.recipient_id,
                Json(_jsonable(message.content)),
                ensure_utc(message.received_at),
                MessageStatus.PENDING.value,
                now,
            ),
        )
        row = cur.fetchone()
        if row is None:
            raise RepositoryError("Failed to insert queued message")
        self._insert_event(
            cur,
            message_id=row["id"],
            stage=ProcessingStage.RECEIVED.value,
            status=StageStatus.COMPLETED,
            error=None,
            metadata={"received_at": now.isoformat()},
            now=now,
        )
        return row

    # === QueueStorePort ===

    def enqueue(self, message: QueuedMessageCreate) -> QueuedMessage:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                try:
                    row = self._insert_message(cur, message)
                except RepositoryError:
                    conn.rollback()
                    raise
                conn.commit()
        return self._row_to_message(row)

    def get_message(self, message_id: UUID) -> QueuedMessage | None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("SELECT * FROM message_queue WHERE id = %s", (message_id,))
                row = cur.fetchone()
        return self._row_to_message(row) if row is not None else None

    def list_pending(
        self, limit: int, *, max_retries: int, now: datetime
    ) -> list[QueuedMessage]:
        if limit <= 0:
            raise ValueError("limit must be positive")

        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT * FROM message_queue
                    WHERE status IN (%s, %s)
                      AND retry_count < %s
                      AND dead_letter_id IS NULL
                      AND (next_eligible_at IS NULL OR next_eligible_at <= %s)
                    ORDER BY created_at ASC, id ASC
                    LIMIT %s
                    """,
                    (
                        MessageStatus.PENDING.value,
                        MessageStatus.FAILED.value,
                        max_retries,
                        ensure_utc(now),
                        limit,
                    ),
                )
                rows = cur.fetchall()
        return [self._row_to_message(row) for row in rows]

    def claim(
        self, message_id: UUID, *, max_retries: int, now: datetime
    ) -> QueuedMessage | None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    UPDATE message_queue
                    SET status = %s,
                        attempt_count = attempt_count + 1,
                        last_retry_at = %s
                    WHERE id = %s
                      AND status IN (%s, %s)
                      AND retry_count < %s
                      AND dead_letter_id IS NULL
                    RETURNING *
                    """,
                    (
                        MessageStatus.PROCESSING.value,
                        ensure_utc(now),
                        message_id,
                        MessageStatus.PENDING.value,
                        MessageStatus.FAILED.value,
                        max_retries,
                    ),
                )
                row = cur.fetchone()
                conn.commit()
        return self._row_to_message(row) if row is not None else None

    def succeed(
        self, message_id: UUID, *, result: Any, now: datetime
    ) -> QueuedMessage | None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    UPDATE message_queue
                    SET status = %s, completed_at = %s, error = NULL,
                        next_eligible_at = NULL
                    WHERE id = %s AND status = %s
                    RETURNING *
                    """,
                    (
                        MessageStatus.COMPLETED.value,
                        ensure_utc(now),
                        message_id,
                        MessageStatus.PROCESSING.value,
                    ),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    return None
                self._insert_event(
                    cur,
                    message_id=message_id,
                    stage=ProcessingStage.RESPONSE_SENT.value,
                    status=StageStatus.COMPLETED,
                    error=None,
                    metadata={"result": result},
                    now=now,
                )
                conn.commit()
        return self._row_to_message(row)

    def _fail(
        self,
        message_id: UUID,
        *,
        error: str,
        transient: bool,
        max_retries: int,
        next_eligible_at: datetime | None,
        metadata: dict[str, Any],
        now: datetime,
    ) -> FailureRecord | None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT * FROM message_queue
                    WHERE id = %s AND status = %s
                    FOR UPDATE
                    """,
                    (message_id, MessageStatus.PROCESSING.value),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    return None
                record = self._record_failure(
                    cur,
                    row,
                    error=error,
                    transient=transient,
                    max_retries=max_retries,
                    next_eligible_at=next_eligible_at,
                    metadata=metadata,
                    stage=ProcessingStage.PROCESSING_FAILED.value,
                    now=now,
                )
                conn.commit()
        return record

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
        return self._fail(
            message_id,
            error=error,
            transient=True,
            max_retries=max_retries,
            next_eligible_at=next_eligible_at,
            metadata=metadata,
            now=now,
        )

    def fail_permanent(
        self,
        message_id: UUID,
        *,
        error: str,
        metadata: dict[str, Any],
        now: datetime,
    ) -> FailureRecord | None:
        return self._fail(
            message_id,
            error=error,
            transient=False,
            max_retries=0,
            next_eligible_at=None,
            metadata=metadata,
            now=now,
        )

    def reclaim_stale(
        self,
        *,
        stale_before: datetime,
        max_retries: int,
        backoff: Callable[[int], timedelta],
        now: datetime,
    ) -> list[FailureRecord]:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT * FROM message_queue
                    WHERE status = %s
                      AND (last_retry_at IS NULL OR last_retry_at < %s)
                    ORDER BY created_at ASC
                    FOR UPDATE SKIP LOCKED
                    """,
                    (MessageStatus.PROCESSING.value, ensure_utc(stale_before)),
                )
                rows = cur.fetchall()
                records = [
                    self._record_failure(
                        cur,
                        row,
                        error=STALE_PROCESSING_ERROR,
                        transient=True,
                        max_retries=max_retries,
                        next_eligible_at=now + backoff(int(row["retry_count"]) + 1),
                        metadata={"stale_before": ensure_utc(stale_before).isoformat()},
                        stage=ProcessingStage.PROCESSING_RECLAIMED.value,
                        now=now,
                    )
                    for row in rows
                ]
                conn.commit()
        if records:
            logger.info("postgres_stale_messages_reclaimed", count=len(records))
        return records

    def count_by_status(self) -> dict[MessageStatus, int]:
        counts = {status: 0 for status in MessageStatus}
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    "SELECT status, COUNT(*) AS total FROM message_queue GROUP BY status"
                )
                for row in cur.fetchall():
                    counts[MessageStatus(row["status"])] = int(row["total"])
        return counts

    # === StatusLogPort ===

    def append_event(
        self, event: ProcessingStatusEventCreate, *, now: datetime | None = None
    ) -> ProcessingStatusEvent:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                created = self._insert_event(
                    cur,
                    message_id=event.message_id,
                    stage=event.stage,
                    status=event.status,
                    error=event.error,
                    metadata=event.metadata,
                    now=now or utc_now(),
                )
                conn.commit()
        return created

    def list_events(self, message_id: UUID) -> list[ProcessingStatusEvent]:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    SELECT * FROM message_processing_status
                    WHERE message_queue_id = %s
                    ORDER BY seq ASC
                    """,
                    (message_id,),
                )
                rows = cur.fetchall()
        return [self._row_to_event(row) for row in rows]

    # === DeadLetterStorePort ===

    def _fetch_dead_letter(self, column: str, value: UUID) -> DeadLetterEntry | None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT * FROM message_dead_letters WHERE {column} = %s",  # noqa: S608
                    (value,),
                )
                row = cur.fetchone()
        return self._row_to_dead_letter(row) if row is not None else None

    def get_dead_letter(self, dead_letter_id: UUID) -> DeadLetterEntry | None:
        return self._fetch_dead_letter("id", dead_letter_id)

    def get_dead_letter_for_message(self, message_id: UUID) -> DeadLetterEntry | None:
        return self._fetch_dead_letter("message_id", message_id)

    def list_dead_letters(
        self, *, status: DeadLetterStatus | None = None, limit: int = 50
    ) -> list[DeadLetterEntry]:
        if limit <= 0:
            return []

        query = "SELECT * FROM message_dead_letters"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = %s"
            params.append(status.value)
        query += " ORDER BY failed_at DESC LIMIT %s"
        params.append(limit)

        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [self._row_to_dead_letter(row) for row in rows]

    def update_dead_letter_status(
        self,
        dead_letter_id: UUID,
        *,
        status: DeadLetterStatus,
        metadata: dict[str, Any] | None = None,
        now: datetime,
    ) -> DeadLetterEntry | None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    """
                    UPDATE message_dead_letters
                    SET status = %s,
                        metadata = COALESCE(metadata, '{}'::jsonb) || %s,
                        updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        status.value,
                        Json(_jsonable(metadata or {})),
                        ensure_utc(now),
                        dead_letter_id,
                    ),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    return None
                conn.commit()
        return self._row_to_dead_letter(row)

    def replay_dead_letter(
        self,
        dead_letter_id: UUID,
        *,
        message: QueuedMessageCreate,
        now: datetime,
    ) -> DeadLetterReplayResult | None:
        with self._connection_provider() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                # row lock makes a concurrent replay wait, then miss the status guard
                cur.execute(
                    """
                    UPDATE message_dead_letters
                    SET status = %s, updated_at = %s
                    WHERE id = %s AND status = %s
                    RETURNING *
                    """,
                    (
                        DeadLetterStatus.RETRYING.value,
                        ensure_utc(now),
                        dead_letter_id,
                        DeadLetterStatus.FAILED.value,
                    ),
                )
                entry_row = cur.fetchone()
                if entry_row is None:
                    conn.rollback()
                    return None

                replayed_row = self._insert_message(cur, message)
                replayed_id = str(replayed_row["id"])
                cur.execute(
                    """
                    UPDATE message_dead_letters
                    SET metadata = COALESCE(metadata, '{}'::jsonb) || %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        Json(
                            {
                                "replayed_message_id": replayed_id,
                                "replayed_at": ensure_utc(now).isoformat(),
                            }
                        ),
                        dead_letter_id,
                    ),
                )
                updated = cur.fetchone()
                self._insert_event(
                    cur,
                    message_id=entry_row["message_id"],
                    stage=ProcessingStage.REPLAYED.value,
                    status=StageStatus.COMPLETED,
                    error=None,
                    metadata={
                        "dead_letter_id": str(dead_letter_id),
                        "replayed_message_id": replayed_id,
                    },
                    now=now,
                )
                conn.commit()
        return DeadLetterReplayResult(
            dead_letter=self._row_to_dead_letter(updated),
            message=self._row_to_message(replayed_row),
        )


__all__ = ["PostgresQueueStore"]
