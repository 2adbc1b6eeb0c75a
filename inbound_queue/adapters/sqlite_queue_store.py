"""SQLite queue store for local runs and tests.

Implements the queue, status log and dead-letter ports on one database file.
Every write path runs inside ``BEGIN IMMEDIATE`` so concurrent processes
serialize on the database write lock.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Final
from uuid import UUID, uuid4

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

SQLITE_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0

_CLAIMABLE_STATUSES: Final[tuple[str, str]] = (
    MessageStatus.PENDING.value,
    MessageStatus.FAILED.value,
)


def _to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _require_row(row: sqlite3.Row | None, what: str) -> sqlite3.Row:
    if row is None:
        raise RepositoryError(f"{what} vanished inside its own transaction")
    return row


class SQLiteQueueStore:
    """SQLite-backed message queue, status log and dead-letter store."""

    def __init__(self, db_path: str) -> None:
        """Initialize store and ensure schema.

        Args:
            db_path: Path to SQLite database file
        """
        if not db_path:
            raise RepositoryError("db_path must be provided for the SQLite queue store")

        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=SQLITE_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Run statements in one ``BEGIN IMMEDIATE`` transaction."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as exc:
            raise RepositoryError(f"Failed to open SQLite database: {exc}") from exc

        try:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            yield cursor
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise RepositoryError(f"SQLite queue store error: {exc}") from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[sqlite3.Cursor]:
        try:
            conn = self._get_connection()
        except sqlite3.Error as exc:
            raise RepositoryError(f"Failed to open SQLite database: {exc}") from exc

        try:
            yield conn.cursor()
        except sqlite3.Error as exc:
            raise RepositoryError(f"SQLite queue store error: {exc}") from exc
        finally:
            conn.close()

    def _create_schema(self) -> None:
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        with self._transaction() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS message_queue (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    platform TEXT NOT NULL
                        CHECK (platform IN ('facebook', 'instagram')),
                    sender_id TEXT NOT NULL,
                    recipient_id TEXT NOT NULL,
                    message_content TEXT NOT NULL,
                    received_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
                    error TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0 CHECK (retry_count >= 0),
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    last_retry_at TEXT,
                    next_eligible_at TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    dead_letter_id TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_message_queue_status_created
                ON message_queue(status, created_at)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS message_processing_status (
                    id TEXT PRIMARY KEY,
                    message_queue_id TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    status TEXT NOT NULL
                        CHECK (status IN ('pending', 'completed', 'failed')),
                    error TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_processing_status_message
                ON message_processing_status(message_queue_id, created_at)
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS message_dead_letters (
                    id TEXT PRIMARY KEY,
                    message_id TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL,
                    message_content TEXT NOT NULL,
                    error_message TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    failed_at TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'failed'
                        CHECK (status IN ('failed', 'retrying', 'resolved')),
                    updated_at TEXT
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_dead_letters_status
                ON message_dead_letters(status, failed_at)
                """
            )
        logger.info("sqlite_schema_ready", db_path=str(self.db_path))

    def close(self) -> None:
        """Connections are opened per operation; nothing to release."""

    # === Row mapping ===

    def _row_to_message(self, row: sqlite3.Row) -> QueuedMessage:
        data = dict(row)
        data["content"] = json.loads(data.pop("message_content"))
        return QueuedMessage.model_validate(data)

    def _row_to_event(self, row: sqlite3.Row) -> ProcessingStatusEvent:
        data = dict(row)
        return ProcessingStatusEvent(
            id=data["id"],
            message_id=data["message_queue_id"],
            stage=data["stage"],
            status=StageStatus(data["status"]),
            error=data["error"],
            metadata=json.loads(data["metadata"] or "{}"),
            timestamp=data["created_at"],
        )

    def _row_to_dead_letter(self, row: sqlite3.Row) -> DeadLetterEntry:
        data = dict(row)
        data["metadata"] = json.loads(data["metadata"] or "{}")
        return DeadLetterEntry.model_validate(data)

    # === Shared statements ===

    def _select_message(
        self, cursor: sqlite3.Cursor, message_id: UUID
    ) -> sqlite3.Row | None:
        cursor.execute("SELECT * FROM message_queue WHERE id = ?", (str(message_id),))
        row: sqlite3.Row | None = cursor.fetchone()
        return row

    def _insert_event(
        self,
        cursor: sqlite3.Cursor,
        *,
        message_id: UUID | str,
        stage: str,
        status: StageStatus,
        error: str | None,
        metadata: dict[str, Any],
        now: datetime,
    ) -> ProcessingStatusEvent:
        event_id = uuid4()
        cursor.execute(
            """
            INSERT INTO message_processing_status (
                id, message_queue_id, stage, status, error, metadata, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(event_id),
                str(message_id),
                stage,
                status.value,
                error,
                _dumps(metadata),
                _to_db(now),
            ),
        )
        return ProcessingStatusEvent(
            id=event_id,
            message_id=UUID(str(message_id)),
            stage=stage,
            status=status,
            error=error,
            metadata=json.loads(_dumps(metadata)),
            timestamp=now,
        )

    def _record_failure(
        self,
        cursor: sqlite3.Cursor,
        row: sqlite3.Row,
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
            cursor,
            message_id=message_id,
            stage=stage,
            status=StageStatus.FAILED,
            error=error,
            metadata={**metadata, "retry_count": retry_count, "transient": transient},
            now=now,
        )

        if transient and retry_count < max_retries:
            cursor.execute(
                """
                UPDATE message_queue
                SET status = ?, retry_count = ?, error = ?, next_eligible_at = ?
                WHERE id = ?
                """,
                (
                    MessageStatus.PENDING.value,
                    retry_count,
                    error,
                    _to_db(next_eligible_at),
                    message_id,
                ),
            )
            updated = _require_row(
                self._select_message(cursor, UUID(message_id)), f"Message {message_id}"
            )
            return FailureRecord(message=self._row_to_message(updated))

        dead_letter = self._insert_dead_letter(
            cursor,
            row,
            retry_count=retry_count,
            error=error,
            metadata=metadata,
            now=now,
        )
        cursor.execute(
            """
            UPDATE message_queue
            SET status = ?, retry_count = ?, error = ?, next_eligible_at = NULL,
                dead_letter_id = ?
            WHERE id = ?
            """,
            (
                MessageStatus.FAILED.value,
                retry_count,
                error,
                str(dead_letter.id),
                message_id,
            ),
        )
        self._insert_event(
            cursor,
            message_id=message_id,
            stage=ProcessingStage.DEAD_LETTERED.value,
            status=StageStatus.FAILED,
            error=error,
            metadata={"dead_letter_id": str(dead_letter.id), "retry_count": retry_count},
            now=now,
        )
        updated = _require_row(
            self._select_message(cursor, UUID(message_id)), f"Message {message_id}"
        )
        return FailureRecord(message=self._row_to_message(updated), dead_letter=dead_letter)

    def _insert_dead_letter(
        self,
        cursor: sqlite3.Cursor,
        row: sqlite3.Row,
        *,
        retry_count: int,
        error: str,
        metadata: dict[str, Any],
        now: datetime,
    ) -> DeadLetterEntry:
        cursor.execute(
            "SELECT * FROM message_dead_letters WHERE message_id = ?", (row["id"],)
        )
        existing = cursor.fetchone()
        if existing is not None:
            return self._row_to_dead_letter(existing)

        entry = DeadLetterEntry(
            message_id=row["id"],
            user_id=row["user_id"],
            message_content=row["message_content"],
            error_message=error,
            metadata={
                **metadata,
                "platform": row["platform"],
                "sender_id": row["sender_id"],
                "recipient_id": row["recipient_id"],
                "received_at": row["received_at"],
            },
            failed_at=now,
            retry_count=retry_count,
            status=DeadLetterStatus.FAILED,
        )
        cursor.execute(
            """
            INSERT INTO message_dead_letters (
                id, message_id, user_id, message_content, error_message,
                metadata, failed_at, retry_count, status, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL)
            """,
            (
                str(entry.id),
                str(entry.message_id),
                entry.user_id,
                entry.message_content,
                entry.error_message,
                _dumps(entry.metadata),
                _to_db(entry.failed_at),
                entry.retry_count,
                entry.status.value,
            ),
        )
        return entry.model_copy(update={"metadata": json.loads(_dumps(entry.metadata))})

    def _insert_message(
        self, cursor: sqlite3.Cursor, message: QueuedMessageCreate
    ) -> sqlite3.Row:
        message_id = uuid4()
        now = utc_now()
        cursor.execute(
            """
            INSERT INTO message_queue (
                id, user_id, platform, sender_id, recipient_id,
                message_content, received_at, status, retry_count,
                attempt_count, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?)
            """,
            (
                str(message_id),
                message.user_id,
                message.platform.value,
                message.sender_id,
                message.recipient_id,
                _dumps(message.content),
                _to_db(message.received_at),
                MessageStatus.PENDING.value,
                _to_db(now),
            ),
        )
        self._insert_event(
            cursor,
            message_id=message_id,
            stage=ProcessingStage.RECEIVED.value,
            status=StageStatus.COMPLETED,
            error=None,
            metadata={"received_at": _to_db(now)},
            now=now,
        )
        return _require_row(
            self._select_message(cursor, message_id), f"Message {message_id}"
        )

    # === QueueStorePort ===

    def enqueue(self, message: QueuedMessageCreate) -> QueuedMessage:
        with self._transaction() as cursor:
            row = self._insert_message(cursor, message)
        return self._row_to_message(row)

    def get_message(self, message_id: UUID) -> QueuedMessage | None:
        with self._reader() as cursor:
            row = self._select_message(cursor, message_id)
        return self._row_to_message(row) if row is not None else None

    def list_pending(
        self, limit: int, *, max_retries: int, now: datetime
    ) -> list[QueuedMessage]:
        if limit <= 0:
            raise ValueError("limit must be positive")

        with self._reader() as cursor:
            cursor.execute(
                """
                SELECT * FROM message_queue
                WHERE status IN (?, ?)
                  AND retry_count < ?
                  AND dead_letter_id IS NULL
                  AND (next_eligible_at IS NULL OR next_eligible_at <= ?)
                ORDER BY created_at ASC, rowid ASC
                LIMIT ?
                """,
                (*_CLAIMABLE_STATUSES, max_retries, _to_db(now), limit),
            )
            rows = cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    def claim(
        self, message_id: UUID, *, max_retries: int, now: datetime
    ) -> QueuedMessage | None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE message_queue
                SET status = ?,
                    attempt_count = attempt_count + 1,
                    last_retry_at = ?
                WHERE id = ?
                  AND status IN (?, ?)
                  AND retry_count < ?
                  AND dead_letter_id IS NULL
                """,
                (
                    MessageStatus.PROCESSING.value,
                    _to_db(now),
                    str(message_id),
                    *_CLAIMABLE_STATUSES,
                    max_retries,
                ),
            )
            if cursor.rowcount != 1:
                return None
            row = _require_row(
                self._select_message(cursor, message_id), f"Message {message_id}"
            )

        return self._row_to_message(row)

    def succeed(
        self, message_id: UUID, *, result: Any, now: datetime
    ) -> QueuedMessage | None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE message_queue
                SET status = ?, completed_at = ?, error = NULL, next_eligible_at = NULL
                WHERE id = ? AND status = ?
                """,
                (
                    MessageStatus.COMPLETED.value,
                    _to_db(now),
                    str(message_id),
                    MessageStatus.PROCESSING.value,
                ),
            )
            if cursor.rowcount != 1:
                return None
            self._insert_event(
                cursor,
                message_id=message_id,
                stage=ProcessingStage.RESPONSE_SENT.value,
                status=StageStatus.COMPLETED,
                error=None,
                metadata={"result": result},
                now=now,
            )
            row = _require_row(
                self._select_message(cursor, message_id), f"Message {message_id}"
            )

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
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT * FROM message_queue WHERE id = ? AND status = ?",
                (str(message_id), MessageStatus.PROCESSING.value),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._record_failure(
                cursor,
                row,
                error=error,
                transient=transient,
                max_retries=max_retries,
                next_eligible_at=next_eligible_at,
                metadata=metadata,
                stage=ProcessingStage.PROCESSING_FAILED.value,
                now=now,
            )

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
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM message_queue
                WHERE status = ?
                  AND (last_retry_at IS NULL OR last_retry_at < ?)
                ORDER BY created_at ASC, rowid ASC
                """,
                (MessageStatus.PROCESSING.value, _to_db(stale_before)),
            )
            rows = cursor.fetchall()
            return [
                self._record_failure(
                    cursor,
                    row,
                    error=STALE_PROCESSING_ERROR,
                    transient=True,
                    max_retries=max_retries,
                    next_eligible_at=now + backoff(int(row["retry_count"]) + 1),
                    metadata={"stale_before": _to_db(stale_before)},
                    stage=ProcessingStage.PROCESSING_RECLAIMED.value,
                    now=now,
                )
                for row in rows
            ]

    def count_by_status(self) -> dict[MessageStatus, int]:
        counts = {status: 0 for status in MessageStatus}
        with self._reader() as cursor:
            cursor.execute(
                "SELECT status, COUNT(*) AS total FROM message_queue GROUP BY status"
            )
            for row in cursor.fetchall():
                counts[MessageStatus(row["status"])] = int(row["total"])
        return counts

    # === StatusLogPort ===

    def append_event(
        self, event: ProcessingStatusEventCreate, *, now: datetime | None = None
    ) -> ProcessingStatusEvent:
        with self._transaction() as cursor:
            return self._insert_event(
                cursor,
                message_id=event.message_id,
                stage=event.stage,
                status=event.status,
                error=event.error,
                metadata=event.metadata,
                now=now or utc_now(),
            )

    def list_events(self, message_id: UUID) -> list[ProcessingStatusEvent]:
        with self._reader() as cursor:
            cursor.execute(
                """
                SELECT * FROM message_processing_status
                WHERE message_queue_id = ?
                ORDER BY rowid ASC
                """,
                (str(message_id),),
            )
            rows = cursor.fetchall()
        return [self._row_to_event(row) for row in rows]

    # === DeadLetterStorePort ===

    def get_dead_letter(self, dead_letter_id: UUID) -> DeadLetterEntry | None:
        with self._reader() as cursor:
            cursor.execute(
                "SELECT * FROM message_dead_letters WHERE id = ?", (str(dead_letter_id),)
            )
            row = cursor.fetchone()
        return self._row_to_dead_letter(row) if row is not None else None

    def get_dead_letter_for_message(self, message_id: UUID) -> DeadLetterEntry | None:
        with self._reader() as cursor:
            cursor.execute(
                "SELECT * FROM message_dead_letters WHERE message_id = ?",
                (str(message_id),),
            )
            row = cursor.fetchone()
        return self._row_to_dead_letter(row) if row is not None else None

    def list_dead_letters(
        self, *, status: DeadLetterStatus | None = None, limit: int = 50
    ) -> list[DeadLetterEntry]:
        if limit <= 0:
            return []

        query = "SELECT * FROM message_dead_letters"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY failed_at DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._reader() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_dead_letter(row) for row in rows]

    def update_dead_letter_status(
        self,
        dead_letter_id: UUID,
        *,
        status: DeadLetterStatus,
        metadata: dict[str, Any] | None = None,
        now: datetime,
    ) -> DeadLetterEntry | None:
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT * FROM message_dead_letters WHERE id = ?", (str(dead_letter_id),)
            )
            row = cursor.fetchone()
            if row is None:
                return None

            merged = {**json.loads(row["metadata"] or "{}"), **(metadata or {})}
            cursor.execute(
                """
                UPDATE message_dead_letters
                SET status = ?, metadata = ?, updated_at = ?
                WHERE id = ?
                """,
                (status.value, _dumps(merged), _to_db(now), str(dead_letter_id)),
            )
            cursor.execute(
                "SELECT * FROM message_dead_letters WHERE id = ?", (str(dead_letter_id),)
            )
            updated = _require_row(
                cursor.fetchone(), f"Dead-letter entry {dead_letter_id}"
            )

        return self._row_to_dead_letter(updated)

    def replay_dead_letter(
        self,
        dead_letter_id: UUID,
        *,
        message: QueuedMessageCreate,
        now: datetime,
    ) -> DeadLetterReplayResult | None:
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE message_dead_letters
                SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    DeadLetterStatus.RETRYING.value,
                    _to_db(now),
                    str(dead_letter_id),
                    DeadLetterStatus.FAILED.value,
                ),
            )
            if cursor.rowcount != 1:
                return None

            cursor.execute(
                "SELECT * FROM message_dead_letters WHERE id = ?", (str(dead_letter_id),)
            )
            entry_row = _require_row(
                cursor.fetchone(), f"Dead-letter entry {dead_letter_id}"
            )
            replayed_row = self._insert_message(cursor, message)
            replayed_id = replayed_row["id"]

            merged = {
                **json.loads(entry_row["metadata"] or "{}"),
                "replayed_message_id": replayed_id,
                "replayed_at": now.isoformat(),
            }
            cursor.execute(
                "UPDATE message_dead_letters SET metadata = ? WHERE id = ?",
                (_dumps(merged), str(dead_letter_id)),
            )
            self._insert_event(
                cursor,
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
            cursor.execute(
                "SELECT * FROM message_dead_letters WHERE id = ?", (str(dead_letter_id),)
            )
            updated = _require_row(
                cursor.fetchone(), f"Dead-letter entry {dead_letter_id}"
            )

        return DeadLetterReplayResult(
            dead_letter=self._row_to_dead_letter(updated),
            message=self._row_to_message(replayed_row),
        )


__all__ = ["SQLiteQueueStore"]
