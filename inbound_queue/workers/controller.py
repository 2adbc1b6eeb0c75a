"""Claim & process controller for a single queued message."""

from __future__ import annotations

import asyncio
import inspect
import random
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from inbound_queue.config.logging_config import get_logger
from inbound_queue.domain.models import (
    FailureRecord,
    Platform,
    ProcessingOutcome,
    ProcessingStage,
    ProcessingStatusEventCreate,
    QueuedMessage,
    StageStatus,
    utc_now,
)
from inbound_queue.domain.retry_policy import RetryPolicy
from inbound_queue.observability.metrics import (
    MESSAGES_DEAD_LETTERED_TOTAL,
    MESSAGES_PROCESSED_TOTAL,
    OUTCOME_DEAD_LETTERED,
    OUTCOME_RETRY_SCHEDULED,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCEEDED,
)
from inbound_queue.services.backoff import JitterSource, compute_backoff_delay
from inbound_queue.services.error_classifier import (
    ErrorKind,
    classify_error,
    short_error,
    summarize_error,
)
from inbound_queue.services.store_guard import ensure_message_store

logger = get_logger(__name__)

CLAIM_CONFLICT_ERROR = "claim_conflict"
CLAIM_LOST_ERROR = "claim_lost"


class MessageProcessor(Protocol):
    """Downstream handler invoked once per processing attempt.

    Must raise on failure and be safe to call more than once per message.
    Plain callables returning a value are accepted as well as coroutines.
    """

    def __call__(
        self,
        user_id: str,
        platform: Platform,
        sender_id: str,
        recipient_id: str,
        content: dict[str, Any],
        received_at: datetime,
    ) -> Awaitable[Any] | Any: ...


class MessageProcessingController:
    """Claims one message, runs the processor and records the outcome."""

    def __init__(
        self,
        *,
        store: object,
        policy: RetryPolicy,
        clock: Callable[[], datetime] = utc_now,
        jitter_source: JitterSource = random.uniform,
    ) -> None:
        self._store = ensure_message_store(store)
        self._policy = policy
        self._clock = clock
        self._jitter_source = jitter_source

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def process_one(
        self, message_id: UUID, processor: MessageProcessor
    ) -> ProcessingOutcome:
        """Run one processing attempt for ``message_id``.

        Claim conflicts return a skipped outcome. Processor errors are
        classified and recorded, never raised. Queue store errors propagate.
        Store calls run in worker threads via ``asyncio.to_thread``.
        """
        message = await asyncio.to_thread(
            self._store.claim,
            message_id,
            max_retries=self._policy.max_retries,
            now=self._clock(),
        )
        if message is None:
            logger.info("message_claim_conflict", message_id=str(message_id))
            MESSAGES_PROCESSED_TOTAL.labels(outcome=OUTCOME_SKIPPED).inc()
            return ProcessingOutcome(
                success=False,
                message_id=message_id,
                skipped=True,
                error=CLAIM_CONFLICT_ERROR,
            )

        logger.info(
            "message_claimed",
            message_id=str(message.id),
            retry_count=message.retry_count,
            attempt=message.attempt_count,
            platform=message.platform.value,
        )
        await asyncio.to_thread(
            self._store.append_event,
            ProcessingStatusEventCreate(
                message_id=message.id,
                stage=ProcessingStage.PROCESSING_STARTED.value,
                status=StageStatus.PENDING,
                metadata={
                    "attempt": message.attempt_count,
                    "retry_count": message.retry_count,
                },
            ),
            now=self._clock(),
        )

        try:
            result = processor(
                message.user_id,
                message.platform,
                message.sender_id,
                message.recipient_id,
                message.content,
                message.received_at,
            )
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:  # noqa: BLE001
            return await self._handle_failure(message, exc)

        return await self._handle_success(message, result)

    async def _handle_success(
        self, message: QueuedMessage, result: Any
    ) -> ProcessingOutcome:
        completed = await asyncio.to_thread(
            self._store.succeed, message.id, result=result, now=self._clock()
        )
        if completed is None:
            logger.warning(
                "message_claim_lost",
                message_id=str(message.id),
                phase="succeed",
            )
            MESSAGES_PROCESSED_TOTAL.labels(outcome=OUTCOME_SKIPPED).inc()
            return ProcessingOutcome(
                success=False,
                message_id=message.id,
                skipped=True,
                error=CLAIM_LOST_ERROR,
            )

        logger.info(
            "message_processed",
            message_id=str(message.id),
            retry_count=completed.retry_count,
            attempt=completed.attempt_count,
        )
        MESSAGES_PROCESSED_TOTAL.labels(outcome=OUTCOME_SUCCEEDED).inc()
        return ProcessingOutcome(success=True, message_id=message.id)

    async def _handle_failure(
        self, message: QueuedMessage, error: Exception
    ) -> ProcessingOutcome:
        kind = classify_error(error)
        transient = kind is ErrorKind.TRANSIENT
        error_text = short_error(error)
        now = self._clock()
        failed_attempts = message.retry_count + 1
        metadata: dict[str, Any] = {
            "error": summarize_error(
                error,
                {
                    "message_id": str(message.id),
                    "platform": message.platform.value,
                    "attempt": message.attempt_count,
                },
            ),
        }

        record: FailureRecord | None
        if transient and not self._policy.is_exhausted(failed_attempts):
            delay = compute_backoff_delay(
                failed_attempts, self._policy, jitter_source=self._jitter_source
            )
            metadata["backoff_seconds"] = round(delay.total_seconds(), 3)
            record = await asyncio.to_thread(
                self._store.fail_transient,
                message.id,
                error=error_text,
                max_retries=self._policy.max_retries,
                next_eligible_at=now + delay,
                metadata=metadata,
                now=now,
            )
        else:
            metadata["reason"] = "retries_exhausted" if transient else "permanent_error"
            record = await asyncio.to_thread(
                self._store.fail_permanent,
                message.id,
                error=error_text,
                metadata=metadata,
                now=now,
            )

        if record is None:
            logger.warning(
                "message_claim_lost",
                message_id=str(message.id),
                phase="fail",
                error=error_text,
            )
            MESSAGES_PROCESSED_TOTAL.labels(outcome=OUTCOME_SKIPPED).inc()
            return ProcessingOutcome(
                success=False,
                message_id=message.id,
                transient=transient,
                skipped=True,
                error=error_text,
            )

        if record.dead_lettered:
            logger.error(
                "message_dead_lettered",
                message_id=str(message.id),
                dead_letter_id=str(record.message.dead_letter_id),
                retry_count=record.message.retry_count,
                transient=transient,
                error=error_text,
                error_type=type(error).__name__,
            )
            MESSAGES_PROCESSED_TOTAL.labels(outcome=OUTCOME_DEAD_LETTERED).inc()
            MESSAGES_DEAD_LETTERED_TOTAL.labels(
                reason=metadata.get("reason", "retries_exhausted")
            ).inc()
        else:
            logger.warning(
                "message_retry_scheduled",
                message_id=str(message.id),
                retry_count=record.message.retry_count,
                next_eligible_at=(
                    record.message.next_eligible_at.isoformat()
                    if record.message.next_eligible_at
                    else None
                ),
                error=error_text,
                error_type=type(error).__name__,
            )
            MESSAGES_PROCESSED_TOTAL.labels(outcome=OUTCOME_RETRY_SCHEDULED).inc()

        return ProcessingOutcome(
            success=False,
            message_id=message.id,
            transient=transient,
            error=error_text,
            dead_lettered=record.dead_lettered,
        )


__all__ = [
    "CLAIM_CONFLICT_ERROR",
    "CLAIM_LOST_ERROR",
    "MessageProcessingController",
    "MessageProcessor",
]
