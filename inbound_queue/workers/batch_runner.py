"""Scheduled batch runner over the inbound message queue."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from inbound_queue.config.logging_config import get_logger
from inbound_queue.domain.models import BatchResult, ProcessingOutcome, utc_now
from inbound_queue.domain.queue_constants import (
    DEFAULT_BATCH_SIZE,
    MAX_BATCH_SIZE,
    PROCESSING_STALE_AFTER,
)
from inbound_queue.domain.retry_policy import RetryPolicy
from inbound_queue.observability.metrics import (
    BATCH_DURATION_SECONDS,
    MESSAGES_DEAD_LETTERED_TOTAL,
    MESSAGES_RECLAIMED_TOTAL,
    QUEUE_DEPTH,
)
from inbound_queue.observability.tracing import correlation_scope
from inbound_queue.services.backoff import JitterSource, compute_backoff_delay
from inbound_queue.services.store_guard import ensure_message_store
from inbound_queue.workers.controller import (
    MessageProcessingController,
    MessageProcessor,
)

logger = get_logger(__name__)


class BatchRunner:
    """Loads a bounded batch of eligible messages and processes them in order."""

    def __init__(
        self,
        *,
        store: object,
        policy: RetryPolicy,
        stale_after: timedelta = PROCESSING_STALE_AFTER,
        clock: Callable[[], datetime] = utc_now,
        jitter_source: JitterSource = random.uniform,
        controller: MessageProcessingController | None = None,
    ) -> None:
        if stale_after <= timedelta(0):
            msg = "stale_after must be positive"
            raise ValueError(msg)

        self._store = ensure_message_store(store)
        self._policy = policy
        self._stale_after = stale_after
        self._clock = clock
        self._jitter_source = jitter_source
        self._controller = controller or MessageProcessingController(
            store=self._store,
            policy=policy,
            clock=clock,
            jitter_source=jitter_source,
        )

    @property
    def controller(self) -> MessageProcessingController:
        return self._controller

    def _retry_delay(self, failed_attempts: int) -> timedelta:
        return compute_backoff_delay(
            failed_attempts, self._policy, jitter_source=self._jitter_source
        )

    def reclaim_stale(self) -> int:
        """Return orphaned ``processing`` messages to the retry path.

        Each reclaimed row backs off from its own failed-attempt count.
        """

        now = self._clock()
        records = self._store.reclaim_stale(
            stale_before=now - self._stale_after,
            max_retries=self._policy.max_retries,
            backoff=self._retry_delay,
            now=now,
        )
        for record in records:
            logger.warning(
                "message_processing_reclaimed",
                message_id=str(record.message.id),
                retry_count=record.message.retry_count,
                dead_lettered=record.dead_lettered,
            )
            if record.dead_lettered:
                MESSAGES_DEAD_LETTERED_TOTAL.labels(reason="stale_processing").inc()
        if records:
            MESSAGES_RECLAIMED_TOTAL.inc(len(records))
        return len(records)

    async def run_batch(
        self,
        processor: MessageProcessor,
        batch_size: int = DEFAULT_BATCH_SIZE,
        *,
        correlation_id: str | None = None,
    ) -> BatchResult:
        """Process up to ``batch_size`` eligible messages oldest-first.

        Args:
            processor: Downstream handler for each message
            batch_size: Maximum messages to load (1..MAX_BATCH_SIZE)
            correlation_id: Optional id bound to every log line of the run

        Returns:
            BatchResult with one outcome per loaded message

        Raises:
            ValueError: If batch_size is out of range
            RepositoryError: If the queue store fails; the run is aborted
        """
        if batch_size <= 0 or batch_size > MAX_BATCH_SIZE:
            msg = f"batch_size must be between 1 and {MAX_BATCH_SIZE}"
            raise ValueError(msg)

        started = time.perf_counter()
        with correlation_scope(correlation_id) as run_id:
            logger.info("batch_run_started", batch_size=batch_size)

            # store I/O runs off the event loop
            reclaimed = await asyncio.to_thread(self.reclaim_stale)
            messages = await asyncio.to_thread(
                self._store.list_pending,
                batch_size,
                max_retries=self._policy.max_retries,
                now=self._clock(),
            )

            results: list[ProcessingOutcome] = []
            for message in messages:
                outcome = await self._controller.process_one(message.id, processor)
                results.append(outcome)

            batch = BatchResult(
                processed_count=len(results),
                results=results,
                reclaimed_count=reclaimed,
            )
            duration = time.perf_counter() - started
            BATCH_DURATION_SECONDS.observe(duration)
            await asyncio.to_thread(self._record_queue_depth)
            logger.info(
                "batch_run_completed",
                correlation_id=run_id,
                processed=batch.processed_count,
                succeeded=batch.succeeded,
                failed=batch.failed,
                skipped=batch.skipped,
                reclaimed=reclaimed,
                duration_seconds=round(duration, 3),
            )
        return batch

    def run_batch_sync(
        self,
        processor: MessageProcessor,
        batch_size: int = DEFAULT_BATCH_SIZE,
        *,
        correlation_id: str | None = None,
    ) -> BatchResult:
        """Synchronous wrapper for schedulers that are not async."""
        loop = asyncio.new_event_loop()
        try:
            return loop.run_until_complete(
                self.run_batch(processor, batch_size, correlation_id=correlation_id)
            )
        finally:
            loop.close()

    def _record_queue_depth(self) -> None:
        for status, total in self._store.count_by_status().items():
            QUEUE_DEPTH.labels(status=status.value).set(total)


__all__ = ["BatchRunner"]
