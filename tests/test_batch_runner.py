"""Tests for the batch runner."""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Any

import pytest
from structlog.testing import capture_logs

from inbound_queue.adapters.sqlite_queue_store import SQLiteQueueStore
from inbound_queue.domain.models import MessageStatus
from inbound_queue.domain.queue_constants import MAX_BATCH_SIZE
from inbound_queue.observability.tracing import current_correlation_id
from inbound_queue.workers import BatchRunner


@pytest.fixture
def runner(sqlite_store, policy, clock, no_jitter) -> BatchRunner:
    return BatchRunner(
        store=sqlite_store,
        policy=policy,
        clock=clock,
        jitter_source=no_jitter,
    )


class RecordingProcessor:
    """Processor that remembers senders and fails for selected ones."""

    def __init__(self, failures: dict[str, BaseException] | None = None) -> None:
        self.failures = failures or {}
        self.senders: list[str] = []

    async def __call__(
        self, user_id, platform, sender_id, recipient_id, content, received_at
    ) -> Any:
        self.senders.append(sender_id)
        if sender_id in self.failures:
            raise self.failures[sender_id]
        return "sent"


def _enqueue_many(store, message_factory, count: int) -> list:
    return [store.enqueue(message_factory(sender_id=f"psid-{i}")) for i in range(count)]


def test_batch_processes_oldest_first_up_to_batch_size(
    runner, sqlite_store, message_factory
) -> None:
    _enqueue_many(sqlite_store, message_factory, 4)
    processor = RecordingProcessor()

    result = asyncio.run(runner.run_batch(processor, batch_size=3))

    assert processor.senders == ["psid-0", "psid-1", "psid-2"]
    assert result.processed_count == 3
    assert result.succeeded == 3
    assert result.failed == 0
    assert sqlite_store.count_by_status()[MessageStatus.PENDING] == 1


def test_empty_queue_yields_empty_result(runner) -> None:
    result = asyncio.run(runner.run_batch(RecordingProcessor()))

    assert result.processed_count == 0
    assert result.results == []
    assert result.reclaimed_count == 0


def test_failure_of_one_message_does_not_stop_batch(
    runner, sqlite_store, message_factory, transient_error, permanent_error
) -> None:
    _enqueue_many(sqlite_store, message_factory, 3)
    processor = RecordingProcessor(
        {"psid-0": transient_error, "psid-1": permanent_error}
    )

    result = asyncio.run(runner.run_batch(processor))

    assert processor.senders == ["psid-0", "psid-1", "psid-2"]
    assert [o.success for o in result.results] == [False, False, True]
    assert [o.dead_lettered for o in result.results] == [False, True, False]
    assert result.failed == 2
    assert result.succeeded == 1


def test_retry_waits_for_backoff_window(
    runner, sqlite_store, message_factory, transient_error, clock
) -> None:
    message = sqlite_store.enqueue(message_factory(sender_id="psid-0"))
    processor = RecordingProcessor({"psid-0": transient_error})

    asyncio.run(runner.run_batch(processor))
    early = asyncio.run(runner.run_batch(processor))

    assert early.processed_count == 0
    assert processor.senders == ["psid-0"]

    clock.advance(seconds=1)
    later = asyncio.run(runner.run_batch(processor))

    assert [o.message_id for o in later.results] == [message.id]
    assert sqlite_store.get_message(message.id).retry_count == 2


def test_dead_lettered_messages_are_never_loaded(
    runner, sqlite_store, message_factory, permanent_error, clock
) -> None:
    sqlite_store.enqueue(message_factory(sender_id="psid-0"))
    processor = RecordingProcessor({"psid-0": permanent_error})

    asyncio.run(runner.run_batch(processor))
    clock.advance(hours=1)
    result = asyncio.run(runner.run_batch(processor))

    assert result.processed_count == 0
    assert processor.senders == ["psid-0"]


def test_stale_processing_messages_are_reclaimed_before_loading(
    runner, sqlite_store, message_factory, clock, policy
) -> None:
    message = sqlite_store.enqueue(message_factory(sender_id="psid-0"))
    sqlite_store.claim(message.id, max_retries=policy.max_retries, now=clock())
    clock.advance(minutes=16)
    processor = RecordingProcessor()

    first = asyncio.run(runner.run_batch(processor))

    assert first.reclaimed_count == 1
    assert first.processed_count == 0
    reclaimed = sqlite_store.get_message(message.id)
    assert reclaimed.status is MessageStatus.PENDING
    assert reclaimed.retry_count == 1

    clock.advance(seconds=1)
    second = asyncio.run(runner.run_batch(processor))

    assert second.succeeded == 1
    assert sqlite_store.get_message(message.id).status is MessageStatus.COMPLETED


def test_recent_processing_messages_are_left_alone(
    runner, sqlite_store, message_factory, clock, policy
) -> None:
    message = sqlite_store.enqueue(message_factory())
    sqlite_store.claim(message.id, max_retries=policy.max_retries, now=clock())
    clock.advance(minutes=5)

    assert runner.reclaim_stale() == 0
    assert sqlite_store.get_message(message.id).status is MessageStatus.PROCESSING


@pytest.mark.parametrize("batch_size", [0, -1, MAX_BATCH_SIZE + 1])
def test_batch_size_out_of_range_is_rejected(runner, batch_size) -> None:
    with pytest.raises(ValueError):
        asyncio.run(runner.run_batch(RecordingProcessor(), batch_size=batch_size))


def test_stale_after_must_be_positive(sqlite_store, policy) -> None:
    with pytest.raises(ValueError):
        BatchRunner(store=sqlite_store, policy=policy, stale_after=timedelta(0))


def test_run_batch_sync_wraps_async_run(runner, sqlite_store, message_factory) -> None:
    _enqueue_many(sqlite_store, message_factory, 2)

    result = runner.run_batch_sync(RecordingProcessor(), batch_size=5)

    assert result.succeeded == 2


def test_batch_logs_carry_correlation_id(runner, sqlite_store, message_factory) -> None:
    sqlite_store.enqueue(message_factory())
    seen: list[str | None] = []

    async def _processor(*args: Any) -> str:
        seen.append(current_correlation_id())
        return "sent"

    with capture_logs() as logs:
        asyncio.run(runner.run_batch(_processor, correlation_id="batch-test"))

    assert seen == ["batch-test"]
    completed = [log for log in logs if log["event"] == "batch_run_completed"]
    assert completed[0]["correlation_id"] == "batch-test"
    assert completed[0]["succeeded"] == 1
    assert current_correlation_id() is None


def test_reclaimed_message_backs_off_from_its_own_retry_count(
    runner, sqlite_store, message_factory, clock, policy
) -> None:
    message = sqlite_store.enqueue(message_factory())
    sqlite_store.claim(message.id, max_retries=policy.max_retries, now=clock())
    sqlite_store.fail_transient(
        message.id,
        error="Send API returned 503",
        max_retries=policy.max_retries,
        next_eligible_at=clock(),
        metadata={},
        now=clock(),
    )
    sqlite_store.claim(message.id, max_retries=policy.max_retries, now=clock())
    clock.advance(minutes=16)

    assert runner.reclaim_stale() == 1

    reclaimed = sqlite_store.get_message(message.id)
    assert reclaimed.retry_count == 2
    # second failed attempt: initial delay doubled once
    assert reclaimed.next_eligible_at == clock() + timedelta(
        seconds=policy.initial_delay_seconds * policy.backoff_factor
    )


class ListingBarrierStore(SQLiteQueueStore):
    """Holds ``list_pending`` until every concurrent batch has loaded its messages."""

    def __init__(self, db_path: str, parties: int) -> None:
        super().__init__(db_path)
        self._barrier = threading.Barrier(parties, timeout=5)

    def list_pending(self, limit, *, max_retries, now):
        messages = super().list_pending(limit, max_retries=max_retries, now=now)
        self._barrier.wait()
        return messages


def test_concurrent_batches_process_shared_message_once(
    tmp_path, policy, clock, no_jitter, message_factory
) -> None:
    store = ListingBarrierStore(str(tmp_path / "queue.sqlite"), parties=2)
    message = store.enqueue(message_factory())
    runners = [
        BatchRunner(store=store, policy=policy, clock=clock, jitter_source=no_jitter)
        for _ in range(2)
    ]
    processor = RecordingProcessor()

    async def _run_both():
        return await asyncio.gather(*(r.run_batch(processor) for r in runners))

    first, second = asyncio.run(_run_both())

    outcomes = first.results + second.results
    assert [outcome.message_id for outcome in outcomes] == [message.id, message.id]
    assert sorted(outcome.skipped for outcome in outcomes) == [False, True]
    assert processor.senders == ["psid-100"]
    assert store.get_message(message.id).status is MessageStatus.COMPLETED
    assert store.get_message(message.id).attempt_count == 1
