"""Tests for dead-letter administration."""

from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from uuid import uuid4

import pytest
from prometheus_client import REGISTRY
from structlog.testing import capture_logs

from inbound_queue.domain.exceptions import DeadLetterStateError, MessageNotFoundError
from inbound_queue.domain.models import (
    DeadLetterReplayResult,
    DeadLetterStatus,
    MessageStatus,
    ProcessingStage,
    QueuedMessageCreate,
)
from inbound_queue.use_cases.dead_letters import (
    list_dead_letters_use_case,
    replay_dead_letter_use_case,
    resolve_dead_letter_use_case,
)


@pytest.fixture
def dead_letter(sqlite_store, message_factory, clock):
    message = sqlite_store.enqueue(message_factory(platform="instagram"))
    sqlite_store.claim(message.id, max_retries=3, now=clock())
    record = sqlite_store.fail_permanent(
        message.id,
        error="Invalid recipient",
        metadata={"reason": "permanent_error"},
        now=clock(),
    )
    return record.dead_letter


def test_list_filters_by_status(sqlite_store, dead_letter, clock) -> None:
    assert [e.id for e in list_dead_letters_use_case(sqlite_store)] == [dead_letter.id]
    assert list_dead_letters_use_case(sqlite_store, status=DeadLetterStatus.RESOLVED) == []

    resolve_dead_letter_use_case(sqlite_store, dead_letter.id, clock=clock)

    resolved = list_dead_letters_use_case(sqlite_store, status=DeadLetterStatus.RESOLVED)
    assert [e.id for e in resolved] == [dead_letter.id]


def test_replay_enqueues_fresh_message(sqlite_store, dead_letter, clock) -> None:
    result = replay_dead_letter_use_case(sqlite_store, dead_letter.id, clock=clock)

    replayed = result.message
    assert replayed.id != dead_letter.message_id
    assert replayed.status is MessageStatus.PENDING
    assert replayed.retry_count == 0
    assert replayed.platform.value == "instagram"
    assert replayed.sender_id == "psid-100"
    assert replayed.recipient_id == "page-200"
    assert replayed.content == json.loads(dead_letter.message_content)

    assert result.dead_letter.status is DeadLetterStatus.RETRYING
    assert result.dead_letter.metadata["replayed_message_id"] == str(replayed.id)
    assert result.dead_letter.metadata["replayed_at"] == clock().isoformat()

    original = sqlite_store.get_message(dead_letter.message_id)
    assert original.status is MessageStatus.FAILED
    assert sqlite_store.list_events(original.id)[-1].stage == (
        ProcessingStage.REPLAYED.value
    )


def test_replay_requires_failed_entry(sqlite_store, dead_letter, clock) -> None:
    replay_dead_letter_use_case(sqlite_store, dead_letter.id, clock=clock)

    with pytest.raises(DeadLetterStateError):
        replay_dead_letter_use_case(sqlite_store, dead_letter.id, clock=clock)


def test_replay_rejects_entry_without_routing_metadata(
    sqlite_store, dead_letter, mocker
) -> None:
    broken = dead_letter.model_copy(update={"metadata": {}})
    mocker.patch.object(sqlite_store, "get_dead_letter", return_value=broken)

    with pytest.raises(DeadLetterStateError):
        replay_dead_letter_use_case(sqlite_store, dead_letter.id)

    assert sqlite_store.count_by_status()[MessageStatus.PENDING] == 0


def test_resolve_records_note_and_is_idempotent(sqlite_store, dead_letter, clock) -> None:
    resolved = resolve_dead_letter_use_case(
        sqlite_store, dead_letter.id, note="customer contacted", clock=clock
    )

    assert resolved.status is DeadLetterStatus.RESOLVED
    assert resolved.metadata["resolution_note"] == "customer contacted"
    assert resolved.metadata["resolved_at"] == clock().isoformat()

    clock.advance(hours=1)
    again = resolve_dead_letter_use_case(sqlite_store, dead_letter.id, clock=clock)
    assert again.updated_at == resolved.updated_at


def test_resolve_after_replay(sqlite_store, dead_letter, clock) -> None:
    replay_dead_letter_use_case(sqlite_store, dead_letter.id, clock=clock)

    resolved = resolve_dead_letter_use_case(sqlite_store, dead_letter.id, clock=clock)

    assert resolved.status is DeadLetterStatus.RESOLVED
    assert "replayed_message_id" in resolved.metadata


@pytest.mark.parametrize(
    "action", [replay_dead_letter_use_case, resolve_dead_letter_use_case]
)
def test_unknown_entry_raises_not_found(sqlite_store, action) -> None:
    with pytest.raises(MessageNotFoundError):
        action(sqlite_store, uuid4())


def test_replayed_message_keeps_original_received_at(
    sqlite_store, dead_letter, clock, message_factory
) -> None:
    expected: QueuedMessageCreate = message_factory()

    result = replay_dead_letter_use_case(sqlite_store, dead_letter.id, clock=clock)

    assert result.message.received_at == expected.received_at


def test_concurrent_replays_of_one_entry_enqueue_once(
    sqlite_store, dead_letter, clock, mocker
) -> None:
    read_entry = sqlite_store.get_dead_letter
    barrier = threading.Barrier(2, timeout=5)
    lock = threading.Lock()
    reads = [0]

    def _read_then_wait(dead_letter_id):
        entry = read_entry(dead_letter_id)
        with lock:
            reads[0] += 1
            hold = reads[0] <= 2
        if hold:
            # both operators have seen the entry as failed before either writes
            barrier.wait()
        return entry

    mocker.patch.object(sqlite_store, "get_dead_letter", side_effect=_read_then_wait)

    def _replay():
        try:
            return replay_dead_letter_use_case(sqlite_store, dead_letter.id, clock=clock)
        except DeadLetterStateError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(lambda _: _replay(), range(2)))

    replays = [o for o in outcomes if isinstance(o, DeadLetterReplayResult)]
    conflicts = [o for o in outcomes if isinstance(o, DeadLetterStateError)]
    assert len(replays) == 1
    assert len(conflicts) == 1
    assert sqlite_store.count_by_status()[MessageStatus.PENDING] == 1
    stages = [e.stage for e in sqlite_store.list_events(dead_letter.message_id)]
    assert stages.count(ProcessingStage.REPLAYED.value) == 1


def test_replay_counts_as_enqueue_and_logs(sqlite_store, dead_letter, clock) -> None:
    before = (
        REGISTRY.get_sample_value(
            "inbound_queue_messages_enqueued_total", {"platform": "instagram"}
        )
        or 0.0
    )

    with capture_logs() as logs:
        result = replay_dead_letter_use_case(sqlite_store, dead_letter.id, clock=clock)

    replayed = [log for log in logs if log["event"] == "dead_letter_replayed"]
    assert replayed[0]["replayed_message_id"] == str(result.message.id)
    after = REGISTRY.get_sample_value(
        "inbound_queue_messages_enqueued_total", {"platform": "instagram"}
    )
    assert after == before + 1
