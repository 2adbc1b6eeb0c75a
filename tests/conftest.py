"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from inbound_queue.adapters.sqlite_queue_store import SQLiteQueueStore
from inbound_queue.domain.exceptions import ProcessorError
from inbound_queue.domain.models import Platform, QueuedMessageCreate
from inbound_queue.domain.retry_policy import RetryPolicy


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 10, 10, 10, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedProcessor:
    """Processor that raises the scripted errors in order, then succeeds."""

    def __init__(self, *errors: BaseException, result: Any = None) -> None:
        self._errors = list(errors)
        self.result = result if result is not None else {"reply_id": "mid.1"}
        self.calls: list[tuple[Any, ...]] = []

    async def __call__(
        self,
        user_id: str,
        platform: Platform,
        sender_id: str,
        recipient_id: str,
        content: dict[str, Any],
        received_at: datetime,
    ) -> Any:
        self.calls.append(
            (user_id, platform, sender_id, recipient_id, content, received_at)
        )
        if self._errors:
            raise self._errors.pop(0)
        return self.result


@pytest.fixture
def sqlite_store(tmp_path: Path) -> Generator[SQLiteQueueStore, None, None]:
    """SQLite queue store on a fresh temporary database file."""

    store = SQLiteQueueStore(db_path=str(tmp_path / "queue.sqlite"))
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy()


@pytest.fixture
def no_jitter() -> Callable[[float, float], float]:
    """Jitter source that always returns the midpoint factor (1.0)."""

    def _midpoint(low: float, high: float) -> float:
        return (low + high) / 2

    return _midpoint


@pytest.fixture
def message_factory() -> Callable[..., QueuedMessageCreate]:
    def _build(**overrides: Any) -> QueuedMessageCreate:
        data: dict[str, Any] = {
            "user_id": "user-1",
            "platform": Platform.FACEBOOK,
            "sender_id": "psid-100",
            "recipient_id": "page-200",
            "content": {"text": "Hi, is the shop open today?"},
            "received_at": datetime(2025, 10, 10, 9, 59, tzinfo=UTC),
        }
        data.update(overrides)
        return QueuedMessageCreate(**data)

    return _build


@pytest.fixture
def transient_error() -> ProcessorError:
    return ProcessorError("Send API returned 503", status_code=503)


@pytest.fixture
def permanent_error() -> ProcessorError:
    return ProcessorError("Invalid recipient", status_code=400)


@pytest.fixture
def processor_factory() -> Callable[..., ScriptedProcessor]:
    return ScriptedProcessor
