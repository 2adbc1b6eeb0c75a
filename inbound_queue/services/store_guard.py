"""Construction-time validation of injected queue store handles."""

from __future__ import annotations

from typing import Final, cast

from inbound_queue.config.logging_config import get_logger
from inbound_queue.domain.exceptions import QueueStoreUnavailableError
from inbound_queue.ports.queue_store import MessageStorePort

logger = get_logger(__name__)

REQUIRED_STORE_METHODS: Final[tuple[str, ...]] = (
    "enqueue",
    "get_message",
    "list_pending",
    "claim",
    "succeed",
    "fail_transient",
    "fail_permanent",
    "reclaim_stale",
    "count_by_status",
    "append_event",
    "list_events",
    "get_dead_letter",
    "get_dead_letter_for_message",
    "list_dead_letters",
    "update_dead_letter_status",
    "replay_dead_letter",
)


def ensure_message_store(store: object) -> MessageStorePort:
    """Return ``store`` if it implements every store operation.

    Raises:
        QueueStoreUnavailableError: If ``store`` is missing or incomplete
    """

    if store is None:
        raise QueueStoreUnavailableError("Queue store is not configured")

    missing = [
        name for name in REQUIRED_STORE_METHODS if not callable(getattr(store, name, None))
    ]
    if missing:
        logger.error(
            "queue_store_incomplete",
            store=type(store).__name__,
            missing=missing,
        )
        raise QueueStoreUnavailableError(
            f"{type(store).__name__} does not provide required store methods: "
            + ", ".join(missing)
        )
    return cast(MessageStorePort, store)


__all__ = ["REQUIRED_STORE_METHODS", "ensure_message_store"]
