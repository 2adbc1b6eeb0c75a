"""Enqueue use case.

Entry point for the webhook collaborator once an inbound event has been
verified and normalized.
"""

from datetime import datetime
from typing import Any

from inbound_queue.config.logging_config import get_logger
from inbound_queue.domain.models import Platform, QueuedMessage, QueuedMessageCreate
from inbound_queue.observability.metrics import MESSAGES_ENQUEUED_TOTAL
from inbound_queue.ports.queue_store import QueueStorePort

logger = get_logger(__name__)


def enqueue_message_use_case(
    store: QueueStorePort,
    *,
    user_id: str,
    platform: Platform | str,
    sender_id: str,
    recipient_id: str,
    content: dict[str, Any],
    received_at: datetime,
) -> QueuedMessage:
    """Persist an inbound message as ``pending``.

    The queue does not deduplicate; callers that need idempotency must
    check before enqueueing.

    Raises:
        pydantic.ValidationError: If the message fields are invalid
        RepositoryError: If the queue store is unavailable
    """
    request = QueuedMessageCreate(
        user_id=user_id,
        platform=platform,
        sender_id=sender_id,
        recipient_id=recipient_id,
        content=content,
        received_at=received_at,
    )
    message = store.enqueue(request)
    MESSAGES_ENQUEUED_TOTAL.labels(platform=message.platform.value).inc()
    logger.info(
        "message_enqueued",
        message_id=str(message.id),
        user_id=message.user_id,
        platform=message.platform.value,
    )
    return message


__all__ = ["enqueue_message_use_case"]
