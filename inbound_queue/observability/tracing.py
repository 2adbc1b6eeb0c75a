"""Correlation identifiers that tie together the log lines of one batch run."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

import structlog

from inbound_queue.config.logging_config import bind_context, unbind_context

CORRELATION_ID_KEY = "correlation_id"


def current_correlation_id() -> str | None:
    value = structlog.contextvars.get_contextvars().get(CORRELATION_ID_KEY)
    return str(value) if value is not None else None


@contextmanager
def correlation_scope(existing_id: str | None = None) -> Iterator[str]:
    """Bind a correlation id for the block, restoring any outer id afterwards."""

    outer_id = current_correlation_id()
    correlation_id = existing_id or outer_id or f"batch-{uuid4().hex[:12]}"
    bind_context(**{CORRELATION_ID_KEY: correlation_id})
    try:
        yield correlation_id
    finally:
        if outer_id is None:
            unbind_context(CORRELATION_ID_KEY)
        else:
            bind_context(**{CORRELATION_ID_KEY: outer_id})


__all__ = ["CORRELATION_ID_KEY", "correlation_scope", "current_correlation_id"]
