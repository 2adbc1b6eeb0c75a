"""Prometheus metrics for the inbound message queue.

The exporter is never started on import; entry points call
``ensure_metrics_exporter()`` when metrics were requested.
"""

from __future__ import annotations

import os
import threading
from typing import Final

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from inbound_queue.config.logging_config import get_logger

logger = get_logger(__name__)

MESSAGES_ENQUEUED_TOTAL: Final[Counter] = Counter(
    "inbound_queue_messages_enqueued_total",
    "Total number of messages accepted into the queue",
    labelnames=("platform",),
)

MESSAGES_PROCESSED_TOTAL: Final[Counter] = Counter(
    "inbound_queue_messages_processed_total",
    "Processing attempts by outcome",
    labelnames=("outcome",),
)

MESSAGES_RECLAIMED_TOTAL: Final[Counter] = Counter(
    "inbound_queue_messages_reclaimed_total",
    "Messages whose processing lease expired and were reclaimed",
)

MESSAGES_DEAD_LETTERED_TOTAL: Final[Counter] = Counter(
    "inbound_queue_messages_dead_lettered_total",
    "Messages moved to the dead-letter store",
    labelnames=("reason",),
)

BATCH_DURATION_SECONDS: Final[Histogram] = Histogram(
    "inbound_queue_batch_duration_seconds",
    "Duration of batch runs in seconds",
)

QUEUE_DEPTH: Final[Gauge] = Gauge(
    "inbound_queue_messages",
    "Messages currently stored per status",
    labelnames=("status",),
)

OUTCOME_SUCCEEDED: Final[str] = "succeeded"
OUTCOME_RETRY_SCHEDULED: Final[str] = "retry_scheduled"
OUTCOME_DEAD_LETTERED: Final[str] = "dead_lettered"
OUTCOME_SKIPPED: Final[str] = "skipped"

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False
_DEFAULT_METRICS_PORT: Final[int] = 9000
_METRICS_PORT_ENV: Final[str] = "METRICS_PORT"


def _resolve_metrics_port() -> int:
    port_raw = os.getenv(_METRICS_PORT_ENV)
    try:
        return int(port_raw) if port_raw else _DEFAULT_METRICS_PORT
    except ValueError:
        logger.warning("invalid_metrics_port", port=port_raw)
        return _DEFAULT_METRICS_PORT


def ensure_metrics_exporter(port: int | None = None) -> int:
    """Start Prometheus HTTP exporter once per process and return its port."""

    global _EXPORTER_STARTED
    resolved_port = port if port is not None else _resolve_metrics_port()
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return resolved_port

        try:
            start_http_server(resolved_port)
        except OSError as exc:
            logger.error(
                "metrics_exporter_start_failed",
                port=resolved_port,
                error=str(exc),
            )
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=resolved_port)
    return resolved_port


__all__ = [
    "BATCH_DURATION_SECONDS",
    "MESSAGES_DEAD_LETTERED_TOTAL",
    "MESSAGES_ENQUEUED_TOTAL",
    "MESSAGES_PROCESSED_TOTAL",
    "MESSAGES_RECLAIMED_TOTAL",
    "OUTCOME_DEAD_LETTERED",
    "OUTCOME_RETRY_SCHEDULED",
    "OUTCOME_SKIPPED",
    "OUTCOME_SUCCEEDED",
    "QUEUE_DEPTH",
    "ensure_metrics_exporter",
]
