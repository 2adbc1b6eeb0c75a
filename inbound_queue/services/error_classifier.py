"""Map processor failures onto transient / permanent.

Rules, first match wins:

1. Explicit declarations: ``NonRetryableError`` is permanent, ``RetryableError``
   is transient.
2. Network-level failures (connection reset, timeout, DNS) are transient.
3. HTTP 429 and 5xx are transient.
4. Messages naming an unavailable dependency are transient.
5. Everything else is permanent.
"""

from __future__ import annotations

import asyncio
import socket
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from inbound_queue.domain.classification_constants import (
    DEPENDENCY_UNAVAILABLE_MARKERS,
    NETWORK_ERRNOS,
    NETWORK_ERROR_CODES,
    NETWORK_MESSAGE_MARKERS,
    RATE_LIMIT_STATUS,
    SERVER_ERROR_MAX_STATUS,
    SERVER_ERROR_MIN_STATUS,
)
from inbound_queue.domain.exceptions import NonRetryableError, RetryableError
from inbound_queue.domain.queue_constants import ERROR_SUMMARY_MAX_LENGTH


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


def extract_status_code(error: BaseException) -> int | None:
    """Find an HTTP status on the error or on an attached ``response``."""

    candidates: list[Any] = [
        getattr(error, "status_code", None),
        getattr(error, "status", None),
    ]
    response = getattr(error, "response", None)
    if response is not None:
        candidates.append(getattr(response, "status_code", None))
        candidates.append(getattr(response, "status", None))

    for candidate in candidates:
        if isinstance(candidate, bool):
            continue
        if isinstance(candidate, int):
            return candidate
        if isinstance(candidate, str) and candidate.isdigit():
            return int(candidate)
    return None


def _error_code(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code.upper()
    return None


def _is_network_error(error: BaseException) -> bool:
    if isinstance(
        error, (ConnectionError, TimeoutError, asyncio.TimeoutError, socket.gaierror)
    ):
        return True

    errno_value = getattr(error, "errno", None)
    if isinstance(errno_value, int) and errno_value in NETWORK_ERRNOS:
        return True

    code = _error_code(error)
    if code is not None and code in NETWORK_ERROR_CODES:
        return True

    message = str(error).lower()
    return any(marker in message for marker in NETWORK_MESSAGE_MARKERS)


def _is_retryable_status(status: int | None) -> bool:
    if status is None:
        return False
    return status == RATE_LIMIT_STATUS or (
        SERVER_ERROR_MIN_STATUS <= status <= SERVER_ERROR_MAX_STATUS
    )


def _names_unavailable_dependency(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in DEPENDENCY_UNAVAILABLE_MARKERS)


def classify_error(error: BaseException) -> ErrorKind:
    """Classify ``error`` as transient or permanent."""

    if isinstance(error, NonRetryableError):
        return ErrorKind.PERMANENT
    if isinstance(error, RetryableError):
        return ErrorKind.TRANSIENT
    if _is_network_error(error):
        return ErrorKind.TRANSIENT
    if _is_retryable_status(extract_status_code(error)):
        return ErrorKind.TRANSIENT
    if _names_unavailable_dependency(error):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


def is_transient_error(error: BaseException) -> bool:
    return classify_error(error) is ErrorKind.TRANSIENT


def short_error(error: BaseException) -> str:
    """One-line error text safe to hand back to callers."""

    text = str(error).strip() or type(error).__name__
    text = " ".join(text.split())
    if len(text) > ERROR_SUMMARY_MAX_LENGTH:
        return text[: ERROR_SUMMARY_MAX_LENGTH - 3] + "..."
    return text


def summarize_error(
    error: BaseException, context: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Standardized, JSON-friendly description of ``error`` for the status log."""

    status = extract_status_code(error)
    code = _error_code(error) or (str(status) if status is not None else None)
    return {
        "message": str(error),
        "type": type(error).__name__,
        "code": code or "UNKNOWN_ERROR",
        "status": status,
        "kind": classify_error(error).value,
        "context": dict(context or {}),
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }


__all__ = [
    "ErrorKind",
    "classify_error",
    "extract_status_code",
    "is_transient_error",
    "short_error",
    "summarize_error",
]
