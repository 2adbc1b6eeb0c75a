"""Markers used by the error classifier to recognise transient failures."""

import errno
from typing import Final

NETWORK_ERROR_CODES: Final[frozenset[str]] = frozenset(
    {
        "ECONNRESET",
        "ECONNREFUSED",
        "ECONNABORTED",
        "ETIMEDOUT",
        "ENOTFOUND",
        "EAI_AGAIN",
        "EPIPE",
    }
)

NETWORK_ERRNOS: Final[frozenset[int]] = frozenset(
    {
        errno.ECONNRESET,
        errno.ECONNREFUSED,
        errno.ECONNABORTED,
        errno.ETIMEDOUT,
        errno.EPIPE,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
    }
)

# Lowercased substrings; matched against the lowercased error message.
NETWORK_MESSAGE_MARKERS: Final[tuple[str, ...]] = (
    "econnreset",
    "etimedout",
    "enotfound",
    "econnaborted",
    "connection reset",
    "connection refused",
    "timed out",
    "timeout",
    "network",
    "name resolution",
)

DEPENDENCY_UNAVAILABLE_MARKERS: Final[tuple[str, ...]] = (
    "database connection",
    "not available",
    "temporarily unavailable",
    "service unavailable",
)

RATE_LIMIT_STATUS: Final[int] = 429
SERVER_ERROR_MIN_STATUS: Final[int] = 500
SERVER_ERROR_MAX_STATUS: Final[int] = 599

__all__ = [
    "DEPENDENCY_UNAVAILABLE_MARKERS",
    "NETWORK_ERRNOS",
    "NETWORK_ERROR_CODES",
    "NETWORK_MESSAGE_MARKERS",
    "RATE_LIMIT_STATUS",
    "SERVER_ERROR_MAX_STATUS",
    "SERVER_ERROR_MIN_STATUS",
]
