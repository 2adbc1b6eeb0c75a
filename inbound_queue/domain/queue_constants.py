"""Domain constants for queue processing and retry policy."""

from datetime import timedelta
from typing import Final

DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_INITIAL_DELAY_SECONDS: Final[float] = 0.5
DEFAULT_MAX_DELAY_SECONDS: Final[float] = 10.0
DEFAULT_BACKOFF_FACTOR: Final[float] = 2.0
DEFAULT_JITTER_RATIO: Final[float] = 0.4

DEFAULT_BATCH_SIZE: Final[int] = 5
MAX_BATCH_SIZE: Final[int] = 100

PROCESSING_STALE_AFTER: Final[timedelta] = timedelta(minutes=15)

ERROR_SUMMARY_MAX_LENGTH: Final[int] = 500

STALE_PROCESSING_ERROR: Final[str] = "Processing lease expired before completion"

__all__ = [
    "DEFAULT_BACKOFF_FACTOR",
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_INITIAL_DELAY_SECONDS",
    "DEFAULT_JITTER_RATIO",
    "DEFAULT_MAX_DELAY_SECONDS",
    "DEFAULT_MAX_RETRIES",
    "ERROR_SUMMARY_MAX_LENGTH",
    "MAX_BATCH_SIZE",
    "PROCESSING_STALE_AFTER",
    "STALE_PROCESSING_ERROR",
]
