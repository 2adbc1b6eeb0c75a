"""Custom exception hierarchy for the inbound message queue.

Following error taxonomy: retryable, non-retryable, infrastructure.
"""


class InboundQueueError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(InboundQueueError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(InboundQueueError):
    """Errors that should not be retried (validation, auth, logic errors)."""

    pass


class ValidationError(NonRetryableError):
    """Data validation errors."""

    pass


class RateLimitError(RetryableError):
    """Downstream API rate limit exceeded."""

    status_code = 429

    def __init__(self, retry_after: int | None = None) -> None:
        """Initialize with optional retry_after seconds."""
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Retry after: {retry_after}s")


class DependencyUnavailableError(RetryableError):
    """A collaborator the processor depends on is temporarily not available."""

    pass


class ProcessorError(InboundQueueError):
    """Failure raised by a message processor, optionally carrying an HTTP status.

    Classification is left to the error classifier: a 5xx or 429 status makes
    it transient, anything else permanent.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class MessageNotFoundError(NonRetryableError):
    """Queued message or dead-letter entry does not exist."""

    pass


class DeadLetterStateError(NonRetryableError):
    """Dead-letter entry is not in a state that allows the requested action."""

    pass


class RepositoryError(InboundQueueError):
    """Database/storage errors.

    Never classified per message: a failing queue store aborts the whole
    batch invocation.
    """

    pass


class QueueStoreUnavailableError(RepositoryError):
    """Queue store is not configured or cannot be reached."""

    pass
