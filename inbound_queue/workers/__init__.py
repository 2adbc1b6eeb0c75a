"""Worker package exports."""

from inbound_queue.workers.batch_runner import BatchRunner
from inbound_queue.workers.controller import (
    MessageProcessingController,
    MessageProcessor,
)

__all__ = [
    "BatchRunner",
    "MessageProcessingController",
    "MessageProcessor",
]
