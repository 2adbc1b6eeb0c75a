"""Retry policy shared by the controller and the backoff calculator."""

from __future__ import annotations

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, model_validator

from inbound_queue.domain.queue_constants import (
    DEFAULT_BACKOFF_FACTOR,
    DEFAULT_INITIAL_DELAY_SECONDS,
    DEFAULT_JITTER_RATIO,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_MAX_RETRIES,
)


class RetryPolicy(BaseModel):
    """Immutable retry configuration, built once and passed by value."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=1)
    initial_delay_seconds: float = Field(default=DEFAULT_INITIAL_DELAY_SECONDS, ge=0.0)
    max_delay_seconds: float = Field(default=DEFAULT_MAX_DELAY_SECONDS, ge=0.0)
    backoff_factor: float = Field(default=DEFAULT_BACKOFF_FACTOR, ge=1.0)
    jitter_ratio: float = Field(default=DEFAULT_JITTER_RATIO, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> RetryPolicy:
        if self.max_delay_seconds < self.initial_delay_seconds:
            msg = "max_delay_seconds must be greater than or equal to initial_delay_seconds"
            raise ValueError(msg)
        return self

    @property
    def initial_delay(self) -> timedelta:
        return timedelta(seconds=self.initial_delay_seconds)

    @property
    def max_delay(self) -> timedelta:
        return timedelta(seconds=self.max_delay_seconds)

    def is_exhausted(self, retry_count: int) -> bool:
        """Return True when ``retry_count`` failed attempts use up the budget."""

        return retry_count >= self.max_retries


__all__ = ["RetryPolicy"]
