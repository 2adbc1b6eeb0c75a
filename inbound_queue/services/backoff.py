"""Jittered exponential backoff and an in-process retry helper."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import TypeVar

from inbound_queue.config.logging_config import get_logger
from inbound_queue.domain.retry_policy import RetryPolicy
from inbound_queue.services.error_classifier import is_transient_error

logger = get_logger(__name__)

T = TypeVar("T")

JitterSource = Callable[[float, float], float]


def compute_backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    *,
    jitter_source: JitterSource = random.uniform,
) -> timedelta:
    """Delay before retry number ``attempt`` (1-based).

    ``min(max_delay, initial_delay * backoff_factor ** (attempt - 1))`` scaled by a
    uniform factor in ``[1 - jitter_ratio / 2, 1 + jitter_ratio / 2]``. The jittered
    value is clamped to ``max_delay`` as well.
    """

    if attempt < 1:
        msg = "attempt must be >= 1"
        raise ValueError(msg)

    try:
        base = policy.initial_delay_seconds * policy.backoff_factor ** (attempt - 1)
    except OverflowError:
        base = policy.max_delay_seconds
    base = min(policy.max_delay_seconds, base)

    half_spread = policy.jitter_ratio / 2
    factor = jitter_source(1.0 - half_spread, 1.0 + half_spread)
    delay = min(policy.max_delay_seconds, max(0.0, base * factor))
    return timedelta(seconds=delay)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException, int], bool] | None = None,
    on_retry: Callable[[int, BaseException], Awaitable[None]] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    jitter_source: JitterSource = random.uniform,
) -> T:
    """Call ``fn`` until it succeeds or ``policy.max_retries`` retries are used.

    Intended for collaborators (token lookups, outbound API calls) that want a
    short in-process retry. Queue-level retries never go through this helper.

    Args:
        fn: Zero-argument coroutine factory
        policy: Retry policy
        should_retry: Decides whether ``(error, attempt)`` is worth another try.
            Defaults to retrying transient errors only.
        on_retry: Awaited before each retry with ``(attempt, last_error)``
        sleep: Awaitable sleep, injectable for tests
        jitter_source: Uniform random source, injectable for tests

    Raises:
        The last error raised by ``fn`` once retries are exhausted or refused.
    """

    decide = should_retry or (lambda error, _attempt: is_transient_error(error))
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            logger.warning(
                "retry_attempt_failed",
                attempt=attempt + 1,
                max_attempts=policy.max_retries + 1,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if attempt >= policy.max_retries or not decide(exc, attempt):
                logger.error(
                    "retry_gave_up",
                    attempts=attempt + 1,
                    error_type=type(exc).__name__,
                )
                raise

            attempt += 1
            delay = compute_backoff_delay(attempt, policy, jitter_source=jitter_source)
            logger.info(
                "retry_scheduled",
                attempt=attempt,
                max_retries=policy.max_retries,
                delay_seconds=round(delay.total_seconds(), 3),
            )
            await sleep(delay.total_seconds())
            if on_retry is not None:
                await on_retry(attempt, exc)


__all__ = ["JitterSource", "compute_backoff_delay", "retry_with_backoff"]
