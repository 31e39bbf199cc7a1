"""
Bounded retry with exponential backoff.

Responsibilities:
- Re-run a failing awaitable with doubling delays
- Stop immediately on errors that signal bad input
- Run best-effort operations whose failure is logged, not raised

Backoff waits go through an injectable `sleep` coroutine so they suspend the
event loop task instead of a thread, and so tests can record the delays.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from app.core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]

NON_RETRYABLE_SIGNALS = ("invalid", "missing")

# Storage operations
STORAGE_MAX_RETRIES = 3
STORAGE_INITIAL_DELAY = 1.0

# Inference is slower and deserves a longer first wait
INFERENCE_MAX_RETRIES = 3
INFERENCE_INITIAL_DELAY = 2.0


def is_retryable(error: BaseException) -> bool:
    """
    Decide whether an error is worth another attempt.

    Only `Exception` subclasses are retried, so task cancellation propagates.
    Errors may opt out explicitly with `retryable = False`; otherwise a message
    mentioning invalid or missing input is treated as a caller mistake.
    """
    if not isinstance(error, Exception):
        return False
    if getattr(error, "retryable", True) is False:
        return False
    message = str(error).lower()
    return not any(signal in message for signal in NON_RETRYABLE_SIGNALS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = STORAGE_MAX_RETRIES,
    initial_delay: float = STORAGE_INITIAL_DELAY,
    sleep: Sleep = asyncio.sleep,
    jitter: float = 0.0,
    description: str = "operation",
) -> T:
    """
    Await `operation()` up to `max_retries` times.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        max_retries: Total attempts, including the first
        initial_delay: Seconds to wait after the first failure; doubles after each
        sleep: Coroutine used for the backoff wait
        jitter: Adds up to `initial_delay * jitter` random seconds to every wait (0 disables)
        description: Label used in log lines

    Returns:
        The operation's result

    Raises:
        The last observed error once attempts are exhausted, or the first
        non-retryable error immediately.
    """
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    wait = wait_exponential(multiplier=initial_delay, exp_base=2)
    if jitter:
        wait = wait + wait_random(0, initial_delay * jitter)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries),
        wait=wait,
        retry=retry_if_exception(is_retryable),
        sleep=sleep,
        reraise=True,
        before_sleep=before_sleep_log(logger, logging.WARNING),
    )

    try:
        async for attempt in retrying:
            with attempt:
                result = await operation()
    except Exception as e:
        logger.error(f"{description} failed: {e}")
        raise
    return result


@dataclass
class Outcome(Generic[T]):
    """Result of a best-effort operation. The caller decides what to do with a failure."""
    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None


async def best_effort(operation: Callable[[], Awaitable[T]], description: str) -> Outcome[T]:
    """Await `operation()` and capture any failure instead of raising it."""
    try:
        return Outcome(ok=True, value=await operation())
    except Exception as e:
        logger.warning(f"Best-effort {description} failed: {e}")
        return Outcome(ok=False, error=e)
