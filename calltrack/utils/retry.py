"""Async retry with exponential backoff and jitter, plus a timeout wrapper.

Cancellation is cooperative: both helpers await asyncio primitives, so
cancelling the calling task interrupts a pending backoff sleep or timeout.

Usage:
    from calltrack.utils.retry import retry_async
    data = await retry_async(
        lambda: fetch(url),
        retries=2,
        should_retry=lambda exc, attempt: isinstance(exc, TransientError),
    )
"""

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    *,
    min_delay: float = 0.3,
    max_delay: float = 10.0,
    factor: float = 2.0,
    jitter: bool = True,
) -> float:
    """Delay in seconds before retry number ``attempt + 1`` (±30% jitter)."""
    base = min(max_delay, min_delay * (factor ** attempt))
    if jitter:
        return base * (0.7 + random.random() * 0.6)
    return base


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 0,
    min_delay: float = 0.3,
    max_delay: float = 10.0,
    factor: float = 2.0,
    jitter: bool = True,
    should_retry: Callable[[BaseException, int], bool] | None = None,
    on_retry: Callable[[BaseException, int, float], None] | None = None,
) -> T:
    """Call ``fn`` until it succeeds or ``retries`` extra attempts are used.

    Re-raises the last error. ``retries=0`` means a single attempt.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= retries or (should_retry and not should_retry(exc, attempt)):
                raise
            delay = backoff_delay(
                attempt, min_delay=min_delay, max_delay=max_delay, factor=factor, jitter=jitter
            )
            if on_retry:
                on_retry(exc, attempt + 1, delay)
            await asyncio.sleep(delay)
            attempt += 1


async def with_timeout(aw: Awaitable[T], seconds: float, message: str = "Operation timed out") -> T:
    """Await ``aw`` for at most ``seconds``; raises TimeoutError(message)."""
    try:
        return await asyncio.wait_for(aw, timeout=max(0.0, seconds))
    except asyncio.TimeoutError as exc:
        raise TimeoutError(message) from exc
