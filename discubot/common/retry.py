"""Exponential backoff for calls to flaky remotes."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import is_retryable

logger = logging.getLogger("discubot.common.retry")

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 10.0


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1), capped."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call ``fn`` until it succeeds or attempts run out.

    Only errors accepted by ``should_retry`` are retried; anything else is
    raised immediately. The last error is re-raised once attempts are spent.
    A ``retry_after`` hint on the error wins over the computed delay when it
    is larger.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= max_attempts or not should_retry(e):
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            hint = getattr(e, "retry_after", None)
            if isinstance(hint, (int, float)) and hint > delay:
                delay = min(float(hint), max_delay)
            logger.warning(
                "Attempt %d/%d failed (%s), retrying in %.2fs",
                attempt, max_attempts, e, delay,
            )
            if on_retry:
                on_retry(attempt, e, delay)
            await sleep(delay)
            attempt += 1
