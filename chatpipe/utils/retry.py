"""Bounded retry with fixed backoff for channel delivery calls."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")


async def retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff_ms: int,
) -> T:
    """Run ``operation`` up to ``attempts`` times, sleeping ``backoff_ms`` between tries.

    Backoff is fixed: delivery failures are expected to be short network blips.
    The last exception is re-raised once the attempts are used up.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")

    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            if attempt < attempts:
                logger.debug(f"Retry {attempt}/{attempts} failed: {e}; retrying in {backoff_ms}ms")
                await asyncio.sleep(backoff_ms / 1000)

    assert last_error is not None
    raise last_error
