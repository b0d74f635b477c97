"""Exponential backoff for outbound model calls."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_ms: int = 1000,
    jitter_min_ms: int = 0,
    jitter_max_ms: int = 0,
    label: str = "call",
) -> T:
    """Call ``fn`` until it succeeds or ``max_retries`` retries are used up.

    Delay before retry N (0-based) is ``base_delay_ms * 2**N`` plus a
    uniform jitter. The last exception is re-raised.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= max_retries:
                raise

            delay_ms = base_delay_ms * (2**attempt)
            if jitter_max_ms > 0:
                delay_ms += random.uniform(jitter_min_ms, jitter_max_ms)

            logger.warning(
                f"{label} failed (attempt {attempt + 1}/{max_retries + 1}): {e}; "
                f"retrying in {delay_ms:.0f}ms"
            )
            await asyncio.sleep(delay_ms / 1000)
            attempt += 1
