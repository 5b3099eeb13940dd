"""
Bounded exponential-backoff retries for provider calls.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, NamedTuple, Optional

from core.exceptions import DeliveryError

logger = logging.getLogger(__name__)


class RetryResult(NamedTuple):
    value: Any
    attempts: int


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number ``attempt`` (0-based), with up to 10% jitter."""
    delay = min(base * (2 ** attempt), cap)
    return delay + random.uniform(0, 0.1 * delay)


async def retry_transient(
    operation: Callable[[int], Awaitable[Any]],
    *,
    max_attempts: int = 3,
    backoff_base: float = 1.0,
    backoff_max: float = 10.0,
    label: str = "provider call",
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> RetryResult:
    """
    Run ``operation(attempt_number)`` until it succeeds, raises a
    non-retryable ``DeliveryError``, or ``max_attempts`` is reached.

    The attempt number (1-based) lets the operation check for the effect
    of an earlier, ambiguous attempt before repeating it.  The raised error
    carries ``attempts`` so the outcome can report it.
    """
    sleep = sleep or asyncio.sleep
    max_attempts = max(1, max_attempts)

    for attempt in range(1, max_attempts + 1):
        try:
            return RetryResult(await operation(attempt), attempt)
        except DeliveryError as exc:
            exc.attempts = attempt
            if not exc.retryable or attempt == max_attempts:
                raise
            delay = backoff_delay(attempt - 1, backoff_base, backoff_max)
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %.1fs",
                label,
                attempt,
                max_attempts,
                exc,
                delay,
            )
            await sleep(delay)

    raise AssertionError("unreachable")
