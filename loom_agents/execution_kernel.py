"""Retry primitives for the provider boundary."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


# -- Backoff strategies ----------------------------------------------------


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0.5, 1.5)
    return min(delay * jitter, max_delay)


def linear_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Linear backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (attempt + 1)
    jitter = random.uniform(0.8, 1.2)
    return min(delay * jitter, max_delay)


def fixed_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Fixed delay (no escalation), capped at *max_delay*."""
    return min(base_delay, max_delay)


@dataclass
class RetryPolicy:
    """Reusable retry configuration for provider calls.

    Attributes:
        max_retries: How many times to retry on transient failure.
        base_delay: Starting delay for backoff (seconds).
        max_delay: Cap on backoff delay (seconds).
        on_retry: ``(attempt, error, delay)`` callback fired before each sleep.
        backoff: Backoff function ``(attempt, base_delay, max_delay) → delay``.
            Defaults to :func:`exponential_backoff`.
    """

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 30.0
    on_retry: Callable[[int, Exception, float], None] | None = None
    backoff: Callable[[int, float, float], float] | None = None


async def run_async_with_retry(
    *,
    caller: str,
    model: str,
    policy: RetryPolicy,
    invoke: Callable[[int], Awaitable[T]],
    should_retry: Callable[[Exception], bool],
    logger: logging.Logger,
    on_error: Callable[[Exception, int], None] | None = None,
) -> T:
    """Execute async attempts with shared retry behavior."""
    backoff = policy.backoff or exponential_backoff
    for attempt in range(policy.max_retries + 1):
        try:
            result = await invoke(attempt)
        except Exception as exc:
            if on_error is not None:
                on_error(exc, attempt)
            if not should_retry(exc) or attempt >= policy.max_retries:
                raise

            delay = backoff(attempt, policy.base_delay, policy.max_delay)
            if policy.on_retry is not None:
                policy.on_retry(attempt, exc, delay)
            logger.warning(
                "%s attempt %d/%d for %s failed (retrying in %.1fs): %s",
                caller,
                attempt + 1,
                policy.max_retries + 1,
                model,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
        else:
            if attempt > 0:
                logger.info("%s succeeded after %d retries", caller, attempt)
            return result

    raise RuntimeError("run_async_with_retry exhausted without returning")
