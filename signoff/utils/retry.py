"""Backoff helpers for retried notification deliveries."""

from __future__ import annotations

import asyncio
import random

MAX_BACKOFF_SECONDS = 60.0


def compute_backoff(
    attempt: int, base: float = 1.5, cap: float = MAX_BACKOFF_SECONDS
) -> float:
    """Exponential delay for ``attempt`` (1-based), with up to 25% jitter.

    A ``base`` of zero or less disables waiting, which tests rely on.
    """
    if base <= 0:
        return 0.0
    delay = min(base ** attempt, cap)
    return delay + random.uniform(0, delay * 0.25)


async def schedule_retry(attempt: int, base: float = 1.5) -> None:
    await asyncio.sleep(compute_backoff(attempt, base=base))
