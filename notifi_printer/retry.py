"""Retry delay helpers."""

from __future__ import annotations

import random


def backoff_delay_seconds(attempt: int, *, base: float = 1.0, cap: float = 60.0, jitter: float = 0.0) -> float:
    """Exponential delay for the given 1-based attempt, bounded by ``cap``."""
    if attempt <= 0:
        return 0.0
    delay = min(cap, base * (2 ** (attempt - 1)))
    if jitter:
        delay += random.uniform(-jitter, jitter)
    return max(0.0, min(cap, delay))
