from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    base_delay: float = 60.0,
    multiplier: float = 2.0,
    max_delay: float = 3600.0,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff for the given 1-based attempt."""
    delay = base_delay * multiplier ** max(attempt - 1, 0)
    if jitter:
        delay += random.uniform(0, jitter)
    return min(delay, max_delay)
