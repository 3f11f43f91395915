from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    base_ms: float = 1_000,
    jitter: float = 0.25,
    max_ms: float = 30_000,
    multiplier: float = 1.0,
) -> float:
    """Compute exponential backoff with jitter, in seconds.

    ``attempt`` is the number of the attempt that just failed, starting at 1.
    """
    delay = base_ms * (2 ** max(attempt - 1, 0))
    delay += random.uniform(0, delay * jitter)
    delay *= multiplier
    return min(delay, max_ms) / 1000
