"""Backoff helpers used between harvest rounds."""

from __future__ import annotations

import random


def round_delay_ms(round_index: int, *, base_ms: int, max_ms: int) -> int:
    """Return the nominal delay before round ``round_index`` (1-based).

    The first round never waits; every later round doubles the delay, capped at
    ``max_ms``. A non-positive ``base_ms`` disables the delay entirely.
    """

    if round_index <= 1 or base_ms <= 0:
        return 0
    delay = int(base_ms) * (2 ** (round_index - 2))
    if max_ms > 0:
        delay = min(delay, int(max_ms))
    return delay


def jitter_delay_ms(
    delay_ms: int, jitter_pct: int, *, rng: random.Random | None = None
) -> float:
    """Spread ``delay_ms`` uniformly by ``jitter_pct`` percent in both directions."""

    delay = max(0, int(delay_ms))
    pct = max(0, int(jitter_pct))
    if delay <= 0 or pct <= 0:
        return float(delay)
    jitter = delay * pct / 100.0
    lower = max(0.0, delay - jitter)
    upper = delay + jitter
    source = rng or random
    return source.uniform(lower, upper)


__all__ = [
    "jitter_delay_ms",
    "round_delay_ms",
]
