"""Concurrency primitives shared across harvest components."""

from __future__ import annotations

from contextlib import asynccontextmanager

__all__ = ["InFlightGauge"]


class InFlightGauge:
    """Track how many operations are in flight and the peak reached."""

    def __init__(self) -> None:
        self._current = 0
        self._peak = 0

    @property
    def current(self) -> int:
        return self._current

    @property
    def peak(self) -> int:
        return self._peak

    def reset(self) -> None:
        if self._current:
            raise RuntimeError("cannot reset a gauge with operations in flight")
        self._peak = 0

    @asynccontextmanager
    async def track(self):
        # Single event loop: increments and decrements never interleave.
        self._current += 1
        if self._current > self._peak:
            self._peak = self._current
        try:
            yield
        finally:
            self._current -= 1
