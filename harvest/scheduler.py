"""Run fetches for one round under a fixed concurrency ceiling."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Sequence

from harvest.config import DEFAULT_CONCURRENCY
from harvest.logging import get_logger
from harvest.models import FailureKind, FeedDescriptor, FetchOutcome
from harvest.utils.concurrency import InFlightGauge

FetchFunction = Callable[[FeedDescriptor], Awaitable[FetchOutcome]]


class BoundedScheduler:
    """Execute a round of fetches with at most ``concurrency`` in flight.

    ``min(concurrency, len(descriptors))`` workers share one queue. A worker
    only takes the next descriptor after its current fetch produced an
    outcome, so the ceiling holds for the whole round and the tail drains as
    the queue empties. :meth:`run_round` returns once every descriptor has an
    outcome.
    """

    def __init__(self, fetch: FetchFunction, *, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self._fetch = fetch
        self._concurrency = int(concurrency)
        self._gauge = InFlightGauge()
        self._logger = get_logger(__name__)

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def in_flight(self) -> int:
        return self._gauge.current

    @property
    def peak_in_flight(self) -> int:
        """Highest number of concurrent fetches observed in the last round."""

        return self._gauge.peak

    async def run_round(
        self, descriptors: Sequence[FeedDescriptor]
    ) -> tuple[FetchOutcome, ...]:
        """Fetch every descriptor and return the outcomes in input order."""

        items = list(descriptors)
        self._gauge.reset()
        if not items:
            return ()

        queue: deque[tuple[int, FeedDescriptor]] = deque(enumerate(items))
        results: list[FetchOutcome | None] = [None] * len(items)
        worker_count = min(self._concurrency, len(items))
        workers = [
            asyncio.create_task(self._worker_loop(index, queue, results))
            for index in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        outcomes = tuple(result for result in results if result is not None)
        if len(outcomes) != len(items):  # pragma: no cover - workers drain the queue
            raise RuntimeError("round finished with unaccounted descriptors")
        return outcomes

    async def _worker_loop(
        self,
        worker_index: int,
        queue: deque[tuple[int, FeedDescriptor]],
        results: list[FetchOutcome | None],
    ) -> None:
        while queue:
            position, descriptor = queue.popleft()
            results[position] = await self._run_one(worker_index, descriptor)

    async def _run_one(self, worker_index: int, descriptor: FeedDescriptor) -> FetchOutcome:
        async with self._gauge.track():
            try:
                return await self._fetch(descriptor)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.exception(
                    "Fetch raised unexpectedly",
                    extra={
                        "event": "harvest.round.fetch_crashed",
                        "feed_id": descriptor.feed_id,
                        "worker": worker_index,
                    },
                )
                return FetchOutcome.transport_failure(
                    descriptor.feed_id,
                    f"unexpected error: {exc}",
                    kind=FailureKind.TRANSPORT,
                    retryable=True,
                )


__all__ = ["BoundedScheduler", "FetchFunction"]
