from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass, field

from harvest.models import FailureKind, FeedDescriptor, FetchOutcome
from harvest.sink import FeedSink

OK = "ok"
FAIL = "fail"
PERMANENT = "permanent"


async def chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        await asyncio.sleep(0)
        yield part


def feeds(*feed_ids: str) -> list[FeedDescriptor]:
    return [
        FeedDescriptor(feed_id=feed_id, url=f"https://feeds.example/{feed_id}.zip")
        for feed_id in feed_ids
    ]


@dataclass
class ConcurrencyGauge:
    active: int = 0
    max_active: int = 0

    def enter(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)

    def leave(self) -> None:
        self.active -= 1


@dataclass
class ScriptedFetcher:
    """Fake fetch function following a per-feed script of attempt results.

    The last step of a script repeats once it is exhausted; feeds without a
    script always succeed.
    """

    sink: FeedSink
    script: Mapping[str, Sequence[str]] = field(default_factory=dict)
    delay: float = 0.0
    gauge: ConcurrencyGauge = field(default_factory=ConcurrencyGauge)
    attempts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    async def __call__(self, descriptor: FeedDescriptor) -> FetchOutcome:
        feed_id = descriptor.feed_id
        attempt = self.attempts[feed_id]
        self.attempts[feed_id] += 1
        plan = self.script.get(feed_id, (OK,))
        step = plan[min(attempt, len(plan) - 1)]
        self.gauge.enter()
        try:
            await asyncio.sleep(self.delay)
            if step == OK:
                written = await self.sink.write_stream(
                    feed_id, chunks(f"{feed_id}:{attempt}".encode())
                )
                return FetchOutcome.success(feed_id, bytes_written=written, status_code=200)
            if step == PERMANENT:
                return FetchOutcome.transport_failure(
                    feed_id,
                    "server responded with HTTP 404",
                    kind=FailureKind.HTTP_STATUS,
                    retryable=False,
                    status_code=404,
                )
            return FetchOutcome.transport_failure(
                feed_id, "connection refused", kind=FailureKind.CONNECT
            )
        finally:
            self.gauge.leave()
