"""Repeat bounded rounds over the missing feeds until the missing set settles."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Iterable

from harvest import tracker
from harvest.config import LoopConfig
from harvest.logging import get_logger
from harvest.logging_events import log_event, monotonic_ms
from harvest.models import FeedDescriptor, HarvestReport, LoopState, RoundReport
from harvest.registry import unique_descriptors
from harvest.scheduler import BoundedScheduler
from harvest.sink import FeedSink
from harvest.utils.retry import jitter_delay_ms, round_delay_ms

SleepFunction = Callable[[float], Awaitable[None]]

_STOP_COMPLETE = "complete"
_STOP_PLATEAU = "plateau"
_STOP_MAX_ROUNDS = "max_rounds"


class ConvergenceLoop:
    """Drive rounds until two consecutive missing sets are equal.

    The loop starts from whatever the sink already holds, so a rerun only
    fetches what an earlier run did not store. It stops when a round leaves the
    missing set empty or unchanged, or when ``max_rounds`` is reached. Feeds
    whose last failure was permanent are not re-attempted when
    ``skip_permanent`` is set; they stay in the missing set, which is what makes
    the next round a plateau.
    """

    def __init__(
        self,
        scheduler: BoundedScheduler,
        sink: FeedSink,
        *,
        round_backoff_base_ms: int = 0,
        round_backoff_max_ms: int = 0,
        round_jitter_pct: int = 0,
        max_rounds: int | None = None,
        skip_permanent: bool = True,
        sleep: SleepFunction | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if max_rounds is not None and max_rounds <= 0:
            raise ValueError("max_rounds must be positive")
        self._scheduler = scheduler
        self._sink = sink
        self._backoff_base_ms = max(0, int(round_backoff_base_ms))
        self._backoff_max_ms = max(0, int(round_backoff_max_ms))
        self._jitter_pct = max(0, int(round_jitter_pct))
        self._max_rounds = max_rounds
        self._skip_permanent = skip_permanent
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._state = LoopState.START
        self._logger = get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: LoopConfig,
        scheduler: BoundedScheduler,
        sink: FeedSink,
    ) -> ConvergenceLoop:
        return cls(
            scheduler,
            sink,
            round_backoff_base_ms=config.round_backoff_base_ms,
            round_backoff_max_ms=config.round_backoff_max_ms,
            round_jitter_pct=config.round_jitter_pct,
            max_rounds=config.max_rounds,
            skip_permanent=config.skip_permanent,
        )

    @property
    def state(self) -> LoopState:
        return self._state

    async def run(self, descriptors: Iterable[FeedDescriptor]) -> HarvestReport:
        self._transition(LoopState.START)
        feeds = unique_descriptors(descriptors)
        requested = frozenset(descriptor.feed_id for descriptor in feeds)
        current = tracker.missing(requested, tracker.snapshot(self._sink))
        log_event(
            self._logger,
            "harvest.loop.started",
            requested=len(requested),
            missing=len(current),
            already_stored=len(requested) - len(current),
        )

        rounds: list[RoundReport] = []
        permanent: set[str] = set()
        stop_reason = _STOP_COMPLETE
        round_index = 0
        while current:
            round_index += 1
            self._transition(LoopState.ROUND_PENDING)
            attempt_ids = current - permanent if self._skip_permanent else current
            batch = tracker.select(feeds, attempt_ids)
            if batch:
                await self._pause_before(round_index)

            self._transition(LoopState.ROUND_DRAINING)
            started = monotonic_ms()
            outcomes = await self._scheduler.run_round(batch)
            duration_ms = monotonic_ms() - started

            self._transition(LoopState.RECONCILING)
            after = tracker.missing(requested, tracker.snapshot(self._sink))
            for outcome in outcomes:
                if outcome.permanent:
                    permanent.add(outcome.feed_id)
            report = RoundReport(
                index=round_index,
                attempted=tuple(descriptor.feed_id for descriptor in batch),
                outcomes=outcomes,
                missing_before=current,
                missing_after=after,
                peak_in_flight=self._scheduler.peak_in_flight,
                duration_ms=duration_ms,
            )
            rounds.append(report)
            self._log_round(report)

            if not after:
                stop_reason = _STOP_COMPLETE
                current = after
                break
            if after == current:
                stop_reason = _STOP_PLATEAU
                break
            current = after
            if self._max_rounds is not None and round_index >= self._max_rounds:
                stop_reason = _STOP_MAX_ROUNDS
                break

        self._transition(LoopState.CONVERGED)
        log_event(
            self._logger,
            "harvest.loop.converged",
            level="info" if not current else "warning",
            reason=stop_reason,
            rounds=len(rounds),
            requested=len(requested),
            missing=len(current),
            meta={"missing_ids": sorted(current)},
        )
        return HarvestReport(
            requested=requested,
            missing=current,
            state=self._state,
            rounds=tuple(rounds),
            urls={descriptor.feed_id: descriptor.url for descriptor in feeds},
        )

    async def _pause_before(self, round_index: int) -> None:
        nominal = round_delay_ms(
            round_index,
            base_ms=self._backoff_base_ms,
            max_ms=self._backoff_max_ms,
        )
        if nominal <= 0:
            return
        delay_ms = jitter_delay_ms(nominal, self._jitter_pct, rng=self._rng)
        self._logger.info(
            "Waiting before next round",
            extra={
                "event": "harvest.round.backoff",
                "round": round_index,
                "delay_ms": int(delay_ms),
            },
        )
        await self._sleep(delay_ms / 1000.0)

    def _transition(self, state: LoopState) -> None:
        previous = self._state
        self._state = state
        log_event(
            self._logger,
            "harvest.loop.state",
            level="debug",
            previous=previous.value,
            state=state.value,
        )

    def _log_round(self, report: RoundReport) -> None:
        log_event(
            self._logger,
            "harvest.round.completed",
            round=report.index,
            attempted=len(report.attempted),
            succeeded=report.succeeded,
            failed=report.failed,
            missing_before=len(report.missing_before),
            missing_after=len(report.missing_after),
            peak_in_flight=report.peak_in_flight,
            duration_ms=report.duration_ms,
        )


__all__ = ["ConvergenceLoop", "SleepFunction"]
