from __future__ import annotations

import random

import pytest

from harvest.config import LoopConfig
from harvest.convergence import ConvergenceLoop
from harvest.models import FeedDescriptor, LoopState
from harvest.scheduler import BoundedScheduler
from harvest.sink import MemorySink
from tests.helpers import FAIL, OK, PERMANENT, ScriptedFetcher, chunks, feeds


class _RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _loop(
    fetcher: ScriptedFetcher,
    *,
    concurrency: int = 4,
    sleep: _RecordingSleep | None = None,
    **kwargs,
) -> ConvergenceLoop:
    scheduler = BoundedScheduler(fetcher, concurrency=concurrency)
    return ConvergenceLoop(
        scheduler,
        fetcher.sink,
        sleep=sleep or _RecordingSleep(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_all_feeds_succeeding_halts_after_one_round() -> None:
    sink = MemorySink()
    fetcher = ScriptedFetcher(sink)
    loop = _loop(fetcher)

    report = await loop.run(feeds("a", "b", "c"))

    assert len(report.rounds) == 1
    assert report.missing == frozenset()
    assert report.complete
    assert report.missing_count == 0
    assert sink.list_ids() == frozenset({"a", "b", "c"})


@pytest.mark.asyncio
async def test_report_keeps_url_of_each_missing_feed() -> None:
    fetcher = ScriptedFetcher(MemorySink(), script={"b": [PERMANENT]})
    loop = _loop(fetcher)

    report = await loop.run(feeds("a", "b"))

    assert report.missing_feeds() == [("b", "https://feeds.example/b.zip")]


@pytest.mark.asyncio
async def test_transient_failure_is_recovered_in_second_round() -> None:
    sink = MemorySink()
    fetcher = ScriptedFetcher(sink, script={"b": [FAIL, OK]})
    loop = _loop(fetcher)

    report = await loop.run(feeds("a", "b"))

    assert len(report.rounds) == 2
    assert report.rounds[0].missing_after == frozenset({"b"})
    assert report.rounds[1].attempted == ("b",)
    assert report.missing == frozenset()
    assert fetcher.attempts == {"a": 1, "b": 2}
    assert sink.read("b") == b"b:1"


@pytest.mark.asyncio
async def test_repeated_failure_halts_on_plateau() -> None:
    sink = MemorySink()
    fetcher = ScriptedFetcher(sink, script={"b": [FAIL]})
    loop = _loop(fetcher)

    report = await loop.run(feeds("a", "b"))

    assert len(report.rounds) == 2
    assert report.rounds[0].missing_after == report.rounds[1].missing_after
    assert report.missing == frozenset({"b"})
    assert report.converged
    assert not report.complete
    assert fetcher.attempts["b"] == 2


@pytest.mark.asyncio
async def test_missing_set_never_grows_between_rounds() -> None:
    sink = MemorySink()
    fetcher = ScriptedFetcher(
        sink,
        script={"b": [FAIL, OK], "c": [FAIL, FAIL, OK], "d": [FAIL]},
    )
    loop = _loop(fetcher, concurrency=2)

    report = await loop.run(feeds("a", "b", "c", "d"))

    for round_report in report.rounds:
        assert round_report.missing_after <= round_report.missing_before
    assert report.missing == frozenset({"d"})


@pytest.mark.asyncio
async def test_feeds_already_in_sink_are_not_fetched_again() -> None:
    sink = MemorySink()
    await sink.write_stream("a", chunks(b"from an earlier run"))
    fetcher = ScriptedFetcher(sink)
    loop = _loop(fetcher)

    report = await loop.run(feeds("a", "b"))

    assert report.rounds[0].attempted == ("b",)
    assert "a" not in fetcher.attempts
    assert sink.read("a") == b"from an earlier run"


@pytest.mark.asyncio
async def test_complete_sink_runs_no_rounds() -> None:
    sink = MemorySink()
    await sink.write_stream("a", chunks(b"1"))
    fetcher = ScriptedFetcher(sink)
    loop = _loop(fetcher)

    report = await loop.run(feeds("a"))

    assert report.rounds == ()
    assert report.complete
    assert report.state is LoopState.CONVERGED
    assert fetcher.attempts == {}


@pytest.mark.asyncio
async def test_empty_request_converges_immediately() -> None:
    loop = _loop(ScriptedFetcher(MemorySink()))

    report = await loop.run([])

    assert report.requested == frozenset()
    assert report.rounds == ()
    assert loop.state is LoopState.CONVERGED


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried_by_default() -> None:
    sink = MemorySink()
    fetcher = ScriptedFetcher(sink, script={"b": [PERMANENT]})
    loop = _loop(fetcher)

    report = await loop.run(feeds("a", "b"))

    assert fetcher.attempts["b"] == 1
    assert len(report.rounds) == 2
    assert report.rounds[1].attempted == ()
    assert report.missing == frozenset({"b"})


@pytest.mark.asyncio
async def test_permanent_failure_is_retried_when_skipping_is_disabled() -> None:
    sink = MemorySink()
    fetcher = ScriptedFetcher(sink, script={"b": [PERMANENT]})
    loop = _loop(fetcher, skip_permanent=False)

    report = await loop.run(feeds("a", "b"))

    assert fetcher.attempts["b"] == 2
    assert report.missing == frozenset({"b"})


@pytest.mark.asyncio
async def test_rounds_back_off_exponentially() -> None:
    sleep = _RecordingSleep()
    fetcher = ScriptedFetcher(MemorySink(), script={"b": [FAIL, OK], "c": [FAIL, FAIL, OK]})
    loop = _loop(
        fetcher,
        sleep=sleep,
        round_backoff_base_ms=100,
        round_backoff_max_ms=1_000,
        round_jitter_pct=0,
    )

    report = await loop.run(feeds("a", "b", "c"))

    assert len(report.rounds) == 3
    assert sleep.calls == [0.1, 0.2]


@pytest.mark.asyncio
async def test_backoff_jitter_stays_within_bounds() -> None:
    sleep = _RecordingSleep()
    fetcher = ScriptedFetcher(MemorySink(), script={"b": [FAIL, OK]})
    loop = _loop(
        fetcher,
        sleep=sleep,
        round_backoff_base_ms=1_000,
        round_backoff_max_ms=10_000,
        round_jitter_pct=20,
        rng=random.Random(7),
    )

    await loop.run(feeds("a", "b"))

    assert len(sleep.calls) == 1
    assert 0.8 <= sleep.calls[0] <= 1.2


@pytest.mark.asyncio
async def test_no_pause_before_a_round_with_nothing_to_attempt() -> None:
    sleep = _RecordingSleep()
    fetcher = ScriptedFetcher(MemorySink(), script={"b": [PERMANENT]})
    loop = _loop(fetcher, sleep=sleep, round_backoff_base_ms=100)

    await loop.run(feeds("a", "b"))

    assert sleep.calls == []


@pytest.mark.asyncio
async def test_max_rounds_caps_the_loop() -> None:
    fetcher = ScriptedFetcher(MemorySink(), script={"b": [FAIL, OK], "c": [FAIL, FAIL, OK]})
    loop = _loop(fetcher, max_rounds=2)

    report = await loop.run(feeds("a", "b", "c"))

    assert len(report.rounds) == 2
    assert report.missing == frozenset({"c"})
    assert report.state is LoopState.CONVERGED


@pytest.mark.asyncio
async def test_duplicate_ids_are_fetched_once() -> None:
    sink = MemorySink()
    fetcher = ScriptedFetcher(sink)
    loop = _loop(fetcher)
    descriptors = [
        FeedDescriptor(feed_id="a", url="https://first.example/a.zip"),
        FeedDescriptor(feed_id="a", url="https://second.example/a.zip"),
        FeedDescriptor(feed_id="b", url="https://first.example/b.zip"),
    ]

    report = await loop.run(descriptors)

    assert report.requested == frozenset({"a", "b"})
    assert fetcher.attempts == {"a": 1, "b": 1}


@pytest.mark.asyncio
async def test_round_reports_count_outcomes_and_peak() -> None:
    fetcher = ScriptedFetcher(MemorySink(), script={"c": [FAIL]}, delay=0.01)
    loop = _loop(fetcher, concurrency=2)

    report = await loop.run(feeds("a", "b", "c"))

    first = report.rounds[0]
    assert first.index == 1
    assert first.succeeded == 2
    assert first.failed == 1
    assert first.peak_in_flight == 2


def test_from_config_uses_loop_settings() -> None:
    config = LoopConfig(
        concurrency=3,
        round_backoff_base_ms=0,
        round_backoff_max_ms=0,
        round_jitter_pct=0,
        max_rounds=1,
        skip_permanent=False,
    )
    fetcher = ScriptedFetcher(MemorySink())
    scheduler = BoundedScheduler(fetcher, concurrency=config.concurrency)

    loop = ConvergenceLoop.from_config(config, scheduler, fetcher.sink)

    assert loop.state is LoopState.START


def test_max_rounds_must_be_positive() -> None:
    fetcher = ScriptedFetcher(MemorySink())
    scheduler = BoundedScheduler(fetcher, concurrency=1)

    with pytest.raises(ValueError):
        ConvergenceLoop(scheduler, fetcher.sink, max_rounds=0)
