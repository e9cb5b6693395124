"""Wire configuration into a runnable harvest."""

from __future__ import annotations

from dataclasses import dataclass
from collections.abc import Mapping

import httpx

from harvest.config import HarvestConfig, load_runtime_env
from harvest.convergence import ConvergenceLoop
from harvest.fetcher import FeedFetcher
from harvest.headers import HeaderTable
from harvest.logging import get_logger
from harvest.models import FeedDescriptor, HarvestReport
from harvest.registry import load_registry
from harvest.scheduler import BoundedScheduler
from harvest.sink import FileSystemSink

logger = get_logger(__name__)


@dataclass(slots=True)
class HarvestRuntime:
    """Objects participating in one harvest run."""

    sink: FileSystemSink
    fetcher: FeedFetcher
    scheduler: BoundedScheduler
    loop: ConvergenceLoop

    async def aclose(self) -> None:
        await self.fetcher.aclose()


def load_header_table(
    config: HarvestConfig, env: Mapping[str, str] | None = None
) -> HeaderTable:
    if not config.fetch.headers_file:
        return HeaderTable()
    if env is None:
        env = load_runtime_env()
    table = HeaderTable.load(config.fetch.headers_file, env=env)
    logger.info(
        "Loaded header table",
        extra={
            "event": "harvest.config.headers_loaded",
            "path": config.fetch.headers_file,
            "feeds": len(table),
        },
    )
    return table


def build_harvest_runtime(
    config: HarvestConfig,
    *,
    header_table: HeaderTable | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HarvestRuntime:
    sink = FileSystemSink(config.sink.directory, extension=config.sink.extension)
    fetcher = FeedFetcher.from_config(
        config.fetch,
        sink,
        header_table=header_table,
        max_connections=config.loop.concurrency,
        transport=transport,
    )
    scheduler = BoundedScheduler(fetcher.fetch, concurrency=config.loop.concurrency)
    loop = ConvergenceLoop.from_config(config.loop, scheduler, sink)
    return HarvestRuntime(sink=sink, fetcher=fetcher, scheduler=scheduler, loop=loop)


def load_descriptors(config: HarvestConfig) -> list[FeedDescriptor]:
    """Configured extra feeds followed by the registry feeds.

    Extra feeds come first so they win over a registry entry with the same ID.
    """

    descriptors: list[FeedDescriptor] = list(config.registry.extra_feeds)
    if config.registry.directory:
        descriptors.extend(load_registry(config.registry.directory))
    return descriptors


async def run_harvest(
    config: HarvestConfig,
    *,
    env: Mapping[str, str] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HarvestReport:
    descriptors = load_descriptors(config)
    runtime = build_harvest_runtime(
        config,
        header_table=load_header_table(config, env),
        transport=transport,
    )
    try:
        return await runtime.loop.run(descriptors)
    finally:
        await runtime.aclose()


__all__ = [
    "HarvestRuntime",
    "build_harvest_runtime",
    "load_descriptors",
    "load_header_table",
    "run_harvest",
]
