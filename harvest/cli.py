"""Command line entry point for harvesting static transit feeds."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Mapping, Sequence
from dataclasses import replace
import sys

from harvest import __version__
from harvest.config import HarvestConfig, load_runtime_env
from harvest.errors import ConfigurationError, RegistryError
from harvest.logging import configure_logging, get_logger
from harvest.models import HarvestReport
from harvest.registry import parse_extra_feeds
from harvest.runtime import run_harvest

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_MISSING = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="transit-harvest",
        description=(
            "Download every static GTFS feed of a feed registry into a directory, "
            "repeating rounds over the missing feeds until nothing changes."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--registry", help="DMFR directory containing *.json feed files")
    parser.add_argument(
        "--no-registry",
        action="store_true",
        help="Only harvest the feeds given with --feed",
    )
    parser.add_argument("--sink", help="Directory receiving <feed_id>.zip files")
    parser.add_argument(
        "--concurrency",
        type=int,
        help="Maximum number of downloads in flight",
    )
    parser.add_argument("--headers", help="JSON file mapping feed IDs to extra headers")
    parser.add_argument(
        "--feed",
        action="append",
        default=[],
        metavar="ID=URL",
        help="Additional feed to harvest (repeatable)",
    )
    parser.add_argument("--max-rounds", type=int, help="Stop after this many rounds")
    parser.add_argument("--timeout-ms", type=int, help="Per-request read timeout")
    parser.add_argument("--log-level", help="Logging level (default INFO)")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 1 when feeds are still missing after convergence",
    )
    return parser


def apply_overrides(config: HarvestConfig, args: argparse.Namespace) -> HarvestConfig:
    """Return ``config`` with the command line flags applied on top."""

    registry = config.registry
    if args.no_registry:
        registry = replace(registry, directory=None)
    elif args.registry:
        registry = replace(registry, directory=args.registry)
    if args.feed:
        registry = replace(
            registry,
            extra_feeds=registry.extra_feeds + tuple(parse_extra_feeds(args.feed)),
        )

    sink = replace(config.sink, directory=args.sink) if args.sink else config.sink

    fetch = config.fetch
    if args.headers:
        fetch = replace(fetch, headers_file=args.headers)
    if args.timeout_ms is not None:
        if args.timeout_ms < 100:
            raise ConfigurationError("--timeout-ms must be at least 100")
        fetch = replace(fetch, timeout_ms=args.timeout_ms)

    loop = config.loop
    if args.concurrency is not None:
        if args.concurrency < 1:
            raise ConfigurationError("--concurrency must be at least 1")
        loop = replace(loop, concurrency=args.concurrency)
    if args.max_rounds is not None:
        if args.max_rounds < 1:
            raise ConfigurationError("--max-rounds must be at least 1")
        loop = replace(loop, max_rounds=args.max_rounds)

    logging_config = config.logging
    if args.log_level:
        logging_config = replace(logging_config, level=args.log_level.upper())

    return replace(
        config,
        registry=registry,
        sink=sink,
        fetch=fetch,
        loop=loop,
        logging=logging_config,
    )


def print_report(report: HarvestReport, stream=None) -> None:
    out = stream or sys.stdout
    for feed_id, url in report.missing_feeds():
        print(f"{feed_id}\t{url}" if url else feed_id, file=out)
    print(f"Total feeds missing: {report.missing_count}", file=out)


def main(argv: Sequence[str] | None = None, *, env: Mapping[str, str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    runtime_env = load_runtime_env(env)
    try:
        config = apply_overrides(HarvestConfig.from_env(runtime_env), args)
    except ConfigurationError as exc:
        parser.print_usage(sys.stderr)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        configure_logging(config.logging.level, config.logging.log_file)
    except OSError as exc:
        print(f"error: cannot open log file {config.logging.log_file}: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        report = asyncio.run(run_harvest(config, env=runtime_env))
    except (ConfigurationError, RegistryError) as exc:
        logger.error(
            "Harvest could not start",
            extra={"event": "harvest.cli.aborted", "error": str(exc)},
        )
        return EXIT_CONFIG

    print_report(report)
    if args.strict and not report.complete:
        return EXIT_MISSING
    return EXIT_OK


if __name__ == "__main__":  # pragma: no cover - manual execution
    sys.exit(main())
