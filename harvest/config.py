"""Runtime configuration for the harvester."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any

from harvest.errors import ConfigurationError
from harvest.logging import get_logger
from harvest.models import FeedDescriptor

logger = get_logger(__name__)

DEFAULT_REGISTRY_DIR = "transitland-atlas/feeds"
DEFAULT_SINK_DIR = "gtfs"
DEFAULT_SINK_EXTENSION = ".zip"
DEFAULT_CONCURRENCY = 100
DEFAULT_TIMEOUT_MS = 60_000
DEFAULT_CONNECT_TIMEOUT_MS = 10_000
DEFAULT_DEADLINE_MS = 1_800_000
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64; rv:122.0) Gecko/20100101 Firefox/122.0"
)
DEFAULT_ROUND_BACKOFF_BASE_MS = 1_000
DEFAULT_ROUND_BACKOFF_MAX_MS = 60_000
DEFAULT_ROUND_JITTER_PCT = 20
DEFAULT_SKIP_PERMANENT = True
DEFAULT_LOG_LEVEL = "INFO"


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    env_values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        env_values[key.strip()] = value.strip().strip('"').strip("'")
    return env_values


def load_runtime_env(env: Mapping[str, str] | None = None) -> dict[str, str]:
    """Merge the optional ``HARVEST_ENV_FILE`` under the process environment."""

    base = dict(os.environ if env is None else env)
    raw_path = base.get("HARVEST_ENV_FILE")
    if not raw_path:
        return base
    path = Path(raw_path).expanduser()
    file_values = _load_env_file(path)
    if not file_values:
        logger.warning(
            "Environment file is missing or empty",
            extra={"event": "harvest.config.env_file_empty", "path": str(path)},
        )
    merged = dict(file_values)
    merged.update(base)
    return merged


@dataclass(slots=True, frozen=True)
class FetchConfig:
    timeout_ms: int
    connect_timeout_ms: int
    deadline_ms: int
    user_agent: str
    headers_file: str | None

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> FetchConfig:
        headers_file = env.get("HARVEST_HEADERS_FILE")
        return cls(
            timeout_ms=_bounded_int(
                env.get("HARVEST_TIMEOUT_MS"),
                default=DEFAULT_TIMEOUT_MS,
                minimum=100,
            ),
            connect_timeout_ms=_bounded_int(
                env.get("HARVEST_CONNECT_TIMEOUT_MS"),
                default=DEFAULT_CONNECT_TIMEOUT_MS,
                minimum=100,
            ),
            deadline_ms=_bounded_int(
                env.get("HARVEST_DEADLINE_MS"),
                default=DEFAULT_DEADLINE_MS,
                minimum=0,
            ),
            user_agent=str(env.get("HARVEST_USER_AGENT") or DEFAULT_USER_AGENT),
            headers_file=str(headers_file).strip() if headers_file else None,
        )


@dataclass(slots=True, frozen=True)
class SinkConfig:
    directory: str
    extension: str

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> SinkConfig:
        extension = env.get("HARVEST_SINK_EXTENSION")
        return cls(
            directory=str(env.get("HARVEST_SINK_DIR") or DEFAULT_SINK_DIR),
            extension=str(extension) if extension is not None else DEFAULT_SINK_EXTENSION,
        )


@dataclass(slots=True, frozen=True)
class LoopConfig:
    concurrency: int
    round_backoff_base_ms: int
    round_backoff_max_ms: int
    round_jitter_pct: int
    max_rounds: int | None
    skip_permanent: bool

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> LoopConfig:
        max_rounds = _parse_optional_int(env.get("HARVEST_MAX_ROUNDS"), minimum=1)
        skip_raw = env.get("HARVEST_SKIP_PERMANENT")
        return cls(
            concurrency=_bounded_int(
                env.get("HARVEST_CONCURRENCY"),
                default=DEFAULT_CONCURRENCY,
                minimum=1,
            ),
            round_backoff_base_ms=_bounded_int(
                env.get("HARVEST_ROUND_BACKOFF_BASE_MS"),
                default=DEFAULT_ROUND_BACKOFF_BASE_MS,
                minimum=0,
            ),
            round_backoff_max_ms=_bounded_int(
                env.get("HARVEST_ROUND_BACKOFF_MAX_MS"),
                default=DEFAULT_ROUND_BACKOFF_MAX_MS,
                minimum=0,
            ),
            round_jitter_pct=_bounded_int(
                env.get("HARVEST_ROUND_JITTER_PCT"),
                default=DEFAULT_ROUND_JITTER_PCT,
                minimum=0,
                maximum=100,
            ),
            max_rounds=max_rounds,
            skip_permanent=_as_bool(
                str(skip_raw) if skip_raw is not None else None,
                default=DEFAULT_SKIP_PERMANENT,
            ),
        )


@dataclass(slots=True, frozen=True)
class RegistryConfig:
    directory: str | None
    extra_feeds: tuple[FeedDescriptor, ...]

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> RegistryConfig:
        from harvest.registry import parse_extra_feeds

        raw_dir = env.get("HARVEST_REGISTRY_DIR")
        directory = DEFAULT_REGISTRY_DIR if raw_dir is None else (str(raw_dir).strip() or None)
        return cls(
            directory=directory,
            extra_feeds=tuple(parse_extra_feeds(env.get("HARVEST_EXTRA_FEEDS"))),
        )


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str
    log_file: str | None

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> LoggingConfig:
        log_file = env.get("HARVEST_LOG_FILE")
        return cls(
            level=str(env.get("HARVEST_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper(),
            log_file=str(log_file) if log_file else None,
        )


@dataclass(slots=True, frozen=True)
class HarvestConfig:
    registry: RegistryConfig
    sink: SinkConfig
    fetch: FetchConfig
    loop: LoopConfig
    logging: LoggingConfig

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> HarvestConfig:
        return cls(
            registry=RegistryConfig.from_env(env),
            sink=SinkConfig.from_env(env),
            fetch=FetchConfig.from_env(env),
            loop=LoopConfig.from_env(env),
            logging=LoggingConfig.from_env(env),
        )

    @classmethod
    def load(cls, env: Mapping[str, str] | None = None) -> HarvestConfig:
        return cls.from_env(load_runtime_env(env))


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _parse_optional_int(value: Any, *, minimum: int | None = None) -> int | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        resolved = int(text)
    except ValueError as exc:
        raise ConfigurationError(f"expected an integer, got {text!r}") from exc
    if minimum is not None and resolved < minimum:
        raise ConfigurationError(f"expected an integer >= {minimum}, got {resolved}")
    return resolved


__all__ = [
    "FetchConfig",
    "HarvestConfig",
    "LoggingConfig",
    "LoopConfig",
    "RegistryConfig",
    "SinkConfig",
    "load_runtime_env",
]
