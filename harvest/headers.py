"""Per-feed request header table."""

from __future__ import annotations

import json
import os
import re
from collections.abc import Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from harvest.errors import ConfigurationError

__all__ = ["HeaderTable"]

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _expand(value: str, env: Mapping[str, str], *, location: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        resolved = env.get(name)
        if resolved is None:
            raise ConfigurationError(
                f"{location} references undefined environment variable {name}"
            )
        return resolved

    return _PLACEHOLDER.sub(_replace, value)


class HeaderTable(Mapping[str, Mapping[str, str]]):
    """Immutable ``feed_id -> extra headers`` lookup.

    Feeds without an entry get no extra headers. Header values may contain
    ``${NAME}`` placeholders which :meth:`load` resolves from ``env``, or from
    the process environment when no mapping is given, so credentials never live
    in the table file itself.
    """

    def __init__(self, entries: Mapping[str, Mapping[str, str]] | None = None) -> None:
        frozen: dict[str, Mapping[str, str]] = {}
        for feed_id, headers in (entries or {}).items():
            frozen[str(feed_id)] = MappingProxyType(
                {str(name): str(value) for name, value in headers.items()}
            )
        self._entries = frozen

    def __getitem__(self, feed_id: str) -> Mapping[str, str]:
        return self._entries[feed_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def headers_for(self, feed_id: str) -> Mapping[str, str]:
        return self._entries.get(feed_id, MappingProxyType({}))

    @classmethod
    def from_mapping(
        cls,
        payload: Any,
        *,
        env: Mapping[str, str] | None = None,
        source: str = "header table",
    ) -> HeaderTable:
        if not isinstance(payload, Mapping):
            raise ConfigurationError(f"{source} must be a JSON object")
        environment = os.environ if env is None else env
        entries: dict[str, dict[str, str]] = {}
        for feed_id, headers in payload.items():
            if not isinstance(headers, Mapping):
                raise ConfigurationError(
                    f"{source}: headers for '{feed_id}' must be an object"
                )
            resolved: dict[str, str] = {}
            for name, value in headers.items():
                if not isinstance(value, str):
                    raise ConfigurationError(
                        f"{source}: header '{name}' for '{feed_id}' must be a string"
                    )
                resolved[str(name)] = _expand(
                    value, environment, location=f"{source} entry '{feed_id}'"
                )
            entries[str(feed_id)] = resolved
        return cls(entries)

    @classmethod
    def load(cls, path: str | Path, *, env: Mapping[str, str] | None = None) -> HeaderTable:
        file_path = Path(path).expanduser()
        try:
            payload = json.loads(file_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigurationError(f"cannot read header table {file_path}: {exc}") from exc
        except ValueError as exc:
            raise ConfigurationError(f"header table {file_path} is not valid JSON: {exc}") from exc
        return cls.from_mapping(payload, env=env, source=str(file_path))
