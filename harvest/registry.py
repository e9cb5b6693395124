"""Load feed descriptors from a Distributed Mobility Feed Registry checkout."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from harvest.errors import ConfigurationError, RegistryError
from harvest.logging import get_logger
from harvest.models import FeedDescriptor

logger = get_logger(__name__)

STATIC_FEED_SPEC = "gtfs"


class DmfrFeedUrls(BaseModel):
    """URL block of a DMFR feed record."""

    model_config = ConfigDict(extra="ignore")

    static_current: str | None = None
    static_historic: list[str] = Field(default_factory=list)


class DmfrFeed(BaseModel):
    """Single feed record; only the fields needed for harvesting are modelled."""

    model_config = ConfigDict(extra="ignore")

    id: str
    spec: str
    urls: DmfrFeedUrls = Field(default_factory=DmfrFeedUrls)

    def static_url(self) -> str | None:
        if self.urls.static_current:
            return self.urls.static_current
        if self.urls.static_historic:
            return self.urls.static_historic[0]
        return None


class DmfrDocument(BaseModel):
    """Top level DMFR file."""

    model_config = ConfigDict(extra="ignore")

    feeds: list[DmfrFeed] = Field(default_factory=list)


def parse_document(path: Path) -> DmfrDocument:
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise RegistryError(f"cannot read registry file {path}: {exc}", path=str(path)) from exc
    try:
        return DmfrDocument.model_validate_json(raw)
    except ValidationError as exc:
        raise RegistryError(
            f"invalid registry file {path}: {exc.error_count()} validation error(s)",
            path=str(path),
        ) from exc


def iter_static_feeds(document: DmfrDocument) -> Iterator[FeedDescriptor]:
    """Yield descriptors for the static GTFS feeds that advertise a URL."""

    for feed in document.feeds:
        if feed.spec.lower() != STATIC_FEED_SPEC:
            continue
        url = feed.static_url()
        if url is None:
            logger.debug(
                "Skipping feed without static URL",
                extra={"event": "harvest.registry.feed_skipped", "feed_id": feed.id},
            )
            continue
        yield FeedDescriptor(feed_id=feed.id, url=url)


def load_registry(directory: str | Path) -> list[FeedDescriptor]:
    """Read every ``*.json`` file of ``directory`` in name order."""

    root = Path(directory).expanduser()
    if not root.is_dir():
        raise RegistryError(f"registry directory {root} does not exist", path=str(root))

    descriptors: list[FeedDescriptor] = []
    files = sorted(path for path in root.iterdir() if path.is_file() and path.suffix == ".json")
    for path in files:
        descriptors.extend(iter_static_feeds(parse_document(path)))
    logger.info(
        "Loaded feed registry",
        extra={
            "event": "harvest.registry.loaded",
            "directory": str(root),
            "files": len(files),
            "feeds": len(descriptors),
        },
    )
    return descriptors


def parse_extra_feeds(value: str | Iterable[str] | None) -> list[FeedDescriptor]:
    """Parse ``id=url`` entries separated by commas or newlines."""

    if value is None:
        return []
    if isinstance(value, str):
        candidates = value.replace("\n", ",").split(",")
    else:
        candidates = list(value)
    descriptors: list[FeedDescriptor] = []
    for candidate in candidates:
        entry = candidate.strip()
        if not entry:
            continue
        feed_id, sep, url = entry.partition("=")
        feed_id = feed_id.strip()
        url = url.strip()
        if not sep or not feed_id or not url:
            raise ConfigurationError(f"extra feed entry {entry!r} must look like id=url")
        descriptors.append(FeedDescriptor(feed_id=feed_id, url=url))
    return descriptors


def unique_descriptors(descriptors: Iterable[FeedDescriptor]) -> list[FeedDescriptor]:
    """Drop repeated feed IDs, keeping the first occurrence."""

    seen: set[str] = set()
    unique: list[FeedDescriptor] = []
    for descriptor in descriptors:
        if descriptor.feed_id in seen:
            logger.warning(
                "Duplicate feed id ignored",
                extra={
                    "event": "harvest.registry.duplicate",
                    "feed_id": descriptor.feed_id,
                    "url": descriptor.url,
                },
            )
            continue
        seen.add(descriptor.feed_id)
        unique.append(descriptor)
    return unique


__all__ = [
    "DmfrDocument",
    "DmfrFeed",
    "DmfrFeedUrls",
    "iter_static_feeds",
    "load_registry",
    "parse_document",
    "parse_extra_feeds",
    "unique_descriptors",
]
