"""Persistence targets storing one blob per harvested feed."""

from __future__ import annotations

import asyncio
import os
import tempfile
from collections.abc import AsyncIterable
from pathlib import Path
from typing import Protocol

from harvest.errors import SinkWriteError
from harvest.logging import get_logger

logger = get_logger(__name__)

__all__ = [
    "FeedSink",
    "FileSystemSink",
    "MemorySink",
    "validate_feed_id",
]

_TEMP_SUFFIX = ".part"


class FeedSink(Protocol):
    """Protocol describing the behaviour of a feed sink."""

    async def write_stream(
        self, feed_id: str, chunks: AsyncIterable[bytes]
    ) -> int:
        """Persist ``chunks`` under ``feed_id``, replacing any previous blob."""
        ...

    def list_ids(self) -> frozenset[str]:
        """Return the IDs currently stored."""
        ...

    def read(self, feed_id: str) -> bytes | None:
        ...


def validate_feed_id(feed_id: str) -> str:
    """Reject IDs that cannot be used as a single path component."""

    if not feed_id or not feed_id.strip():
        raise SinkWriteError(feed_id, "feed id must not be empty")
    if feed_id in {".", ".."} or feed_id.startswith("."):
        raise SinkWriteError(feed_id, f"feed id '{feed_id}' must not start with '.'")
    if any(sep in feed_id for sep in ("/", "\\", "\x00")):
        raise SinkWriteError(
            feed_id, f"feed id '{feed_id}' contains a path separator"
        )
    return feed_id


class FileSystemSink:
    """Directory backed sink writing ``<feed_id><extension>`` files atomically.

    Bytes are streamed into a hidden temporary file next to the destination and
    renamed over it once the stream is exhausted, so a failed transfer never
    touches the previously stored blob and readers never see a partial file.
    """

    def __init__(self, directory: str | os.PathLike[str], *, extension: str = ".zip") -> None:
        ext = extension.strip()
        if ext and not ext.startswith("."):
            ext = f".{ext}"
        self._directory = Path(directory).expanduser()
        self._extension = ext

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def extension(self) -> str:
        return self._extension

    def path_for(self, feed_id: str) -> Path:
        return self._directory / f"{validate_feed_id(feed_id)}{self._extension}"

    async def write_stream(
        self, feed_id: str, chunks: AsyncIterable[bytes]
    ) -> int:
        destination = self.path_for(feed_id)
        try:
            fd, tmp_path = await asyncio.to_thread(self._create_temp, feed_id)
        except OSError as exc:
            raise SinkWriteError(
                feed_id, f"cannot create artifact for {feed_id}: {exc}"
            ) from exc

        handle = os.fdopen(fd, "wb")
        written = 0
        try:
            async for chunk in chunks:
                if not chunk:
                    continue
                await asyncio.to_thread(handle.write, chunk)
                written += len(chunk)
            await asyncio.to_thread(self._commit, handle, tmp_path, destination)
        except OSError as exc:
            self._discard(handle, tmp_path)
            raise SinkWriteError(
                feed_id, f"cannot write artifact for {feed_id}: {exc}"
            ) from exc
        except BaseException:
            self._discard(handle, tmp_path)
            raise
        return written

    def list_ids(self) -> frozenset[str]:
        try:
            entries = list(os.scandir(self._directory))
        except FileNotFoundError:
            return frozenset()
        ids: set[str] = set()
        for entry in entries:
            name = entry.name
            if name.startswith(".") or not entry.is_file():
                continue
            if self._extension:
                if not name.endswith(self._extension):
                    continue
                name = name[: -len(self._extension)]
            if name:
                ids.add(name)
        return frozenset(ids)

    def read(self, feed_id: str) -> bytes | None:
        try:
            return self.path_for(feed_id).read_bytes()
        except FileNotFoundError:
            return None

    def _create_temp(self, feed_id: str) -> tuple[int, Path]:
        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._directory,
            prefix=f".{feed_id}.",
            suffix=_TEMP_SUFFIX,
        )
        return fd, Path(tmp_name)

    @staticmethod
    def _commit(handle, tmp_path: Path, destination: Path) -> None:
        with handle:
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, destination)

    @staticmethod
    def _discard(handle, path: Path) -> None:
        try:
            handle.close()
        except OSError:
            logger.warning(
                "Failed to close temporary artifact",
                extra={"event": "harvest.sink.cleanup_failed", "path": str(path)},
                exc_info=True,
            )
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.warning(
                "Failed to remove temporary artifact",
                extra={"event": "harvest.sink.cleanup_failed", "path": str(path)},
                exc_info=True,
            )


class MemorySink:
    """In-memory sink for single-process runs and tests."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def write_stream(
        self, feed_id: str, chunks: AsyncIterable[bytes]
    ) -> int:
        validate_feed_id(feed_id)
        buffer = bytearray()
        async for chunk in chunks:
            buffer.extend(chunk)
        self._blobs[feed_id] = bytes(buffer)
        return len(buffer)

    def list_ids(self) -> frozenset[str]:
        return frozenset(self._blobs)

    def read(self, feed_id: str) -> bytes | None:
        return self._blobs.get(feed_id)
