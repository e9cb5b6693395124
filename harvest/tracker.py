"""Compute which requested feeds are still absent from the sink."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from harvest.models import FeedDescriptor
from harvest.sink import FeedSink


def snapshot(sink: FeedSink) -> frozenset[str]:
    """Point-in-time listing of the IDs stored in ``sink``."""

    return frozenset(sink.list_ids())


def missing(requested_ids: Iterable[str], sink_snapshot: Iterable[str]) -> frozenset[str]:
    """Return ``requested_ids - sink_snapshot``."""

    return frozenset(requested_ids).difference(sink_snapshot)


def select(
    descriptors: Sequence[FeedDescriptor], missing_ids: Iterable[str]
) -> list[FeedDescriptor]:
    """Descriptors whose ID is in ``missing_ids``, in their original order."""

    wanted = frozenset(missing_ids)
    return [descriptor for descriptor in descriptors if descriptor.feed_id in wanted]


__all__ = ["missing", "select", "snapshot"]
