"""Data models and enums for the harvest flow."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum


@dataclass(slots=True, frozen=True)
class FeedDescriptor:
    """A feed to harvest, identified by a run-unique ``feed_id``."""

    feed_id: str
    url: str


class FetchStatus(str, Enum):
    """Terminal status of a single fetch attempt."""

    SUCCESS = "success"
    TRANSPORT_FAILURE = "transport_failure"
    SINK_FAILURE = "sink_failure"


class FailureKind(str, Enum):
    """Finer classification of a failed fetch attempt."""

    TIMEOUT = "timeout"
    CONNECT = "connect"
    TLS = "tls"
    DNS = "dns"
    HTTP_STATUS = "http_status"
    INVALID_URL = "invalid_url"
    TRANSPORT = "transport"
    SINK_WRITE = "sink_write"


class LoopState(str, Enum):
    """States of the convergence loop."""

    START = "start"
    ROUND_PENDING = "round_pending"
    ROUND_DRAINING = "round_draining"
    RECONCILING = "reconciling"
    CONVERGED = "converged"


@dataclass(slots=True, frozen=True)
class FetchOutcome:
    """Result produced by the fetcher for one feed."""

    feed_id: str
    status: FetchStatus
    reason: str | None = None
    kind: FailureKind | None = None
    status_code: int | None = None
    bytes_written: int = 0
    retryable: bool = False
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status is FetchStatus.SUCCESS

    @property
    def permanent(self) -> bool:
        return not self.ok and not self.retryable

    @classmethod
    def success(
        cls,
        feed_id: str,
        *,
        bytes_written: int,
        status_code: int | None = None,
        duration_ms: int = 0,
    ) -> FetchOutcome:
        return cls(
            feed_id=feed_id,
            status=FetchStatus.SUCCESS,
            status_code=status_code,
            bytes_written=bytes_written,
            duration_ms=duration_ms,
        )

    @classmethod
    def transport_failure(
        cls,
        feed_id: str,
        reason: str,
        *,
        kind: FailureKind = FailureKind.TRANSPORT,
        retryable: bool = True,
        status_code: int | None = None,
        duration_ms: int = 0,
    ) -> FetchOutcome:
        return cls(
            feed_id=feed_id,
            status=FetchStatus.TRANSPORT_FAILURE,
            reason=reason,
            kind=kind,
            status_code=status_code,
            retryable=retryable,
            duration_ms=duration_ms,
        )

    @classmethod
    def sink_failure(
        cls,
        feed_id: str,
        reason: str,
        *,
        status_code: int | None = None,
        duration_ms: int = 0,
    ) -> FetchOutcome:
        return cls(
            feed_id=feed_id,
            status=FetchStatus.SINK_FAILURE,
            reason=reason,
            kind=FailureKind.SINK_WRITE,
            status_code=status_code,
            retryable=True,
            duration_ms=duration_ms,
        )


@dataclass(slots=True)
class RoundReport:
    """Summary of one bounded round over a subset of feeds."""

    index: int
    attempted: tuple[str, ...]
    outcomes: tuple[FetchOutcome, ...]
    missing_before: frozenset[str]
    missing_after: frozenset[str]
    peak_in_flight: int
    duration_ms: int

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.ok)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded


@dataclass(slots=True)
class HarvestReport:
    """Final result of a convergence run."""

    requested: frozenset[str]
    missing: frozenset[str]
    state: LoopState
    rounds: tuple[RoundReport, ...] = field(default_factory=tuple)
    urls: Mapping[str, str] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.state is LoopState.CONVERGED

    @property
    def complete(self) -> bool:
        return not self.missing

    @property
    def missing_count(self) -> int:
        return len(self.missing)

    def missing_feeds(self) -> list[tuple[str, str | None]]:
        """Missing IDs in sorted order, each paired with the URL that was tried."""

        return [(feed_id, self.urls.get(feed_id)) for feed_id in sorted(self.missing)]


__all__ = [
    "FailureKind",
    "FeedDescriptor",
    "FetchOutcome",
    "FetchStatus",
    "HarvestReport",
    "LoopState",
    "RoundReport",
]
