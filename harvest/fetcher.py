"""Single-attempt HTTP retrieval of one feed archive into the sink."""

from __future__ import annotations

import asyncio
import socket
import ssl
from collections.abc import Mapping
from typing import Any

import httpx

from harvest.config import (
    DEFAULT_CONNECT_TIMEOUT_MS,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_USER_AGENT,
    FetchConfig,
)
from harvest.errors import (
    FetchError,
    FetchHTTPStatusError,
    FetchTimeoutError,
    SinkWriteError,
)
from harvest.headers import HeaderTable
from harvest.logging import get_logger
from harvest.logging_events import log_event, monotonic_ms
from harvest.models import FailureKind, FeedDescriptor, FetchOutcome
from harvest.sink import FeedSink

_RETRYABLE_STATUS = frozenset({408, 425, 429})
_KEEPALIVE_EXPIRY_S = 300.0


def default_headers(user_agent: str = DEFAULT_USER_AGENT) -> dict[str, str]:
    """Headers sent with every request unless a feed overrides them."""

    return {
        "Accept": "*/*",
        "Accept-Encoding": "gzip, deflate, br",
        "User-Agent": user_agent,
        "Connection": "keep-alive",
    }


def build_timeout(timeout_ms: int, connect_timeout_ms: int) -> httpx.Timeout:
    timeout_seconds = max(timeout_ms, 100) / 1000
    connect_seconds = min(timeout_seconds, max(connect_timeout_ms, 100) / 1000)
    return httpx.Timeout(
        timeout_seconds,
        connect=connect_seconds,
        read=timeout_seconds,
        write=timeout_seconds,
        pool=None,
    )


def is_retryable_status(status_code: int) -> bool:
    return status_code in _RETRYABLE_STATUS or status_code >= 500


def _connect_failure_kind(error: BaseException) -> str:
    current: BaseException | None = error
    seen = 0
    while current is not None and seen < 8:
        if isinstance(current, ssl.SSLError):
            return FailureKind.TLS.value
        if isinstance(current, socket.gaierror):
            return FailureKind.DNS.value
        current = current.__cause__ or current.__context__
        seen += 1
    message = str(error).lower()
    if "certificate" in message or "ssl" in message:
        return FailureKind.TLS.value
    if "name or service not known" in message or "nodename nor servname" in message:
        return FailureKind.DNS.value
    return FailureKind.CONNECT.value


class FeedFetcher:
    """Download one feed per call and stream its body into a sink.

    A fetch makes exactly one attempt. Every failure is reported as a
    :class:`~harvest.models.FetchOutcome`; nothing but task cancellation
    escapes :meth:`fetch`.
    """

    def __init__(
        self,
        sink: FeedSink,
        *,
        header_table: HeaderTable | Mapping[str, Mapping[str, str]] | None = None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS,
        deadline_ms: int | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        max_connections: int = 100,
    ) -> None:
        self._sink = sink
        if header_table is None or isinstance(header_table, HeaderTable):
            self._header_table = header_table or HeaderTable()
        else:
            self._header_table = HeaderTable(header_table)
        self._deadline_s = deadline_ms / 1000 if deadline_ms and deadline_ms > 0 else None
        self._owns_client = client is None
        if client is None:
            pool_size = max(1, int(max_connections))
            client = httpx.AsyncClient(
                headers=default_headers(user_agent),
                timeout=build_timeout(timeout_ms, connect_timeout_ms),
                limits=httpx.Limits(
                    max_connections=pool_size,
                    max_keepalive_connections=pool_size,
                    keepalive_expiry=_KEEPALIVE_EXPIRY_S,
                ),
                follow_redirects=True,
                transport=transport,
            )
        self._client = client
        self._logger = get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: FetchConfig,
        sink: FeedSink,
        *,
        header_table: HeaderTable | None = None,
        max_connections: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> FeedFetcher:
        return cls(
            sink,
            header_table=header_table,
            transport=transport,
            timeout_ms=config.timeout_ms,
            connect_timeout_ms=config.connect_timeout_ms,
            deadline_ms=config.deadline_ms,
            user_agent=config.user_agent,
            max_connections=max_connections,
        )

    @property
    def header_table(self) -> HeaderTable:
        return self._header_table

    async def __aenter__(self) -> FeedFetcher:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def headers_for(self, feed_id: str) -> dict[str, str]:
        """Extra request headers for ``feed_id`` from the header table."""

        return dict(self._header_table.headers_for(feed_id))

    async def fetch_feed(self, feed_id: str, url: str) -> FetchOutcome:
        return await self.fetch(FeedDescriptor(feed_id=feed_id, url=url))

    async def fetch(self, descriptor: FeedDescriptor) -> FetchOutcome:
        feed_id = descriptor.feed_id
        started = monotonic_ms()
        status_code: int | None = None
        try:
            if self._deadline_s is not None:
                status_code, written = await asyncio.wait_for(
                    self._download(descriptor), self._deadline_s
                )
            else:
                status_code, written = await self._download(descriptor)
        except asyncio.TimeoutError:
            outcome = FetchOutcome.transport_failure(
                feed_id,
                "download exceeded the configured deadline",
                kind=FailureKind.TIMEOUT,
                retryable=True,
                duration_ms=monotonic_ms() - started,
            )
        except FetchError as exc:
            outcome = FetchOutcome.transport_failure(
                feed_id,
                str(exc),
                kind=FailureKind(exc.kind),
                retryable=exc.retryable,
                status_code=getattr(exc, "status_code", None),
                duration_ms=monotonic_ms() - started,
            )
        except SinkWriteError as exc:
            outcome = FetchOutcome.sink_failure(
                feed_id, str(exc), duration_ms=monotonic_ms() - started
            )
        else:
            outcome = FetchOutcome.success(
                feed_id,
                bytes_written=written,
                status_code=status_code,
                duration_ms=monotonic_ms() - started,
            )
        self._log_outcome(descriptor, outcome)
        return outcome

    async def _download(self, descriptor: FeedDescriptor) -> tuple[int, int]:
        feed_id = descriptor.feed_id
        self._logger.debug(
            "Downloading feed",
            extra={"event": "harvest.fetch.started", "feed_id": feed_id, "url": descriptor.url},
        )
        try:
            async with self._client.stream(
                "GET", descriptor.url, headers=self.headers_for(feed_id)
            ) as response:
                if not response.is_success:
                    raise FetchHTTPStatusError(
                        response.status_code,
                        f"server responded with HTTP {response.status_code}",
                        retryable=is_retryable_status(response.status_code),
                    )
                written = await self._sink.write_stream(feed_id, response.aiter_bytes())
                return response.status_code, written
        except httpx.TimeoutException as exc:
            raise FetchTimeoutError(f"request timed out: {exc}") from exc
        except httpx.ConnectError as exc:
            raise FetchError(
                f"connection failed: {exc}",
                kind=_connect_failure_kind(exc),
                retryable=True,
            ) from exc
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise FetchError(
                f"invalid url {descriptor.url!r}: {exc}",
                kind=FailureKind.INVALID_URL.value,
                retryable=False,
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchError(
                f"transport error: {exc}",
                kind=FailureKind.TRANSPORT.value,
                retryable=True,
            ) from exc

    def _log_outcome(self, descriptor: FeedDescriptor, outcome: FetchOutcome) -> None:
        fields: dict[str, Any] = {
            "feed_id": outcome.feed_id,
            "status": outcome.status.value,
            "status_code": outcome.status_code,
            "duration_ms": outcome.duration_ms,
        }
        if outcome.ok:
            log_event(
                self._logger,
                "harvest.fetch.succeeded",
                bytes_written=outcome.bytes_written,
                **fields,
            )
            return
        log_event(
            self._logger,
            "harvest.fetch.failed",
            level="warning",
            url=descriptor.url,
            kind=outcome.kind.value if outcome.kind else None,
            reason=outcome.reason,
            retryable=outcome.retryable,
            **fields,
        )


__all__ = [
    "FeedFetcher",
    "build_timeout",
    "default_headers",
    "is_retryable_status",
]
