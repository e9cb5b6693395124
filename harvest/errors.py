"""Exception hierarchy for the harvester."""

from __future__ import annotations


class HarvestError(RuntimeError):
    """Base exception raised for harvester failures."""


class ConfigurationError(HarvestError):
    """Raised when runtime configuration is missing or malformed."""


class RegistryError(HarvestError):
    """Raised when a feed registry file cannot be read or validated."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class SinkWriteError(HarvestError):
    """Raised when a fetched blob cannot be persisted."""

    def __init__(self, feed_id: str, message: str) -> None:
        super().__init__(message)
        self.feed_id = feed_id


class FetchError(HarvestError):
    """Raised inside the fetcher to classify a failed retrieval."""

    def __init__(self, message: str, *, kind: str, retryable: bool) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable


class FetchTimeoutError(FetchError):
    """Raised when a request exceeded the configured timeout."""

    def __init__(self, message: str = "request timed out") -> None:
        super().__init__(message, kind="timeout", retryable=True)


class FetchHTTPStatusError(FetchError):
    """Raised when the upstream server answered with a non-success status."""

    def __init__(self, status_code: int, message: str, *, retryable: bool) -> None:
        super().__init__(message, kind="http_status", retryable=retryable)
        self.status_code = status_code


__all__ = [
    "ConfigurationError",
    "FetchError",
    "FetchHTTPStatusError",
    "FetchTimeoutError",
    "HarvestError",
    "RegistryError",
    "SinkWriteError",
]
