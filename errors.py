#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. The fetcher and
normalizer raise these; the ingestion pipeline is the only place that turns them
into feed state (error streak and backoff).
"""

from typing import Optional


class FeedError(Exception):
    """Base class for every failure a single feed poll can run into."""


class NetworkError(FeedError):
    """Connection, DNS, TLS or redirect failure while fetching a feed."""


class FetchTimeoutError(FeedError):
    """The fetch exceeded its deadline and was aborted."""

    def __init__(self, url: str, timeout_ms: int):
        super().__init__(f"Timed out after {timeout_ms}ms fetching {url}")
        self.url = url
        self.timeout_ms = timeout_ms


class CycleTimeoutError(FeedError):
    """A whole ingestion cycle (fetch, parse and store) ran past its deadline."""

    def __init__(self, url: str, timeout_seconds: float):
        super().__init__(f"Poll cycle exceeded {timeout_seconds}s for {url}")
        self.url = url
        self.timeout_seconds = timeout_seconds


class HttpError(FeedError):
    """The server answered with a status outside 2xx/3xx (and not 304).

    Attributes:
        status: The HTTP status code received.
    """

    def __init__(self, status: int, url: Optional[str] = None):
        super().__init__(f"HTTP {status}" + (f" for {url}" if url else ""))
        self.status = status
        self.url = url


class DecodingError(FeedError):
    """The response body could not be decoded with its declared charset."""


class ParseError(FeedError):
    """A body entered a recognized feed format but its structure is unusable."""


class StorageError(FeedError):
    """A storage operation failed."""


__all__ = [
    "FeedError",
    "NetworkError",
    "FetchTimeoutError",
    "CycleTimeoutError",
    "HttpError",
    "DecodingError",
    "ParseError",
    "StorageError",
]
