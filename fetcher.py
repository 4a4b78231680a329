#!/usr/bin/env python3
"""
Polite HTTP fetcher for syndication feeds.

One conditional GET per call: cached validators are sent back to the origin, a 304
short-circuits without reading a body, redirects are followed and the final URL is
reported so relative links can be resolved against where the feed really lives.
The fetcher is stateless; per-host politeness comes from the HostLimiter that
``fetch_with_limit`` routes every request through.
"""

import asyncio
import codecs
from dataclasses import dataclass
from typing import List, Optional, Union
from urllib.parse import urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import DecodingError, FetchTimeoutError, HttpError, NetworkError
from host_limiter import HostLimiter
from telemetry import trace_span

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_NOT_MODIFIED = 304

FEED_ACCEPT = (
    "application/rss+xml, application/atom+xml, application/xml, text/xml, "
    "application/feed+json;q=0.9, */*;q=0.1"
)

UTF8_ALIASES = {"utf-8", "utf8"}


@dataclass(frozen=True)
class NotModified:
    """The origin confirmed our cached copy is still current."""

    kind = "not-modified"
    status: int = HTTP_NOT_MODIFIED


@dataclass(frozen=True)
class Fetched:
    """A successfully downloaded and decoded feed body."""

    status: int
    body: str
    final_url: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    kind = "ok"


FetchOutcome = Union[NotModified, Fetched]


def build_request_headers(etag: Optional[str] = None, last_modified: Optional[str] = None) -> dict:
    """Prepare HTTP headers for a conditional feed request.

    Validators are opaque: they are sent back exactly as the origin gave them.
    """
    headers = {
        'User-Agent': config.USER_AGENT,
        'Accept': FEED_ACCEPT,
    }
    if etag:
        headers['If-None-Match'] = etag
    if last_modified:
        headers['If-Modified-Since'] = last_modified
    return headers


def decode_body(data: bytes, charset: Optional[str]) -> str:
    """Decode a response body using the declared charset, defaulting to UTF-8.

    Undecodable byte sequences are replaced. An unknown charset name raises
    DecodingError instead of guessing.
    """
    name = (charset or "").strip().strip('"\'').lower()
    if not name or name in UTF8_ALIASES:
        return data.decode("utf-8", errors="replace")
    try:
        codec = codecs.lookup(name)
    except LookupError as e:
        raise DecodingError(f"Unknown charset '{charset}'") from e
    return data.decode(codec.name, errors="replace")


def host_for(url: str) -> str:
    """Return the hostname a URL should be rate limited under."""
    try:
        return urlparse(url).hostname or "unknown"
    except ValueError:
        return "unknown"


def _format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        if errno is not None:
            parts.append(f"errno={errno}")
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


@trace_span(
    "polite_fetch",
    tracer_name="fetcher",
    attr_from_args=lambda session, url, **kwargs: {
        "http.url": url,
        "http.conditional": bool(kwargs.get("etag") or kwargs.get("last_modified")),
    },
)
async def polite_fetch(
    session: ClientSession,
    url: str,
    etag: Optional[str] = None,
    last_modified: Optional[str] = None,
    timeout_ms: Optional[int] = None,
) -> FetchOutcome:
    """Perform one conditional GET for a feed.

    Args:
        session: Shared aiohttp session.
        url: Feed URL to request.
        etag: Previously stored ETag, sent as If-None-Match.
        last_modified: Previously stored Last-Modified, sent as If-Modified-Since.
        timeout_ms: Hard deadline for the whole request (defaults to FETCH_TIMEOUT_MS).

    Returns:
        NotModified for a 304, otherwise Fetched with the decoded body.

    Raises:
        FetchTimeoutError: The deadline expired; the request was aborted.
        NetworkError: Connection, DNS or redirect failure.
        HttpError: Final status outside 200-399.
        DecodingError: The declared charset is unknown.
    """
    timeout_ms = timeout_ms or config.FETCH_TIMEOUT_MS
    headers = build_request_headers(etag, last_modified)
    try:
        async with session.get(
            url,
            headers=headers,
            timeout=ClientTimeout(total=timeout_ms / 1000),
            allow_redirects=True,
            max_redirects=config.MAX_REDIRECTS,
        ) as response:
            if response.status == HTTP_NOT_MODIFIED:
                logger.debug(f"{url} not modified since last fetch")
                return NotModified()

            # Redirects were already followed, so any 3xx left is accepted as final
            if not 200 <= response.status < 400:
                raise HttpError(response.status, url)

            data = await response.read()
            body = decode_body(data, response.charset)
            final_url = str(response.url)
            if final_url != url:
                logger.debug(f"{url} redirected to {final_url}")
            return Fetched(
                status=response.status,
                body=body,
                final_url=final_url,
                etag=response.headers.get('ETag'),
                last_modified=response.headers.get('Last-Modified'),
            )
    except asyncio.TimeoutError as e:
        # aiohttp surfaces timeouts as asyncio.TimeoutError (ServerTimeoutError is also a ClientError)
        raise FetchTimeoutError(url, timeout_ms) from e
    except ClientError as e:
        raise NetworkError(_format_client_error(e)) from e


async def fetch_with_limit(
    limiter: HostLimiter,
    session: ClientSession,
    url: str,
    etag: Optional[str] = None,
    last_modified: Optional[str] = None,
    timeout_ms: Optional[int] = None,
) -> FetchOutcome:
    """Run ``polite_fetch`` through the per-host limiter."""
    return await limiter.acquire_and_run(
        host_for(url),
        lambda: polite_fetch(session, url, etag=etag, last_modified=last_modified, timeout_ms=timeout_ms),
    )
