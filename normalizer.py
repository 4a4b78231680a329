#!/usr/bin/env python3
"""
Feed format detection and entry normalization.

Turns a decoded response body (RSS 2.0, Atom or JSON Feed) into one canonical
shape: a NormalizedFeed holding NormalizedEntry records, each with a stable
``guid`` and a ``content_hash``. Everything here is pure: no I/O, no clock.

Detection produces one of three format documents (Rss2Channel, AtomFeed,
JsonFeedDocument) and each has its own extractor. Unknown payloads normalize to
an empty entry list rather than failing.
"""

import hashlib
import io
import json
import re
from calendar import timegm
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import urljoin, urlsplit, urlunsplit
from xml.sax import SAXException

import feedparser
from feedparser.datetimes import _parse_date as feedparser_parse_date

from config import get_logger
from errors import ParseError

# Module-specific logger
logger = get_logger("normalizer")

# Content is stored as delivered, so feedparser must not sanitize it. No base URI
# is passed: feedparser would also rewrite permalink guids against it, so links
# are resolved here instead.
FEEDPARSER_OPTIONS = {
    'sanitize_html': False,
    'resolve_relative_uris': False,
}

# RDF-rooted RSS 0.90/1.0 documents have no <rss><channel> root
RDF_VERSIONS = {'rss090', 'rss10'}

# An items-only channel leaves feedparser's feed dict empty, so the start tag is
# looked for in the body too
CHANNEL_TAG = re.compile(r"<channel[\s>/]", re.IGNORECASE)

PLAIN_TEXT_TYPES = {'text/plain', 'text'}

CUSTOM_DATE_FORMATS = [
    "%d %b %Y %H:%M:%S %z",
    "%d %b %Y %H:%M:%S %Z",
    "%d %b %Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
]


@dataclass
class NormalizedEntry:
    guid: str
    url: Optional[str] = None
    title: Optional[str] = None
    html: Optional[str] = None
    text: Optional[str] = None
    published_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    content_hash: str = ""


@dataclass
class NormalizedFeed:
    feed_url: str
    title: Optional[str] = None
    site_url: Optional[str] = None
    entries: List[NormalizedEntry] = field(default_factory=list)


@dataclass(frozen=True)
class JsonFeedDocument:
    data: Dict[str, Any]

    format = "jsonfeed"


@dataclass(frozen=True)
class Rss2Channel:
    channel: Dict[str, Any]
    items: List[Dict[str, Any]]

    format = "rss2"


@dataclass(frozen=True)
class AtomFeed:
    feed: Dict[str, Any]
    entries: List[Dict[str, Any]]

    format = "atom"


FeedDocument = Union[JsonFeedDocument, Rss2Channel, AtomFeed]


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------

def stable_hash(value: str) -> str:
    """Short, deterministic SHA-256 based identifier."""
    return hashlib.sha256(value.encode('utf-8')).hexdigest()[:32]


def first_string(value: Any) -> Optional[str]:
    """Return a trimmed non-empty string, or None.

    Integers are accepted (JSON Feed ids are sometimes numeric); anything else is
    treated as absent.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def base_url(fetch_url: str) -> str:
    """Origin of the fetch URL with the path reset to '/'."""
    try:
        parts = urlsplit(fetch_url)
    except ValueError:
        return fetch_url
    if not parts.scheme or not parts.netloc:
        return fetch_url
    return urlunsplit((parts.scheme, parts.netloc, '/', '', ''))


def resolve_url(url: Optional[str], base: str) -> Optional[str]:
    if not url:
        return None
    try:
        return urljoin(base, url)
    except ValueError:
        return url


def content_hash(entry: NormalizedEntry) -> str:
    """Hash over url, title, content and published date, in that order."""
    published = entry.published_at.isoformat() if entry.published_at else ""
    basis = f"{entry.url or ''}|{entry.title or ''}|{entry.html or entry.text or ''}|{published}"
    return stable_hash(basis)


def _with_hash(entry: NormalizedEntry) -> NormalizedEntry:
    entry.content_hash = content_hash(entry)
    return entry


def _raw_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def parse_date(value: Any) -> Optional[datetime]:
    """Leniently parse a feed date into an aware UTC datetime.

    Accepts strings in the usual feed dialects (RFC 822/2822, W3C/ISO 8601 and a few
    common variants), datetimes, and feedparser time tuples. Returns None when the
    value is missing or cannot be parsed; never substitutes the current time.
    """
    if value in (None, ''):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, (list, tuple)):
        return _struct_to_datetime(value)

    if isinstance(value, str):
        date_str = value.strip()
        if not date_str:
            return None
        for parser in (_parse_with_feedparser, _parse_with_email_utils, _parse_with_custom_formats):
            parsed = parser(date_str)
            if parsed is not None:
                return parsed
    return None


def _struct_to_datetime(value) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(timegm(tuple(value)[:9]), tz=timezone.utc)
    except (OverflowError, ValueError, OSError, TypeError):
        return None


def _parse_with_feedparser(date_str: str) -> Optional[datetime]:
    try:
        time_struct = feedparser_parse_date(date_str)
    except (ValueError, TypeError, OverflowError):
        return None
    if time_struct:
        return _struct_to_datetime(time_struct)
    return None


def _parse_with_email_utils(date_str: str) -> Optional[datetime]:
    try:
        dt = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, OverflowError, IndexError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_with_custom_formats(date_str: str) -> Optional[datetime]:
    for fmt in CUSTOM_DATE_FORMATS:
        try:
            dt = datetime.strptime(date_str, fmt)
        except (ValueError, TypeError):
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    return None


def _paired_dates(published_raw: Any, updated_raw: Any) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Parse published/updated, each falling back to the other when missing."""
    published = parse_date(published_raw)
    updated = parse_date(updated_raw)
    return published or updated, updated or published


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def detect_format(raw_body: str, fetch_url: str) -> Optional[FeedDocument]:
    """Classify a body as JSON Feed, RSS 2.0 or Atom.

    Returns None for anything unrecognized.

    Raises:
        ParseError: The XML declared a feed format but could not be parsed into entries.
    """
    trimmed = (raw_body or "").strip()
    if not trimmed:
        return None

    if trimmed.startswith('{'):
        try:
            data = json.loads(trimmed)
        except ValueError:
            # Not JSON after all; let the XML parser decide
            data = None
        if isinstance(data, dict):
            version = data.get('version')
            if 'items' in data or (isinstance(version, str) and 'jsonfeed' in version):
                return JsonFeedDocument(data)

    # A file object, never a str or bytes: feedparser treats those as possible paths
    parsed = feedparser.parse(
        io.BytesIO(trimmed.encode('utf-8')),
        response_headers={'content-type': 'application/xml; charset=utf-8'},
        **FEEDPARSER_OPTIONS,
    )
    version = parsed.get('version') or ''
    entries = list(parsed.get('entries') or [])
    channel = parsed.get('feed') or {}

    # RSS 2.0 needs an rss/channel element; items under a bare <rss> root do not count
    has_channel = bool(channel) or CHANNEL_TAG.search(trimmed) is not None
    if version.startswith('rss') and version not in RDF_VERSIONS and has_channel:
        document: Optional[FeedDocument] = Rss2Channel(channel, entries)
    elif version.startswith('atom'):
        document = AtomFeed(parsed.get('feed') or {}, entries)
    else:
        logger.debug(f"Unrecognized feed format for {fetch_url} (version={version!r})")
        return None

    bozo_exception = parsed.get('bozo_exception')
    if parsed.get('bozo') and isinstance(bozo_exception, SAXException):
        if not entries:
            raise ParseError(f"Malformed {document.format} document from {fetch_url}: {bozo_exception}")
        logger.warning(f"Feed parsing warning for {fetch_url}: {bozo_exception}")
    return document


def normalize(raw_body: str, fetch_url: str) -> NormalizedFeed:
    """Parse a raw feed body and normalize it.

    Args:
        raw_body: Decoded HTTP response body.
        fetch_url: The URL the body was fetched from (post-redirect); its origin is
            the base for relative links.

    Returns:
        A NormalizedFeed; ``entries`` is empty for unrecognized formats.
    """
    document = detect_format(raw_body, fetch_url)
    if isinstance(document, JsonFeedDocument):
        return _normalize_json_feed(document, fetch_url)
    if isinstance(document, Rss2Channel):
        return _normalize_rss2(document, fetch_url)
    if isinstance(document, AtomFeed):
        return _normalize_atom(document, fetch_url)
    return NormalizedFeed(feed_url=fetch_url)


# ---------------------------------------------------------------------------
# Per-format extraction
# ---------------------------------------------------------------------------

def _pick_link(links: Any, rel: Optional[str] = None) -> Optional[str]:
    """Find an href in a feedparser links list, preferring the given rel."""
    candidates = [link for link in as_list(links) if isinstance(link, dict) and first_string(link.get('href'))]
    if not candidates:
        return None
    if rel:
        for link in candidates:
            if (link.get('rel') or '').lower() == rel.lower():
                return first_string(link['href'])
        return None
    return first_string(candidates[0]['href'])


def _split_content(value: Optional[str], content_type: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Route content into (html, text) based on its declared type."""
    if value is None or not value.strip():
        return None, None
    if (content_type or '').lower() in PLAIN_TEXT_TYPES:
        return None, value
    return value, None


def _pick_content(entry: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Prefer explicit content (content:encoded / atom:content) over summaries."""
    for detail in as_list(entry.get('content')):
        if isinstance(detail, dict):
            html, text = _split_content(detail.get('value'), detail.get('type'))
            if html or text:
                return html, text
    summary_detail = entry.get('summary_detail') or {}
    return _split_content(entry.get('summary'), summary_detail.get('type'))


def _normalize_rss2(document: Rss2Channel, fetch_url: str) -> NormalizedFeed:
    base = base_url(fetch_url)
    channel = document.channel
    entries: List[NormalizedEntry] = []

    for item in document.items:
        link = _pick_link(item.get('links'), 'alternate') or _pick_link(item.get('links'))
        title = first_string(item.get('title'))
        pub_date = first_string(item.get('published'))
        guid = first_string(item.get('id')) or stable_hash(f"{link or ''}|{title or ''}|{pub_date or ''}")
        html, text = _pick_content(item)
        published_at, updated_at = _paired_dates(item.get('published'), item.get('updated'))

        entries.append(_with_hash(NormalizedEntry(
            guid=guid,
            url=resolve_url(link, base),
            title=title,
            html=html,
            text=text,
            published_at=published_at,
            updated_at=updated_at,
        )))

    return NormalizedFeed(
        feed_url=fetch_url,
        title=first_string(channel.get('title')),
        site_url=first_string(channel.get('link')),
        entries=entries,
    )


def _normalize_atom(document: AtomFeed, fetch_url: str) -> NormalizedFeed:
    base = base_url(fetch_url)
    feed = document.feed
    entries: List[NormalizedEntry] = []

    for entry in document.entries:
        guid = first_string(entry.get('id')) or stable_hash(_raw_json(entry))
        # Entries without any link still point somewhere useful: the site root
        link = _pick_link(entry.get('links'), 'alternate') or _pick_link(entry.get('links')) or base
        html, text = _pick_content(entry)
        published_at, updated_at = _paired_dates(entry.get('published'), entry.get('updated'))

        entries.append(_with_hash(NormalizedEntry(
            guid=guid,
            url=resolve_url(link, base),
            title=first_string(entry.get('title')),
            html=html,
            text=text,
            published_at=published_at,
            updated_at=updated_at,
        )))

    site_url = _pick_link(feed.get('links'), 'alternate') or _pick_link(feed.get('links'), 'self') or base
    return NormalizedFeed(
        feed_url=fetch_url,
        title=first_string(feed.get('title')),
        site_url=site_url,
        entries=entries,
    )


def _normalize_json_feed(document: JsonFeedDocument, fetch_url: str) -> NormalizedFeed:
    base = base_url(fetch_url)
    data = document.data
    items = data.get('items')
    if items is not None and not isinstance(items, (list, dict)):
        raise ParseError(f"JSON Feed 'items' must be a list, got {type(items).__name__} from {fetch_url}")

    entries: List[NormalizedEntry] = []
    for item in as_list(items):
        if not isinstance(item, dict):
            logger.debug(f"Skipping non-object JSON Feed item from {fetch_url}")
            continue
        guid = first_string(item.get('id')) or stable_hash(_raw_json(item))
        link = first_string(item.get('url')) or first_string(item.get('external_url'))
        html = first_string(item.get('content_html'))
        # Never populate text alongside html
        text = None if html else first_string(item.get('content_text'))
        published_at, updated_at = _paired_dates(item.get('date_published'), item.get('date_modified'))

        entries.append(_with_hash(NormalizedEntry(
            guid=guid,
            url=resolve_url(link, base),
            title=first_string(item.get('title')),
            html=html,
            text=text,
            published_at=published_at,
            updated_at=updated_at,
        )))

    return NormalizedFeed(
        feed_url=fetch_url,
        title=first_string(data.get('title')),
        site_url=first_string(data.get('home_page_url')) or base,
        entries=entries,
    )
