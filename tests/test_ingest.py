import threading

import pytest

from config import config
from errors import HttpError, NetworkError
from fetcher import Fetched, NotModified
from host_limiter import HostLimiter
import ingest
from ingest import (
    OUTCOME_FAILED,
    OUTCOME_MISSING,
    OUTCOME_NOT_MODIFIED,
    OUTCOME_UNCHANGED,
    OUTCOME_UPDATED,
    FeedIngestor,
    backoff_minutes,
    success_interval_minutes,
)
from models import DatabaseQueue
from normalizer import normalize

FEED_URL = "https://example.com/feed.xml"
NOW = 1_700_000_000

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Example</title><link>https://example.com/</link>
<item><guid>a</guid><title>First</title><link>https://example.com/a</link></item>
<item><guid>b</guid><title>Second</title><link>https://example.com/b</link></item>
</channel></rss>
"""


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


class StubFetch:
    """Stands in for fetch_with_limit, replaying queued outcomes."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, limiter, session, url, etag=None, last_modified=None):
        self.calls.append({"url": url, "etag": etag, "last_modified": last_modified})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def fetched(body=RSS, etag='"v1"', last_modified=None):
    return Fetched(status=200, body=body, final_url=FEED_URL, etag=etag, last_modified=last_modified)


async def setup_db(tmp_path):
    db = DatabaseQueue(str(tmp_path / "feeds.db"))
    await db.start()
    await db.execute('register_feed', feed_url=FEED_URL, now=NOW)
    feed_id = (await db.execute('list_feeds'))[0].id
    return db, feed_id


def make_ingestor(db, fetch, clock):
    return FeedIngestor(db, session=None, limiter=HostLimiter(3), fetch=fetch, clock=clock)


@pytest.mark.asyncio
async def test_new_entries_then_unchanged(tmp_path):
    db, feed_id = await setup_db(tmp_path)
    clock = Clock()
    fetch = StubFetch(fetched(), fetched(etag='"v2"'))
    ingestor = make_ingestor(db, fetch, clock)
    try:
        assert await ingestor.ingest_once(feed_id) == OUTCOME_UPDATED
        feed = await db.execute('select_feed_by_id', feed_id=feed_id)
        assert await db.execute('count_entries', feed_id=feed_id) == 2
        assert feed.etag == '"v1"'
        assert feed.title == "Example"
        assert feed.last_changed_at == NOW
        assert feed.next_poll_at == NOW + config.CHANGED_INTERVAL_MINUTES * 60

        clock.now = NOW + 700
        assert await ingestor.ingest_once(feed_id) == OUTCOME_UNCHANGED
        feed = await db.execute('select_feed_by_id', feed_id=feed_id)
        assert await db.execute('count_entries', feed_id=feed_id) == 2
        assert feed.etag == '"v2"'
        assert feed.last_changed_at == NOW
        assert feed.last_polled_at == NOW + 700
        assert feed.next_poll_at == NOW + 700 + config.UNCHANGED_INTERVAL_MINUTES * 60

        # Stored validators are sent back on the next fetch
        assert fetch.calls[1]["etag"] == '"v1"'
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_not_modified_resets_streak(tmp_path):
    db, feed_id = await setup_db(tmp_path)
    clock = Clock()
    ingestor = make_ingestor(db, StubFetch(HttpError(503, FEED_URL), NotModified()), clock)
    try:
        assert await ingestor.ingest_once(feed_id) == OUTCOME_FAILED
        clock.now = NOW + 1000
        assert await ingestor.ingest_once(feed_id) == OUTCOME_NOT_MODIFIED

        feed = await db.execute('select_feed_by_id', feed_id=feed_id)
        assert feed.error_streak == 0
        assert feed.last_polled_at == NOW + 1000
        assert feed.next_poll_at == NOW + 1000 + config.NOT_MODIFIED_INTERVAL_MINUTES * 60
        assert await db.execute('count_entries') == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_errors_back_off_exponentially(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "BACKOFF_BASE_MINUTES", 5)
    monkeypatch.setattr(config, "MAX_BACKOFF_MINUTES", 1440)
    db, feed_id = await setup_db(tmp_path)
    clock = Clock()
    errors = [NetworkError("refused"), HttpError(500, FEED_URL), NetworkError("reset")]
    ingestor = make_ingestor(db, StubFetch(*errors), clock)
    delays = []
    try:
        for streak in (1, 2, 3):
            assert await ingestor.ingest_once(feed_id) == OUTCOME_FAILED
            feed = await db.execute('select_feed_by_id', feed_id=feed_id)
            assert feed.error_streak == streak
            assert feed.last_polled_at == clock.now
            assert feed.next_poll_at > feed.last_polled_at
            delays.append(feed.next_poll_at - clock.now)
            clock.now = feed.next_poll_at

        assert delays == [600, 1200, 2400]
        assert (await db.execute("list_feeds"))[0].last_error.startswith("NetworkError")
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_parse_error_counts_as_failure(tmp_path):
    db, feed_id = await setup_db(tmp_path)
    ingestor = make_ingestor(db, StubFetch(fetched(body='{"items": "broken"}')), Clock())
    try:
        assert await ingestor.ingest_once(feed_id) == OUTCOME_FAILED
        feed = await db.execute('select_feed_by_id', feed_id=feed_id)
        assert feed.error_streak == 1
        assert feed.last_error.startswith("ParseError")
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_unexpected_exception_still_reschedules(tmp_path):
    db, feed_id = await setup_db(tmp_path)
    ingestor = make_ingestor(db, StubFetch(RuntimeError("surprise")), Clock())
    try:
        assert await ingestor.ingest_once(feed_id) == OUTCOME_FAILED
        feed = await db.execute('select_feed_by_id', feed_id=feed_id)
        assert feed.error_streak == 1
        assert feed.next_poll_at == NOW + backoff_minutes(1) * 60
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_missing_feed_is_a_no_op(tmp_path):
    db, _ = await setup_db(tmp_path)
    fetch = StubFetch()
    try:
        assert await make_ingestor(db, fetch, Clock()).ingest_once(12345) == OUTCOME_MISSING
        assert fetch.calls == []
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_storage_unavailable_does_not_raise(tmp_path):
    db, feed_id = await setup_db(tmp_path)
    await db.stop()
    assert await make_ingestor(db, StubFetch(), Clock()).ingest_once(feed_id) == OUTCOME_FAILED


def test_backoff_is_monotonic_and_capped(monkeypatch):
    monkeypatch.setattr(config, "BACKOFF_BASE_MINUTES", 5)
    monkeypatch.setattr(config, "MAX_BACKOFF_MINUTES", 1440)
    values = [backoff_minutes(streak) for streak in range(1, 40)]
    assert values[:3] == [10, 20, 40]
    assert values == sorted(values)
    assert max(values) == config.MAX_BACKOFF_MINUTES
    assert backoff_minutes(100) == config.MAX_BACKOFF_MINUTES


def test_success_interval():
    assert success_interval_minutes(True) == config.CHANGED_INTERVAL_MINUTES
    assert success_interval_minutes(False) == config.UNCHANGED_INTERVAL_MINUTES


@pytest.mark.asyncio
async def test_parsing_runs_off_the_event_loop(tmp_path, monkeypatch):
    db, feed_id = await setup_db(tmp_path)
    threads = []

    def recording_normalize(body, fetch_url):
        threads.append(threading.get_ident())
        return normalize(body, fetch_url)

    monkeypatch.setattr(ingest, 'normalize', recording_normalize)
    ingestor = make_ingestor(db, StubFetch(fetched()), Clock())
    try:
        assert await ingestor.ingest_once(feed_id) == OUTCOME_UPDATED
        assert len(threads) == 1
        assert threads[0] != threading.get_ident()
    finally:
        await db.stop()
