import asyncio

import pytest

from errors import StorageError
from host_limiter import HostLimiter
from ingest import FeedIngestor, backoff_minutes
from models import DatabaseQueue
from scheduler import PollScheduler

NOW = 1_700_000_000


class RecordingIngestor:
    def __init__(self, delay=0.0):
        self.delay = delay
        self.seen = []
        self.in_flight = 0
        self.peak = 0

    async def ingest_once(self, feed_id):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            self.seen.append(feed_id)
        finally:
            self.in_flight -= 1


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


async def seeded_db(tmp_path, due_times):
    db = DatabaseQueue(str(tmp_path / "feeds.db"))
    await db.start()
    for i, due in enumerate(due_times):
        await db.execute('register_feed', feed_url=f"https://host{i}.example/feed", now=due)
    return db


@pytest.mark.asyncio
async def test_due_batch_is_oldest_first_and_bounded(tmp_path):
    db = await seeded_db(tmp_path, [NOW - 1, NOW - 30, NOW + 60, NOW - 20])
    scheduler = PollScheduler(db, RecordingIngestor(), batch_size=2, idle_seconds=2, clock=lambda: NOW)
    try:
        batch = await scheduler.due_batch()
        assert [f.next_poll_at for f in batch] == [NOW - 30, NOW - 20]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_run_cycle_dispatches_whole_batch_concurrently(tmp_path):
    db = await seeded_db(tmp_path, [NOW - 3, NOW - 2, NOW - 1])
    ingestor = RecordingIngestor(delay=0.01)
    sleep = FakeSleep()
    scheduler = PollScheduler(db, ingestor, batch_size=20, idle_seconds=2, clock=lambda: NOW, sleep=sleep)
    try:
        assert await scheduler.run_cycle() == 3
        assert sorted(ingestor.seen) == [1, 2, 3]
        assert ingestor.peak == 3
        assert sleep.calls == []
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_idle_cycle_sleeps(tmp_path):
    db = await seeded_db(tmp_path, [NOW + 600])
    ingestor = RecordingIngestor()
    sleep = FakeSleep()
    scheduler = PollScheduler(db, ingestor, batch_size=20, idle_seconds=2, clock=lambda: NOW, sleep=sleep)
    try:
        assert await scheduler.run_cycle() == 0
        assert ingestor.seen == []
        assert sleep.calls == [2]
    finally:
        await db.stop()


def test_next_wake_time():
    scheduler = PollScheduler(db=None, ingestor=None, batch_size=5, idle_seconds=2, clock=lambda: NOW)
    assert scheduler.next_wake_time([]) == NOW + 2
    assert scheduler.next_wake_time([object()]) == NOW


@pytest.mark.asyncio
async def test_stalled_feed_is_abandoned_and_backs_off(tmp_path):
    db = await seeded_db(tmp_path, [NOW - 1])

    async def stalled_fetch(limiter, session, url, etag=None, last_modified=None):
        await asyncio.sleep(10)

    ingestor = FeedIngestor(db, session=None, limiter=HostLimiter(3), fetch=stalled_fetch, clock=lambda: NOW)
    scheduler = PollScheduler(db, ingestor, clock=lambda: NOW, sleep=FakeSleep(), feed_timeout=0.05)
    try:
        assert await asyncio.wait_for(scheduler.run_cycle(), timeout=5) == 1

        feed = (await db.execute('list_feeds'))[0]
        assert feed.error_streak == 1
        assert feed.last_polled_at == NOW
        assert feed.next_poll_at == NOW + backoff_minutes(1) * 60
        assert feed.next_poll_at > NOW
        assert feed.last_error.startswith("CycleTimeoutError")

        # No longer due, so the next cycle dispatches nothing
        assert await scheduler.run_cycle() == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_run_forever_stops_after_max_cycles(tmp_path):
    db = await seeded_db(tmp_path, [])
    sleep = FakeSleep()
    scheduler = PollScheduler(db, RecordingIngestor(), idle_seconds=1.5, clock=lambda: NOW, sleep=sleep)
    try:
        await scheduler.run_forever(max_cycles=3)
        assert scheduler.cycles == 3
        assert sleep.calls == [1.5, 1.5, 1.5]
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_selection_failure_propagates(tmp_path):
    db = DatabaseQueue(str(tmp_path / "feeds.db"))
    scheduler = PollScheduler(db, RecordingIngestor(), clock=lambda: NOW, sleep=FakeSleep())
    with pytest.raises(StorageError):
        await scheduler.run_cycle()
