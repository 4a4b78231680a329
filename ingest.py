#!/usr/bin/env python3
"""
Ingestion pipeline: one poll of one feed.

Load the feed row, fetch it politely through the per-host limiter, normalize the
body, store new entries and reschedule the feed. Every terminal path writes a new
``next_poll_at``: quickly after a change or a 304, slowly when nothing changed, and
with exponential backoff after failures.
"""

import asyncio
import time
from typing import Callable, Optional

from aiohttp import ClientSession

from config import config, get_logger
from errors import CycleTimeoutError, FeedError, StorageError
from fetcher import NotModified, fetch_with_limit
from host_limiter import HostLimiter
from models import DatabaseQueue, Feed
from normalizer import normalize
from telemetry import trace_span
from utils import format_duration, truncate_string

# Module-specific logger
logger = get_logger("ingest")

SECONDS_PER_MINUTE = 60

# Outcomes returned by FeedIngestor.ingest_once
OUTCOME_MISSING = "missing"
OUTCOME_NOT_MODIFIED = "not-modified"
OUTCOME_UPDATED = "updated"
OUTCOME_UNCHANGED = "unchanged"
OUTCOME_FAILED = "failed"


def backoff_minutes(streak: int) -> int:
    """Delay after the ``streak``-th consecutive failure: base * 2**streak, capped."""
    streak = max(0, streak)
    cap = config.MAX_BACKOFF_MINUTES
    # Past this point the power alone exceeds any sane cap
    if streak >= 32:
        return cap
    return min((2 ** streak) * config.BACKOFF_BASE_MINUTES, cap)


def success_interval_minutes(changed: bool) -> int:
    """Delay after a successful fetch, shorter when new entries arrived."""
    return config.CHANGED_INTERVAL_MINUTES if changed else config.UNCHANGED_INTERVAL_MINUTES


class FeedIngestor:
    """Runs single ingestion cycles against shared storage, session and limiter."""

    def __init__(
        self,
        db: DatabaseQueue,
        session: ClientSession,
        limiter: HostLimiter,
        fetch: Callable = fetch_with_limit,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.session = session
        self.limiter = limiter
        self.fetch = fetch
        self.clock = clock

    def _now(self) -> int:
        return int(self.clock())

    @trace_span(
        "ingest_once",
        tracer_name="ingest",
        attr_from_args=lambda self, feed_id: {"feed.id": feed_id},
    )
    async def ingest_once(self, feed_id: int) -> str:
        """Poll one feed and record the outcome.

        Never raises for feed-level problems (network, HTTP, parse or storage
        failures); those become an error streak and a backoff. Cancellation still
        propagates.

        Returns:
            One of the OUTCOME_* constants.
        """
        try:
            feed: Optional[Feed] = await self.db.execute('select_feed_by_id', feed_id=feed_id)
        except StorageError as e:
            logger.error(f"Could not load feed {feed_id}: {e}")
            return OUTCOME_FAILED

        if feed is None:
            logger.debug(f"Feed {feed_id} no longer exists, skipping")
            return OUTCOME_MISSING

        try:
            return await self._poll(feed)
        except asyncio.CancelledError:
            raise
        except FeedError as e:
            await self._record_failure(feed, e)
        except Exception as e:
            # Anything unexpected still has to reschedule the feed
            logger.exception(f"Unexpected error ingesting {feed.feed_url}: {e}")
            await self._record_failure(feed, e)
        return OUTCOME_FAILED

    async def _poll(self, feed: Feed) -> str:
        outcome = await self.fetch(
            self.limiter,
            self.session,
            feed.feed_url,
            etag=feed.etag,
            last_modified=feed.last_modified,
        )

        if isinstance(outcome, NotModified):
            now = self._now()
            next_poll_at = now + config.NOT_MODIFIED_INTERVAL_MINUTES * SECONDS_PER_MINUTE
            await self.db.execute(
                'update_feed_after_not_modified',
                feed_id=feed.id,
                now=now,
                next_poll_at=next_poll_at,
            )
            logger.info(f"{feed.feed_url}: not modified")
            return OUTCOME_NOT_MODIFIED

        # feedparser is not async, run in executor
        loop = asyncio.get_running_loop()
        parsed = await loop.run_in_executor(None, normalize, outcome.body, outcome.final_url)

        now = self._now()
        inserted = 0
        for entry in parsed.entries:
            if await self.db.execute('insert_entry_if_absent', feed_id=feed.id, entry=entry, now=now):
                inserted += 1
        changed = inserted > 0

        next_poll_at = now + success_interval_minutes(changed) * SECONDS_PER_MINUTE
        await self.db.execute(
            'update_feed_after_success',
            feed_id=feed.id,
            etag=outcome.etag,
            last_modified=outcome.last_modified,
            changed=changed,
            now=now,
            next_poll_at=next_poll_at,
            title=parsed.title,
            site_url=parsed.site_url,
        )

        if changed:
            logger.info(f"{feed.feed_url}: {inserted} new of {len(parsed.entries)} entries")
            return OUTCOME_UPDATED
        logger.info(f"{feed.feed_url}: no new entries ({len(parsed.entries)} seen)")
        return OUTCOME_UNCHANGED

    async def _record_failure(self, feed: Feed, error: Exception) -> None:
        streak = feed.error_streak + 1
        delay = backoff_minutes(streak)
        now = self._now()
        message = truncate_string(f"{type(error).__name__}: {error}", 500)
        logger.warning(
            f"{feed.feed_url}: poll failed ({message}); streak {streak}, "
            f"retrying in {format_duration(delay * SECONDS_PER_MINUTE)}"
        )
        try:
            await self.db.execute(
                'update_feed_after_error',
                feed_id=feed.id,
                error_streak=streak,
                now=now,
                next_poll_at=now + delay * SECONDS_PER_MINUTE,
                last_error=message,
            )
        except StorageError as e:
            logger.error(f"Could not record failure for {feed.feed_url}: {e}")

    async def record_timeout(self, feed: Feed, timeout_seconds: float) -> None:
        """Count an abandoned cycle as a failure so the feed backs off."""
        await self._record_failure(feed, CycleTimeoutError(feed.feed_url, timeout_seconds))
