#!/usr/bin/env python3
"""
Polling scheduler.

Repeatedly selects the feeds whose ``next_poll_at`` has passed (oldest-due first,
in batches) and ingests each batch concurrently. When nothing is due it idles
briefly before looking again. Per-feed cadence lives entirely in the database:
the ingestion pipeline writes each feed's next poll time, the scheduler only
reads it.
"""

import asyncio
import time
from typing import Awaitable, Callable, List, Optional

from config import config, get_logger
from ingest import FeedIngestor
from models import DatabaseQueue, Feed
from telemetry import trace_span

# Module-specific logger
logger = get_logger("scheduler")


class PollScheduler:
    """Drives ingestion cycles for all due feeds."""

    def __init__(
        self,
        db: DatabaseQueue,
        ingestor: FeedIngestor,
        batch_size: Optional[int] = None,
        idle_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        feed_timeout: Optional[float] = None,
    ):
        """Initialize scheduler.

        Args:
            db: Shared database queue.
            ingestor: Pipeline used for every selected feed.
            batch_size: Maximum feeds dispatched per cycle (default POLL_BATCH_SIZE).
            idle_seconds: Pause when nothing is due (default IDLE_SLEEP_SECONDS).
            clock: Returns the current epoch time in seconds.
            sleep: Awaitable sleep, replaceable in tests.
            feed_timeout: Upper bound in seconds for one feed's whole cycle
                (default FEED_CYCLE_TIMEOUT).
        """
        self.db = db
        self.ingestor = ingestor
        self.batch_size = batch_size or config.POLL_BATCH_SIZE
        self.idle_seconds = config.IDLE_SLEEP_SECONDS if idle_seconds is None else idle_seconds
        self.clock = clock
        self.sleep = sleep
        self.feed_timeout = feed_timeout or config.FEED_CYCLE_TIMEOUT
        self.cycles = 0

    async def due_batch(self) -> List[Feed]:
        """Feeds due now, oldest-due first, at most ``batch_size`` of them.

        Storage errors propagate: without selection there is nothing to schedule.
        """
        return await self.db.execute('select_due_feeds', limit=self.batch_size, now=int(self.clock()))

    def next_wake_time(self, batch: List[Feed]) -> float:
        """When the next selection should happen given the batch just selected."""
        now = self.clock()
        if batch:
            return now
        return now + self.idle_seconds

    async def _ingest_with_deadline(self, feed: Feed) -> None:
        try:
            await asyncio.wait_for(self.ingestor.ingest_once(feed.id), timeout=self.feed_timeout)
            return
        except asyncio.TimeoutError:
            logger.error(f"Abandoned {feed.feed_url} after {self.feed_timeout}s")

        # Recording the failure gets the same deadline; storage may be what stalled
        try:
            await asyncio.wait_for(
                self.ingestor.record_timeout(feed, self.feed_timeout),
                timeout=self.feed_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Could not record timeout for {feed.feed_url}; it stays due")

    @trace_span("scheduler.cycle", tracer_name="scheduler")
    async def run_cycle(self) -> int:
        """Run one selection + dispatch cycle.

        Returns:
            The number of feeds dispatched.
        """
        batch = await self.due_batch()
        self.cycles += 1

        if not batch:
            delay = self.next_wake_time(batch) - self.clock()
            logger.debug(f"No feeds due, sleeping {delay:.1f}s")
            await self.sleep(max(0.0, delay))
            return 0

        logger.info(f"📡 Polling {len(batch)} due feed(s)")
        started = time.monotonic()
        await asyncio.gather(*(self._ingest_with_deadline(feed) for feed in batch))
        logger.debug(f"Batch of {len(batch)} finished in {time.monotonic() - started:.2f}s")
        return len(batch)

    async def run_forever(self, max_cycles: Optional[int] = None) -> None:
        """Loop over cycles until cancelled (or ``max_cycles`` have run)."""
        logger.info(
            f"🚀 Scheduler started (batch size {self.batch_size}, idle {self.idle_seconds}s)"
        )
        completed = 0
        try:
            while max_cycles is None or completed < max_cycles:
                await self.run_cycle()
                completed += 1
        except asyncio.CancelledError:
            logger.info("📶 Scheduler cancelled - shutting down")
            raise
