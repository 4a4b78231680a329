#!/usr/bin/env python3
"""
Feed Poller entry point.

Modes:
  run     poll due feeds continuously until interrupted
  once    run a single scheduler cycle and exit
  seed    register feed URLs (from feeds.yaml or --url) so they are due immediately
  status  print every feed with its error streak and next poll time
"""

import argparse
import asyncio
import sys
import time
from typing import List, Optional

from aiohttp import ClientSession

from config import config, get_logger
from errors import StorageError
from host_limiter import HostLimiter
from ingest import FeedIngestor
from models import DatabaseQueue
from scheduler import PollScheduler
from telemetry import init_telemetry, trace_span
from utils import format_duration, format_timestamp, truncate_string, validate_url

# Module-specific logger
logger = get_logger("main")


class FeedPoller:
    """Wires storage, HTTP session, limiter, pipeline and scheduler together."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.session: Optional[ClientSession] = None
        self.limiter = HostLimiter(config.MAX_PER_HOST)
        self.scheduler: Optional[PollScheduler] = None

    async def start(self) -> None:
        """Open storage and the shared HTTP session. Raises StorageError on failure."""
        logger.debug(f"Configuration: {config.get_config_summary()}")
        await self.db.start()
        self.session = ClientSession()
        ingestor = FeedIngestor(self.db, self.session, self.limiter)
        self.scheduler = PollScheduler(self.db, ingestor)

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
        await self.db.stop()

    async def run(self, max_cycles: Optional[int] = None) -> None:
        await self.scheduler.run_forever(max_cycles=max_cycles)

    @trace_span("seed", tracer_name="main")
    async def seed(self, urls: List[str]) -> int:
        """Register feed URLs, skipping invalid and already known ones."""
        now = int(time.time())
        added = 0
        for url in urls:
            url = url.strip()
            if not validate_url(url):
                logger.warning(f"Skipping invalid feed URL: {url!r}")
                continue
            if await self.db.execute('register_feed', feed_url=url, now=now):
                logger.info(f"➕ Registered {url}")
                added += 1
            else:
                logger.debug(f"Already registered: {url}")
        logger.info(f"Seeded {added} new feed(s) of {len(urls)} given")
        return added

    async def print_status(self) -> None:
        """Print formatted status information."""
        feeds = await self.db.execute('list_feeds')
        total = await self.db.execute('count_entries')
        now = int(time.time())

        print("\n📊 Feed Poller Status")
        print(f"💾 Database: {self.db.db_path}")
        print(f"📰 Feeds: {len(feeds)}   Entries: {total}")
        for feed in feeds:
            count = await self.db.execute('count_entries', feed_id=feed.id)
            due_in = feed.next_poll_at - now
            when = "due now" if due_in <= 0 else f"in {format_duration(due_in)}"
            marker = "⚠️ " if feed.error_streak else "✅"
            print(f"\n{marker} [{feed.id}] {feed.title or feed.feed_url}")
            print(f"   🔗 {feed.feed_url}")
            print(f"   📝 Entries: {count}   Last polled: {format_timestamp(feed.last_polled_at)}")
            print(f"   ⏰ Next poll: {format_timestamp(feed.next_poll_at)} ({when})")
            if feed.error_streak:
                print(f"   ❌ Error streak: {feed.error_streak} - {truncate_string(feed.last_error or '', 120)}")


async def _run_mode(args: argparse.Namespace) -> int:
    poller = FeedPoller(args.db)
    try:
        await poller.start()
    except StorageError as e:
        logger.error(f"💥 Could not start storage: {e}")
        await poller.close()
        return 1

    try:
        if args.mode == 'run':
            await poller.run()
        elif args.mode == 'once':
            await poller.run(max_cycles=1)
        elif args.mode == 'seed':
            if args.url:
                urls = args.url
            else:
                config.reload_feed_sources()
                urls = config.FEED_SOURCES
            if not urls:
                logger.error(f"No feed URLs given and none found in {config.FEEDS_CONFIG_PATH}")
                return 1
            await poller.seed(urls)
        elif args.mode == 'status':
            await poller.print_status()
        return 0
    finally:
        await poller.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Polite RSS/Atom/JSON Feed poller')
    parser.add_argument('mode', choices=['run', 'once', 'seed', 'status'],
                        help='Operation mode')
    parser.add_argument('--url', action='append',
                        help='Feed URL to register in seed mode (repeatable; overrides feeds.yaml)')
    parser.add_argument('--db', type=str,
                        help='Database path (default: DATABASE_PATH)')

    args = parser.parse_args()
    init_telemetry("feed-poller")

    try:
        sys.exit(asyncio.run(_run_mode(args)))
    except KeyboardInterrupt:
        logger.info("👋 Feed poller shutting down")
    except StorageError as e:
        logger.error(f"💥 Storage failure: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
