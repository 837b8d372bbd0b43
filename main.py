#!/usr/bin/env python3
"""
Feed Poller entry point

Loads the feed list from feeds.yaml, builds the reader with the configured
seen-item store and runs it, either forever (default) or for a single pass
over every feed (--once). New entries are logged by a `feed.*` subscriber.
"""

import asyncio
import sys
import argparse
from typing import Optional

from config import STORE_KINDS, config, get_logger
from fetcher import FeedFetcher
from messagequeue import LocalMessageQueue, QueueMessage
from reader import FEED_ENTRIES_EVENT, FeedReader
from store import create_store
from backoff_queue import QueueWithBackoff
from telemetry import init_telemetry
from utils import truncate_string

logger = get_logger("main")
init_telemetry("feed-poller")


def log_event(message: QueueMessage) -> None:
    """Default subscriber: report new entries in the log."""
    if message.event_name != FEED_ENTRIES_EVENT:
        logger.debug(f"{message.event_name}: {message.data}")
        return
    data = message.data
    feed_label = data.get("feedTitle") or data.get("feedUrl")
    for entry in data.get("entries", []):
        title = truncate_string(entry.get("title") or "(untitled)", 120)
        logger.info(f"[{feed_label}] {title} {entry.get('link') or ''}".rstrip())


class FeedPollerApp:
    """Wires configuration, store, fetcher and reader together."""

    def __init__(
        self,
        store_kind: Optional[str] = None,
        interval: Optional[float] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        self.store_kind = store_kind or config.SEEN_STORE
        self.interval = interval or config.POLL_INTERVAL_SECONDS
        self.concurrency = concurrency or config.POLL_CONCURRENCY
        self.queue = LocalMessageQueue()
        self.queue.subscribe("feed.*", log_event)

    def build_reader(self, store, fetcher) -> FeedReader:
        reader = FeedReader(
            self.queue,
            store,
            fetcher,
            poll_interval_seconds=self.interval,
            poll_concurrency=self.concurrency,
            poll_timeout_seconds=config.POLL_TIMEOUT_SECONDS,
            user_agent=config.USER_AGENT,
            persist_validators=config.PERSIST_VALIDATORS,
            queue=QueueWithBackoff(
                backoff_time_ms=config.BACKOFF_TIME_MS,
                backoff_pow=config.BACKOFF_POW,
                backoff_time_max_ms=config.BACKOFF_TIME_MAX_MS,
            ),
        )
        reader.set_feeds(config.FEED_SOURCES.values())
        return reader

    async def run(self, once: bool = False) -> bool:
        """Run the poller. Returns False if there was nothing to poll."""
        if not config.FEED_SOURCES:
            logger.error(f"No feeds configured in {config.FEEDS_CONFIG_PATH}")
            return False

        logger.info(f"Configuration: {config.get_config_summary()}")
        store = create_store(self.store_kind, config.DATABASE_PATH)
        async with store, FeedFetcher() as fetcher:
            reader = self.build_reader(store, fetcher)
            if once:
                changed = await reader.poll_all()
                metrics = reader.get_metrics()
                logger.info(
                    f"Polled {metrics.feeds_count} feeds: {changed} changed, "
                    f"{metrics.feeds_failing_http} failing (http), {metrics.feeds_failing_parsing} failing (parsing)"
                )
                stats = await store.stats()
                logger.info(f"Seen-item store holds {stats['fingerprints']} fingerprints for {stats['feeds']} feeds")
                return True

            try:
                await reader.run()
            finally:
                reader.stop()
        return True


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Feed Poller')
    parser.add_argument('--once', action='store_true',
                        help='Poll every configured feed a single time and exit')
    parser.add_argument('--feeds', type=str,
                        help='Path to the feeds YAML file (overrides FEEDS_CONFIG_PATH)')
    parser.add_argument('--store', choices=STORE_KINDS,
                        help='Seen-item store to use (overrides SEEN_STORE)')
    parser.add_argument('--interval', type=float,
                        help='Seconds for one pass over all feeds (overrides FEEDS_POLL_INTERVAL_SECONDS)')
    parser.add_argument('--concurrency', type=int,
                        help='Maximum feeds polled at the same time (overrides FEEDS_POLL_CONCURRENCY)')

    args = parser.parse_args()

    if args.feeds:
        config.FEEDS_CONFIG_PATH = args.feeds
        config.reload_feed_sources()
    if args.interval is not None and args.interval <= 0:
        parser.error("--interval must be positive")
    if args.concurrency is not None and args.concurrency < 1:
        parser.error("--concurrency must be at least 1")

    app = FeedPollerApp(store_kind=args.store, interval=args.interval, concurrency=args.concurrency)

    try:
        success = asyncio.run(app.run(once=args.once))
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("Feed poller shutting down")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
