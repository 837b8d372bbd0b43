#!/usr/bin/env python3
"""
Feed reader: the polling scheduler.

FeedReader owns the set of registered feed URLs and a QueueWithBackoff of the
ones waiting to be polled. Each poll cycle takes the next due URL, fetches it
conditionally, parses it, filters out entries whose fingerprints were already
recorded, publishes the rest and puts the URL back in the queue (after a
backoff if anything went wrong).
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from time import monotonic
from typing import Any, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from backoff_queue import QueueWithBackoff
from config import DEFAULT_USER_AGENT, get_logger
from errors import FeedFetchError, FeedParseError, StoreError
from fetcher import FeedFetcher
from messagequeue import MessagePublisher
from parser import FeedChannel, parse_feed
from store import SeenItemStore, Validators
from telemetry import register_feed_gauges, trace_span
from utils import format_duration, normalize_feed_url, strip_html

logger = get_logger("reader")

FEED_ENTRIES_EVENT = "feed.entries"
FEED_SUCCESS_EVENT = "feed.success"


@dataclass
class FeedReaderMetrics:
    feeds_count: int
    feeds_failing_http: int
    feeds_failing_parsing: int
    last_fetch_ms: Optional[float] = None


class FeedReader:
    """Polls registered feeds and publishes their new entries."""

    def __init__(
        self,
        publisher: MessagePublisher,
        store: SeenItemStore,
        fetcher: FeedFetcher,
        poll_interval_seconds: float = 600,
        poll_concurrency: int = 4,
        poll_timeout_seconds: float = 30,
        user_agent: str = DEFAULT_USER_AGENT,
        persist_validators: bool = False,
        queue: Optional[QueueWithBackoff] = None,
        register_metrics: bool = True,
    ):
        """Initialize the reader.

        Args:
            publisher: Receives `feed.entries` and `feed.success` events.
            store: Seen-item store used for deduplication.
            fetcher: HTTP client performing conditional requests.
            poll_interval_seconds: Target time for one pass over all feeds.
            poll_concurrency: Maximum number of poll cycles in flight.
            poll_timeout_seconds: Per-request timeout.
            user_agent: User-Agent header sent with every request.
            persist_validators: Save ETag/Last-Modified in the store (only
                                effective when the store is persistent).
            queue: Work queue; a default QueueWithBackoff is created if omitted.
            register_metrics: Export feed counts as OpenTelemetry gauges.
        """
        self.publisher = publisher
        self.store = store
        self.fetcher = fetcher
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_concurrency = max(1, int(poll_concurrency))
        self.poll_timeout_seconds = poll_timeout_seconds
        self.user_agent = user_agent
        self.persist_validators = persist_validators and store.is_persistent
        self.queue = queue if queue is not None else QueueWithBackoff()

        self._observed: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._validators: Dict[str, Validators] = {}
        self._validators_loaded: Set[str] = set()
        self._failing_http: Set[str] = set()
        self._failing_parsing: Set[str] = set()
        self.last_fetch_ms: Optional[float] = None

        self._should_run = False
        self._stop_event: Optional[asyncio.Event] = None

        if persist_validators and not store.is_persistent:
            logger.warning("Validator persistence requested but the seen-item store is not persistent; ignoring")
        if register_metrics:
            register_feed_gauges(lambda: asdict(self.get_metrics()))

    # Registration

    @property
    def feed_urls(self) -> Set[str]:
        return set(self._observed)

    def add_feed(self, url: str) -> bool:
        """Start tracking a feed. Returns False if the URL is invalid."""
        normalized = normalize_feed_url(url)
        if normalized is None:
            logger.error(f"Invalid feed URL {url!r}. It will not be tracked")
            return False
        if normalized in self._observed:
            return True
        self._observed.add(normalized)
        self.queue.push(normalized)
        logger.debug(f"Tracking feed {normalized}")
        return True

    def remove_feed(self, url: str) -> None:
        """Stop tracking a feed, cancelling any pending poll or backoff."""
        normalized = normalize_feed_url(url) or url
        self._observed.discard(normalized)
        self.queue.remove(normalized)
        self._forget(normalized)

    def set_feeds(self, urls: Iterable[str]) -> None:
        """Replace the tracked feeds with the given URLs (shuffled)."""
        new_urls: Set[str] = set()
        for url in urls:
            normalized = normalize_feed_url(url)
            if normalized is None:
                logger.error(f"Invalid feed URL {url!r}. It will not be tracked")
                continue
            new_urls.add(normalized)

        for removed in self._observed - new_urls:
            self.queue.remove(removed)
            self._forget(removed)
        self._observed = new_urls

        ready = [u for u in new_urls if u not in self._in_flight and not self.queue.is_deferred(u)]
        self.queue.populate(ready)
        logger.info(f"Loaded {len(self._observed)} feed URLs")

    def _forget(self, url: str) -> None:
        self._validators.pop(url, None)
        self._validators_loaded.discard(url)
        self._failing_http.discard(url)
        self._failing_parsing.discard(url)

    # Metrics

    @property
    def sleeping_interval(self) -> float:
        """Milliseconds each worker waits between polls."""
        return (self.poll_interval_seconds * 1000) / max(self.queue.length(), 1) * self.poll_concurrency

    def get_metrics(self) -> FeedReaderMetrics:
        return FeedReaderMetrics(
            feeds_count=len(self._observed),
            feeds_failing_http=len(self._failing_http),
            feeds_failing_parsing=len(self._failing_parsing),
            last_fetch_ms=self.last_fetch_ms,
        )

    # Polling

    async def _get_validators(self, url: str) -> Optional[Validators]:
        if self.persist_validators and url not in self._validators_loaded:
            self._validators_loaded.add(url)
            stored = await self.store.load_validators(url)
            if stored:
                self._validators[url] = stored
        return self._validators.get(url)

    async def _set_validators(self, url: str, validators: Validators) -> None:
        self._validators[url] = validators
        if self.persist_validators:
            await self.store.store_validators(url, validators)

    def _entry_payload(self, item) -> Dict[str, Any]:
        entry = item.to_event()
        entry["title"] = strip_html(item.title)
        return entry

    async def _process_channel(self, url: str, channel: FeedChannel, fetch_key: str) -> bool:
        """Deduplicate, record and publish a parsed channel. Returns True if seen entries changed."""
        initial_sync = not await self.store.has_seen_feed(url)
        logger.debug(f"Found {len(channel.items)} entries in {url}")

        candidates: List[str] = []
        for item in channel.items:
            if item.fingerprint and item.fingerprint not in candidates:
                candidates.append(item.fingerprint)
        seen: Set[str] = set()
        if candidates and not initial_sync:
            seen = await self.store.seen_fingerprints(url, candidates)

        new_fingerprints: List[str] = []
        entries: List[Dict[str, Any]] = []
        for item in channel.items:
            fp = item.fingerprint
            if fp is None:
                logger.debug(f"Entry in {url} has no id, link or title; treating it as new")
            elif fp in seen or fp in new_fingerprints:
                continue
            else:
                new_fingerprints.append(fp)
            entries.append(self._entry_payload(item))

        if new_fingerprints or initial_sync:
            await self.store.record_fingerprints(url, new_fingerprints)

        if initial_sync:
            logger.info(f"Initial sync of {url}: recorded {len(new_fingerprints)} entries without publishing")
        elif entries:
            logger.info(f"Found {len(entries)} new entries in {url}")
            await self.publisher.publish(FEED_ENTRIES_EVENT, {
                "feedTitle": strip_html(channel.title),
                "feedUrl": url,
                "fetchKey": fetch_key,
                "entries": entries,
            })
        return initial_sync or bool(entries)

    def _requeue(self, url: str, failed: bool) -> None:
        if url not in self._observed:
            logger.debug(f"Feed {url} was removed while being polled; not re-queueing")
            return
        if failed:
            previous = self.queue.last_backoff(url)
            duration = self.queue.backoff(url)
            if previous:
                logger.debug(
                    f"Retrying {url} in {format_duration(duration / 1000)} "
                    f"(still failing after {format_duration(previous / 1000)})"
                )
            else:
                logger.debug(f"Retrying {url} in {format_duration(duration / 1000)}")
        else:
            self.queue.push(url)

    @trace_span(
        "poll_feed",
        tracer_name="reader",
        attr_from_args=lambda self, url: {"feed.url": url},
    )
    async def poll_feed(self, url: str) -> bool:
        """Run one poll cycle for a feed.

        Returns:
            True if the feed's seen entries changed (new entries or the
            initial sync), False otherwise.
        """
        self._in_flight.add(url)
        fetch_key = str(uuid4())
        seen_changed = False
        failed = False
        try:
            validators = await self._get_validators(url)
            etag = validators.etag if validators else None
            last_modified = validators.last_modified if validators else None
            logger.debug(f"Checking for updates in {url} ({etag or last_modified})")

            result = await self.fetcher.fetch(
                url,
                etag=etag,
                last_modified=last_modified,
                timeout_seconds=self.poll_timeout_seconds,
                user_agent=self.user_agent,
            )

            if result.not_modified:
                logger.debug(f"Feed {url} not modified")
            else:
                channel = parse_feed(result.body)
                seen_changed = await self._process_channel(url, channel, fetch_key)
                await self._set_validators(url, Validators(result.etag, result.last_modified))

            await self.publisher.publish(FEED_SUCCESS_EVENT, {"feedUrl": url})
            self._failing_http.discard(url)
            self._failing_parsing.discard(url)
        except FeedFetchError as e:
            failed = True
            self._failing_http.add(url)
            self._failing_parsing.discard(url)
            if e.is_transient:
                logger.warning(f"Unable to read feed {url}: {e}")
            else:
                logger.error(f"Unable to read feed {url}: {e}")
        except FeedParseError as e:
            failed = True
            self._failing_parsing.add(url)
            self._failing_http.discard(url)
            logger.error(f"Unable to parse feed {url}: {e}")
        except StoreError as e:
            failed = True
            self._failing_parsing.add(url)
            logger.error(f"Seen-item store failed for {url}: {e}")
        except Exception as e:
            failed = True
            self._failing_parsing.add(url)
            logger.exception(f"Unexpected error polling {url}: {e}")
        finally:
            self._in_flight.discard(url)
            if url not in self._observed:
                # Removed mid-poll: drop the state this cycle just recorded
                self._forget(url)
            self._requeue(url, failed)
        return seen_changed

    def _next_url(self) -> Optional[str]:
        """Pop the next due URL, skipping unregistered or in-flight ones."""
        while True:
            url = self.queue.pop()
            if url is None:
                return None
            if url not in self._observed:
                logger.debug(f"Dropping {url} from the queue; it is no longer tracked")
                continue
            if url in self._in_flight:
                logger.debug(f"Dropping duplicate of in-flight {url}")
                continue
            return url

    async def poll_feeds(self) -> float:
        """Poll the next due feed, if any.

        Returns:
            Milliseconds to sleep before the next cycle.
        """
        logger.debug(f"Checking for updates in {len(self._observed)} RSS/Atom feeds")
        started = monotonic()

        url = self._next_url()
        if url is None:
            next_due = self.queue.next_due_ms()
            if next_due is None:
                logger.debug("No feeds available to poll")
            else:
                logger.debug(
                    f"No feeds ready to poll; {self.queue.deferred_count()} backing off, "
                    f"next due at {datetime.fromtimestamp(next_due / 1000):%H:%M:%S}"
                )
            return self.sleeping_interval

        if await self.poll_feed(url):
            logger.debug(f"Feed {url} changed and was saved")

        elapsed = (monotonic() - started) * 1000
        self.last_fetch_ms = elapsed
        interval = self.sleeping_interval
        sleep_for = max(interval - elapsed, 0)
        logger.debug(f"Feed fetching took {elapsed / 1000:.2f}s, sleeping for {sleep_for / 1000:.2f}s")
        if elapsed > interval:
            logger.warning("It took longer to update the feed than the configured poll interval")
        return sleep_for

    async def poll_all(self) -> int:
        """Poll every registered feed once, bounded by poll_concurrency.

        Returns:
            Number of feeds whose seen entries changed.
        """
        semaphore = asyncio.Semaphore(self.poll_concurrency)

        async def poll_with_semaphore(url: str) -> bool:
            async with semaphore:
                return await self.poll_feed(url)

        urls = [u for u in self._observed if u not in self._in_flight]
        for url in urls:
            self.queue.remove(url)
        results = await asyncio.gather(*(poll_with_semaphore(u) for u in urls))
        return sum(1 for changed in results if changed)

    async def _sleep(self, milliseconds: float) -> None:
        if self._stop_event is None or milliseconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=milliseconds / 1000)
        except asyncio.TimeoutError:
            pass

    async def _cycle(self) -> None:
        sleep_for = await self.poll_feeds()
        if self._should_run:
            await self._sleep(sleep_for)

    async def run(self) -> None:
        """Poll feeds until stop() is called, keeping poll_concurrency cycles in flight."""
        self._should_run = True
        self._stop_event = asyncio.Event()
        # Start from a random order, not registration order
        self.queue.shuffle()
        tasks: Set[asyncio.Task] = set()
        logger.info(
            f"Polling {len(self._observed)} feeds every {format_duration(self.poll_interval_seconds)} "
            f"with concurrency {self.poll_concurrency}"
        )
        try:
            while self._should_run:
                while len(tasks) < self.poll_concurrency:
                    tasks.add(asyncio.create_task(self._cycle()))
                done, tasks = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if not task.cancelled() and task.exception() is not None:
                        logger.error(f"Poll cycle failed: {task.exception()}")
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Feed reader stopped")

    def stop(self) -> None:
        """End the run loop; pending sleeps return immediately."""
        self._should_run = False
        if self._stop_event is not None:
            self._stop_event.set()
