#!/usr/bin/env python3
"""
Seen-item stores.

A store remembers, per feed URL, which entry fingerprints were already
delivered. The reader consults it to filter out old entries and records new
fingerprints after every successful poll.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set

from config import STORE_KINDS, get_logger
from errors import StoreError
from models import DatabaseQueue

logger = get_logger("store")


@dataclass
class Validators:
    """HTTP cache validators returned by the last successful fetch of a feed."""
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    def __bool__(self) -> bool:
        return bool(self.etag or self.last_modified)


class SeenItemStore(ABC):
    """Interface for per-feed fingerprint storage."""

    is_persistent = False

    async def start(self) -> None:
        """Acquire any resources the store needs."""

    async def close(self) -> None:
        """Release resources held by the store."""

    @abstractmethod
    async def has_seen_feed(self, url: str) -> bool:
        """True once fingerprints were recorded for the feed (even an empty set)."""

    @abstractmethod
    async def seen_fingerprints(self, url: str, candidates: Iterable[str]) -> Set[str]:
        """Return the subset of candidates already recorded for the feed."""

    @abstractmethod
    async def record_fingerprints(self, url: str, fingerprints: Iterable[str]) -> None:
        """Add fingerprints to the feed's seen set."""

    async def load_validators(self, url: str) -> Optional[Validators]:
        return None

    async def store_validators(self, url: str, validators: Validators) -> None:
        return None

    async def stats(self) -> Dict[str, int]:
        """Number of feeds seen and fingerprints recorded."""
        return {"feeds": 0, "fingerprints": 0}

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class MemorySeenStore(SeenItemStore):
    """In-process store; everything is forgotten on restart."""

    def __init__(self):
        self._seen: Dict[str, Set[str]] = {}

    async def has_seen_feed(self, url: str) -> bool:
        return url in self._seen

    async def seen_fingerprints(self, url: str, candidates: Iterable[str]) -> Set[str]:
        seen = self._seen.get(url)
        if not seen:
            return set()
        return {fp for fp in candidates if fp in seen}

    async def record_fingerprints(self, url: str, fingerprints: Iterable[str]) -> None:
        self._seen.setdefault(url, set()).update(fingerprints)

    async def stats(self) -> Dict[str, int]:
        return {"feeds": len(self._seen), "fingerprints": sum(len(s) for s in self._seen.values())}

    def __len__(self) -> int:
        return len(self._seen)


class SqliteSeenStore(SeenItemStore):
    """Durable store backed by SQLite through a DatabaseQueue worker.

    Also keeps each feed's ETag/Last-Modified so conditional requests survive
    a restart.
    """

    is_persistent = True

    def __init__(self, database_path: str, schema_path: Optional[str] = None):
        self.database_path = database_path
        self.db = DatabaseQueue(database_path, schema_path)

    async def start(self) -> None:
        await self.db.start()

    async def close(self) -> None:
        await self.db.stop()

    async def has_seen_feed(self, url: str) -> bool:
        return bool(await self.db.execute("has_feed", url=url))

    async def seen_fingerprints(self, url: str, candidates: Iterable[str]) -> Set[str]:
        return await self.db.execute("check_existing_fingerprints", feed_url=url, fingerprints=list(candidates))

    async def record_fingerprints(self, url: str, fingerprints: Iterable[str]) -> None:
        await self.db.execute("save_fingerprints", feed_url=url, fingerprints=list(fingerprints))

    async def load_validators(self, url: str) -> Optional[Validators]:
        row = await self.db.execute("get_feed_validators", url=url)
        if not row:
            return None
        return Validators(etag=row.get('etag'), last_modified=row.get('last_modified'))

    async def store_validators(self, url: str, validators: Validators) -> None:
        await self.db.execute(
            "update_feed_validators",
            url=url,
            etag=validators.etag,
            last_modified=validators.last_modified,
        )

    async def stats(self) -> Dict[str, int]:
        feeds = await self.db.execute("list_feeds")
        for feed in feeds:
            logger.debug(
                f"{feed['url']}: {feed['fingerprints']} fingerprints, "
                f"etag {feed['etag']}, last modified {feed['last_modified']}"
            )
        return {
            "feeds": sum(1 for feed in feeds if feed['first_seen'] is not None),
            "fingerprints": await self.db.execute("count_fingerprints"),
        }


def create_store(kind: str = "memory", database_path: str = "feeds.db") -> SeenItemStore:
    """Build a store from its configured kind ("memory" or "sqlite")."""
    kind = (kind or "memory").strip().lower()
    if kind not in STORE_KINDS:
        raise StoreError(f"Unknown seen-item store '{kind}' (expected one of {', '.join(STORE_KINDS)})")
    if kind == "sqlite":
        logger.info(f"Using SQLite seen-item store at {database_path}")
        return SqliteSeenStore(database_path)
    logger.info("Using in-memory seen-item store")
    return MemorySeenStore()
