#!/usr/bin/env python3
"""
Database operations for the durable seen-item store.

All SQLite access goes through DatabaseQueue, which runs every operation on a
single worker task so writes are serialized without explicit locking.
"""

from os import path, access, R_OK
from time import time
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, Iterable, List, Optional, Set, Any

from config import config, get_logger
from errors import StoreError
from telemetry import trace_span

logger = get_logger("models")

# SQLite caps bound parameters per statement; stay well under the limit
QUERY_CHUNK_SIZE = 500

OPERATIONS = frozenset({
    "has_feed",
    "list_feeds",
    "check_existing_fingerprints",
    "save_fingerprints",
    "count_fingerprints",
    "get_feed_validators",
    "update_feed_validators",
})


def initialize_database(conn, schema_path: Optional[str] = None) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feed_fingerprints'")
        tables_exist = cursor.fetchone() is not None

        if not tables_exist:
            logger.info("Database is new or empty. Initializing schema.")
            schema_sql = _read_schema_file(schema_path)
            cursor.executescript(schema_sql)
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.info("Database already exists with proper schema")
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file(schema_path: Optional[str] = None) -> str:
    """Read the schema from the SQL file."""
    schema_path = schema_path or config.SCHEMA_FILE_PATH

    try:
        if not path.isfile(schema_path):
            raise FileNotFoundError(f"Schema file not found at {schema_path}")

        if not access(schema_path, R_OK):
            raise PermissionError(f"No read permission for schema file at {schema_path}")

        file_size = path.getsize(schema_path)
        max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
        if file_size > max_size:
            raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

        with open(schema_path, 'r') as f:
            return f.read()
    except Exception as e:
        logger.error(f"Error reading schema file: {e}")
        raise


def _chunks(values: List[str], size: int = QUERY_CHUNK_SIZE) -> Iterable[List[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


class DatabaseQueue:
    """A queue for database operations to ensure they run one at a time."""

    def __init__(self, db_path: str, schema_path: Optional[str] = None):
        self.db_path = db_path
        self.schema_path = schema_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if self.db_path != ":memory:" and not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn, self.schema_path)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StoreError(f"Could not open database {self.db_path}: {e}")

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on an operation
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "Database worker stopped"})
            event.set()
        self.events.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    if operation_name not in OPERATIONS:
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        method = getattr(self, operation_name)
                        result = method(**params)
                        self.results[operation_id] = {"result": result}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    try:
                        self.conn.rollback()
                    except Error:
                        pass
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker.

        Raises:
            StoreError: If the worker is not running or the operation failed.
        """
        if not self.running:
            raise StoreError(f"Database worker not running (operation {operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id)
            if "error" in result:
                raise StoreError(result["error"])

            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Feed Operations
    def has_feed(self, url: str) -> bool:
        """Whether fingerprints were ever recorded for a feed."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT first_seen FROM feeds WHERE url = ?", (url,))
            row = cursor.fetchone()
            return row is not None and row['first_seen'] is not None
        finally:
            cursor.close()

    def list_feeds(self) -> List[Dict[str, Any]]:
        """List all known feeds with their validators and fingerprint counts."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("""
                SELECT f.url, f.etag, f.last_modified, f.first_seen, COUNT(ff.fingerprint) AS fingerprints
                FROM feeds f
                LEFT JOIN feed_fingerprints ff ON ff.feed_url = f.url
                GROUP BY f.url
                ORDER BY f.url
            """)
            return [{
                'url': row['url'],
                'etag': row['etag'],
                'last_modified': row['last_modified'],
                'first_seen': row['first_seen'],
                'fingerprints': row['fingerprints'],
            } for row in cursor.fetchall()]
        finally:
            cursor.close()

    # Fingerprint Operations
    def check_existing_fingerprints(self, feed_url: str, fingerprints: List[str]) -> Set[str]:
        """Return which of the given fingerprints are already recorded for this feed."""
        if not fingerprints:
            return set()

        existing: Set[str] = set()
        cursor = self.conn.cursor()
        try:
            for chunk in _chunks(list(fingerprints)):
                placeholders = ','.join(['?' for _ in chunk])
                cursor.execute(
                    f"SELECT fingerprint FROM feed_fingerprints WHERE feed_url = ? AND fingerprint IN ({placeholders})",
                    [feed_url] + chunk
                )
                existing.update(row[0] for row in cursor.fetchall())
            return existing
        finally:
            cursor.close()

    def save_fingerprints(self, feed_url: str, fingerprints: List[str]) -> int:
        """Record fingerprints for a feed and mark the feed as seen.

        Returns:
            Number of fingerprints that were not already recorded.
        """
        current_time = int(time())
        cursor = self.conn.cursor()
        try:
            cursor.execute("INSERT OR IGNORE INTO feeds (url, first_seen) VALUES (?, ?)", (feed_url, current_time))
            cursor.execute(
                "UPDATE feeds SET first_seen = ? WHERE url = ? AND first_seen IS NULL",
                (current_time, feed_url)
            )
            before = self.conn.total_changes
            cursor.executemany(
                "INSERT OR IGNORE INTO feed_fingerprints (feed_url, fingerprint, seen_at) VALUES (?, ?, ?)",
                [(feed_url, fp, current_time) for fp in fingerprints]
            )
            inserted = self.conn.total_changes - before
            self.conn.commit()
            logger.debug(f"Recorded {inserted} new fingerprints for {feed_url}")
            return inserted
        finally:
            cursor.close()

    def count_fingerprints(self, feed_url: Optional[str] = None) -> int:
        """Return the number of recorded fingerprints, optionally for a single feed."""
        cursor = self.conn.cursor()
        try:
            if feed_url is None:
                cursor.execute("SELECT COUNT(*) FROM feed_fingerprints")
            else:
                cursor.execute("SELECT COUNT(*) FROM feed_fingerprints WHERE feed_url = ?", (feed_url,))
            result = cursor.fetchone()
            return int(result[0]) if result else 0
        finally:
            cursor.close()

    # HTTP Header Caching Operations
    def get_feed_validators(self, url: str) -> Optional[Dict[str, Optional[str]]]:
        """Get the stored ETag and Last-Modified for a feed, if any were saved."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("SELECT etag, last_modified FROM feeds WHERE url = ?", (url,))
            row = cursor.fetchone()
            if row is None or (row['etag'] is None and row['last_modified'] is None):
                return None
            return {'etag': row['etag'], 'last_modified': row['last_modified']}
        finally:
            cursor.close()

    def update_feed_validators(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> bool:
        """Replace the stored validators for a feed."""
        cursor = self.conn.cursor()
        try:
            cursor.execute("""
                INSERT INTO feeds (url, etag, last_modified) VALUES (?, ?, ?)
                ON CONFLICT(url) DO UPDATE SET etag = excluded.etag, last_modified = excluded.last_modified
            """, (url, etag, last_modified))
            self.conn.commit()
            return True
        finally:
            cursor.close()
