#!/usr/bin/env python3
"""
Database models and operations for the Feed Poller.

All sqlite access goes through a single DatabaseQueue: callers await
``db.execute('operation_name', **params)`` and a worker task runs the named
method against the one connection, so statements never interleave.
"""

from os import path, access, R_OK
from dataclasses import dataclass
from datetime import datetime
from sqlite3 import connect, Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import StorageError
from normalizer import NormalizedEntry
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")


@dataclass
class Feed:
    id: int
    feed_url: str
    title: Optional[str] = None
    site_url: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    last_polled_at: Optional[int] = None
    last_changed_at: Optional[int] = None
    error_streak: int = 0
    last_error: Optional[str] = None
    next_poll_at: int = 0

    @classmethod
    def from_row(cls, row: Row) -> "Feed":
        return cls(
            id=row['id'],
            feed_url=row['feed_url'],
            title=row['title'],
            site_url=row['site_url'],
            etag=row['etag'],
            last_modified=row['last_modified'],
            last_polled_at=row['last_polled_at'],
            last_changed_at=row['last_changed_at'],
            error_streak=row['error_streak'] or 0,
            last_error=row['last_error'],
            next_poll_at=row['next_poll_at'] or 0,
        )


@dataclass
class Entry:
    id: int
    feed_id: int
    guid: str
    url: Optional[str]
    title: Optional[str]
    html: Optional[str]
    text: Optional[str]
    published_at: Optional[int]
    updated_at: Optional[int]
    content_hash: str
    created_at: int

    @classmethod
    def from_row(cls, row: Row) -> "Entry":
        return cls(**{key: row[key] for key in row.keys()})


def _epoch(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value is not None else None


def initialize_database(conn) -> None:
    """Initialize the database with the defined schema from SQL file."""
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        feeds_table_exists = cursor.fetchone() is not None

        if not feeds_table_exists:
            logger.info("Database is new or empty. Initializing schema.")
        # Every statement is IF NOT EXISTS, so re-running picks up new tables/indexes
        cursor.executescript(_read_schema_file())
        conn.commit()
        _run_migrations(conn)
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _run_migrations(conn) -> None:
    """Add columns introduced after a database was first created."""
    cursor = conn.cursor()
    try:
        cursor.execute("PRAGMA table_info(feeds)")
        columns = [column[1] for column in cursor.fetchall()]
        if 'last_error' not in columns:
            logger.info("Adding last_error column to feeds table")
            cursor.execute("ALTER TABLE feeds ADD COLUMN last_error TEXT")
            conn.commit()
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

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


class DatabaseQueue:
    """A queue for database operations to ensure serialized access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database, apply the schema and start the worker.

        Raises:
            StorageError: The database could not be opened or initialized.
        """
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise StorageError(f"Could not open database {self.db_path}: {e}") from e

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

        # Wake anyone still waiting; they will find no result and raise
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

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
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        outcome = {"error": StorageError(f"Unknown operation: {operation_name}")}
                    else:
                        outcome = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    if self.conn:
                        try:
                            self.conn.rollback()
                        except Error as rollback_error:
                            logger.warning(f"Rollback after {operation_name} failed: {rollback_error}")
                    outcome = {"error": e}
                finally:
                    self.queue.task_done()

                # A caller that was cancelled has already dropped its event
                if operation_id in self.events:
                    self.results[operation_id] = outcome
                    self.events[operation_id].set()

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
        """Execute a database operation.

        Raises:
            StorageError: The worker is not running or the operation failed.
        """
        if not self.running:
            raise StorageError(f"Database worker is not running (operation {operation_name})")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise StorageError(f"Database worker stopped before completing {operation_name}")

            if "error" in result:
                error = result["error"]
                if isinstance(error, StorageError):
                    raise error
                raise StorageError(f"{operation_name} failed: {error}") from error

            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Feed Selection Operations
    def select_due_feeds(self, limit: int, now: int) -> List[Feed]:
        """Feeds whose next_poll_at has passed, oldest-due first."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM feeds WHERE next_poll_at <= ? ORDER BY next_poll_at ASC, id ASC LIMIT ?",
            (int(now), int(limit))
        )
        return [Feed.from_row(row) for row in cursor.fetchall()]

    def select_feed_by_id(self, feed_id: int) -> Optional[Feed]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        row = cursor.fetchone()
        return Feed.from_row(row) if row else None

    def list_feeds(self) -> List[Feed]:
        """All feeds, ordered by next poll time."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM feeds ORDER BY next_poll_at ASC, id ASC")
        return [Feed.from_row(row) for row in cursor.fetchall()]

    # Feed Management Operations
    def register_feed(self, feed_url: str, now: int) -> bool:
        """Register a feed, due immediately. Returns False if it already existed."""
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT INTO feeds (feed_url, next_poll_at) VALUES (?, ?) ON CONFLICT(feed_url) DO NOTHING",
            (feed_url, int(now))
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def update_feed_after_not_modified(self, feed_id: int, now: int, next_poll_at: int) -> None:
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE feeds SET last_polled_at = ?, error_streak = 0, last_error = NULL, next_poll_at = ? WHERE id = ?",
            (int(now), int(next_poll_at), feed_id)
        )
        self.conn.commit()

    def update_feed_after_success(
        self,
        feed_id: int,
        etag: Optional[str],
        last_modified: Optional[str],
        changed: bool,
        now: int,
        next_poll_at: int,
        title: Optional[str] = None,
        site_url: Optional[str] = None,
    ) -> None:
        """Record a successful fetch.

        The stored validators are replaced by what the origin returned this time
        (including clearing them when it returned none). Title and site URL are only
        overwritten when the feed provided them.
        """
        cursor = self.conn.cursor()
        cursor.execute(
            """
            UPDATE feeds SET
                etag = ?,
                last_modified = ?,
                title = COALESCE(?, title),
                site_url = COALESCE(?, site_url),
                last_polled_at = ?,
                last_changed_at = CASE WHEN ? THEN ? ELSE last_changed_at END,
                error_streak = 0,
                last_error = NULL,
                next_poll_at = ?
            WHERE id = ?
            """,
            (etag, last_modified, title, site_url, int(now), 1 if changed else 0, int(now), int(next_poll_at), feed_id)
        )
        self.conn.commit()

    def update_feed_after_error(
        self,
        feed_id: int,
        error_streak: int,
        now: int,
        next_poll_at: int,
        last_error: Optional[str] = None,
    ) -> None:
        cursor = self.conn.cursor()
        cursor.execute(
            "UPDATE feeds SET error_streak = ?, last_error = ?, last_polled_at = ?, next_poll_at = ? WHERE id = ?",
            (error_streak, last_error, int(now), int(next_poll_at), feed_id)
        )
        self.conn.commit()

    # Entry Operations
    def insert_entry_if_absent(self, feed_id: int, entry: NormalizedEntry, now: int) -> bool:
        """Insert an entry unless (feed_id, guid) already exists. Returns True if inserted."""
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO entries
                (feed_id, guid, url, title, html, text, published_at, updated_at, content_hash, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(feed_id, guid) DO NOTHING
            """,
            (
                feed_id,
                entry.guid,
                entry.url,
                entry.title,
                entry.html,
                entry.text,
                _epoch(entry.published_at),
                _epoch(entry.updated_at),
                entry.content_hash,
                int(now),
            )
        )
        self.conn.commit()
        return cursor.rowcount > 0

    def count_entries(self, feed_id: Optional[int] = None) -> int:
        cursor = self.conn.cursor()
        if feed_id is None:
            cursor.execute("SELECT COUNT(*) FROM entries")
        else:
            cursor.execute("SELECT COUNT(*) FROM entries WHERE feed_id = ?", (feed_id,))
        return cursor.fetchone()[0]

    def list_entries(self, feed_id: int, limit: int = 20) -> List[Entry]:
        """Most recently stored entries for a feed."""
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT * FROM entries WHERE feed_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (feed_id, int(limit))
        )
        return [Entry.from_row(row) for row in cursor.fetchall()]
