"""SQLite implementation of JobQueue.

This module provides the local-first, crash-safe queue using:
- sqlite-utils for schema management and inserts
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic dequeue
- Exponential backoff retry for database lock handling

Several worker processes may open the same database file; within one
process, worker threads share a handle guarded by a lock.
"""

import logging
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlite_utils import Database

from ..models import JobDescriptor
from .backends import JobQueue, MalformedDescriptorError, QueueUnavailableError, decode_descriptor

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS queue_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue_name TEXT NOT NULL,
    payload TEXT NOT NULL,
    enqueued_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_queue_fifo ON queue_messages(queue_name, id);
"""


def sqlite_path_from_url(url: str) -> str:
    """sqlite:///relative.db, sqlite:////abs/path.db or sqlite:///:memory:"""
    if not url.startswith("sqlite:///"):
        raise ValueError(f"Not a sqlite URL: {url!r}")
    return url[len("sqlite:///"):]


class SQLiteJobQueue(JobQueue):
    """FIFO descriptor queue in a SQLite table.

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock before the head row is selected
    - DELETE ... RETURNING removes and reads the head in one statement, so
      no two consumers can receive the same message
    - Exponential backoff handles transient lock contention between processes
    """

    def __init__(
        self,
        db_path: str,
        queue_name: str = "render_jobs",
        poll_interval_s: float = 0.5,
        lock_retries: int = 5,
    ):
        """Initialize queue backend.

        Args:
            db_path: Path to SQLite database file
            queue_name: Logical queue; several queues can share one file
            poll_interval_s: Sleep between polls while the queue is empty
            lock_retries: Attempts on "database is locked" before giving up
        """
        self.db_path = db_path
        self.queue_name = queue_name
        self.poll_interval_s = poll_interval_s
        self.lock_retries = lock_retries
        self.db: Optional[Database] = None
        self._lock = threading.Lock()

    @classmethod
    def from_url(cls, url: str, queue_name: str = "render_jobs", **kwargs) -> "SQLiteJobQueue":
        return cls(sqlite_path_from_url(url), queue_name=queue_name, **kwargs)

    def connect(self) -> None:
        """Open the database, enable WAL and create the schema."""
        if self.db is not None:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=5.0,
                isolation_level=None,  # Transactions are explicit
                check_same_thread=False,  # Guarded by self._lock
            )
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Cannot open queue database {self.db_path}: {e}", e) from e

        self.db = Database(conn)
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        self.db.executescript(SCHEMA_SQL)
        logger.info("SQLite queue %r opened at %s", self.queue_name, self.db_path)

    def close(self) -> None:
        if self.db is None:
            return
        with self._lock:
            self.db.conn.close()
            self.db = None

    def _require_db(self) -> Database:
        if self.db is None:
            raise QueueUnavailableError("Queue is not connected (call connect() first)")
        return self.db

    def enqueue(self, descriptor: JobDescriptor) -> None:
        db = self._require_db()
        try:
            with self._lock:
                db["queue_messages"].insert({
                    "queue_name": self.queue_name,
                    "payload": descriptor.model_dump_json(),
                    "enqueued_at": datetime.utcnow().isoformat(),
                })
        except sqlite3.Error as e:
            raise QueueUnavailableError(f"Enqueue failed: {e}", e) from e
        logger.debug("Enqueued job %s (retry_count=%d)", descriptor.id, descriptor.retry_count)

    def dequeue(self, timeout: Optional[float] = None) -> Optional[JobDescriptor]:
        """Pop the head, polling until a message arrives or timeout elapses.

        Malformed payloads are removed, logged, and skipped.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            payload = self._pop_with_retry()
            if payload is not None:
                try:
                    return decode_descriptor(payload)
                except MalformedDescriptorError as e:
                    logger.error("Dropping malformed queue message: %s | payload=%.200s", e, payload)
                    continue

            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                time.sleep(min(self.poll_interval_s, remaining))
            else:
                time.sleep(self.poll_interval_s)

    def _pop_with_retry(self) -> Optional[str]:
        """Atomic pop with exponential backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms, ...
        """
        for attempt in range(self.lock_retries):
            try:
                return self._pop()
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < self.lock_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise QueueUnavailableError(f"Dequeue failed: {e}", e) from e
        return None

    def _pop(self) -> Optional[str]:
        db = self._require_db()
        with self._lock:
            conn = db.conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    """
                    DELETE FROM queue_messages
                    WHERE id = (
                        SELECT id FROM queue_messages
                        WHERE queue_name = ?
                        ORDER BY id ASC
                        LIMIT 1
                    )
                    RETURNING payload
                    """,
                    (self.queue_name,),
                ).fetchone()
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return row[0] if row else None

    def size(self) -> int:
        db = self._require_db()
        with self._lock:
            row = db.execute(
                "SELECT COUNT(*) FROM queue_messages WHERE queue_name = ?", [self.queue_name]
            ).fetchone()
        return row[0]
