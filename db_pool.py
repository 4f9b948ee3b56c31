"""SQLite connection pool shared by the relational IST event store."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from queue import Empty, Queue
from typing import Generator, List

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are created lazily up to ``max_connections``; callers beyond
    that limit block until a connection is returned.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout_ms: int = 5000):
        self.database = database
        self.max_connections = max(1, int(max_connections))
        if database == ":memory:":
            # Every connection to ":memory:" opens its own empty database.
            self.max_connections = 1
        self.busy_timeout_ms = busy_timeout_ms
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=self.max_connections)
        self._lock = threading.Lock()
        self._created: List[sqlite3.Connection] = []
        self._closed = False
        if database != ":memory:":
            Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    @property
    def created_connections(self) -> int:
        return len(self._created)

    def _create_connection(self) -> sqlite3.Connection:
        # Pooled connections hop between worker threads.
        conn = sqlite3.connect(
            self.database,
            timeout=self.busy_timeout_ms / 1000,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        if self.database != ":memory:":
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
        if self._closed:
            raise sqlite3.ProgrammingError("connection pool is closed")
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if len(self._created) < self.max_connections:
                    connection = self._create_connection()
                    self._created.append(connection)
                    logger.debug("Created new SQLite connection (total: %d)", len(self._created))
            if connection is None:
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as exc:
                logger.error("Error returning connection to pool: %s", exc)
                with self._lock:
                    if connection in self._created:
                        self._created.remove(connection)
                try:
                    connection.close()
                except sqlite3.Error:
                    logger.debug("Closing broken SQLite connection failed", exc_info=True)

    def close_all(self) -> None:
        with self._lock:
            self._closed = True
            for connection in self._created:
                try:
                    connection.close()
                except sqlite3.Error:
                    logger.debug("Closing SQLite connection failed", exc_info=True)
            self._created.clear()
