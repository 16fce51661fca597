import sqlite3
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional
from contextlib import contextmanager

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


class StorageError(Exception):
    """Raised when the step timing database cannot be read, written or closed."""


class StorageInitError(StorageError):
    """Raised when the database cannot be opened or its schema cannot be created."""


class StepTimingStore:
    """SQLite backend for persisted step durations.

    A single connection is shared by every caller; writes are serialized with
    a lock so hooks fired from parallel workers can persist concurrently.
    """

    def __init__(self, db_path: str = "step_timings.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None
        try:
            if db_path != MEMORY_DB:
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._init_database()
        except (sqlite3.Error, OSError) as e:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            raise StorageInitError(f"Failed to initialize step timing database {db_path}: {e}") from e
        logger.debug(f"Step timing database ready at {db_path}")

    def _init_database(self):
        """Create the step_timings table if it does not exist yet"""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS step_timings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    step_id TEXT UNIQUE,
                    scenario_name TEXT,
                    step_text TEXT,
                    duration_ms INTEGER,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_step_timings_scenario ON step_timings(scenario_name)")

    @property
    def closed(self) -> bool:
        return self._conn is None

    @contextmanager
    def _get_connection(self):
        """Hold the write lock and commit or roll back around a unit of work"""
        with self._lock:
            conn = self._conn
            if conn is None:
                raise StorageError(f"Step timing database {self.db_path} is closed")
            try:
                yield conn
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

    def record_step(self, step_id: str, scenario_name: str, step_text: str, duration_ms: int) -> bool:
        """Insert a step duration unless the step id is already stored.

        Returns False when the row was ignored as a duplicate.
        """
        try:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    INSERT OR IGNORE INTO step_timings (step_id, scenario_name, step_text, duration_ms)
                    VALUES (?, ?, ?, ?)
                """, (step_id, scenario_name, step_text, int(duration_ms)))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageError(f"Failed to save step '{step_id}': {e}") from e

    def fetch_steps(self) -> List[Dict]:
        """Return every persisted row as a dict, in storage order"""
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT step_id, scenario_name, step_text, duration_ms, created_at FROM step_timings"
                )
                return [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to fetch step timings: {e}") from e

    def count_steps(self, step_id: Optional[str] = None) -> int:
        query = "SELECT COUNT(*) AS count FROM step_timings"
        params = []
        if step_id is not None:
            query += " WHERE step_id = ?"
            params.append(step_id)
        try:
            with self._get_connection() as conn:
                return conn.execute(query, params).fetchone()["count"]
        except sqlite3.Error as e:
            raise StorageError(f"Failed to count step timings: {e}") from e

    def close(self) -> None:
        """Release the connection. Closing twice is an error."""
        with self._lock:
            if self._conn is None:
                raise StorageError(f"Step timing database {self.db_path} is already closed")
            conn, self._conn = self._conn, None
            try:
                conn.close()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to close step timing database: {e}") from e
        logger.debug(f"Closed step timing database {self.db_path}")
