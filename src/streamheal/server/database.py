"""SQLite persistence for the streamheal server.

Stores the engine event log and a small key/value settings table (the
last automatic refresh timestamp lives there so the refresh cooldown
survives restarts). Auto-migrates schema on startup.
"""

import logging
import os
import sqlite3
import threading
import time

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

SETTING_LAST_AUTO_REFRESH = "last_auto_refresh"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    video_id TEXT,
    title TEXT NOT NULL DEFAULT '',
    detail TEXT NOT NULL DEFAULT '',
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_created ON events(created_at);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at REAL NOT NULL
);
"""


class Database:
    """Thread-safe SQLite database manager (one connection per thread)."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._local = threading.local()
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """One connection per thread, opened lazily."""
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA busy_timeout=5000")
        return self._local.conn

    def _init_schema(self):
        """Create missing tables, then migrate an older schema."""
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)

        row = conn.execute("SELECT version FROM schema_version").fetchone()
        if row is None:
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        else:
            current = row["version"]
            if current < SCHEMA_VERSION:
                self._migrate(current, SCHEMA_VERSION)
        conn.commit()

        logger.info("Database initialized at %s (schema v%d)", self.db_path, SCHEMA_VERSION)

    def _migrate(self, from_version: int, to_version: int):
        """Bring an older schema up to to_version."""
        conn = self._get_conn()
        if from_version < 2:
            # v1 had no settings table and no per-handle column on events
            columns = {r["name"] for r in conn.execute("PRAGMA table_info(events)").fetchall()}
            if "video_id" not in columns:
                conn.execute("ALTER TABLE events ADD COLUMN video_id TEXT")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
        conn.execute("UPDATE schema_version SET version = ?", (to_version,))
        conn.commit()
        logger.info("Migrated database from v%d to v%d", from_version, to_version)

    # A busy writer (another process holding the WAL lock) usually clears
    # within a few seconds. Backoff: 0.25, 0.5, 1, 2 = 3.75s total.
    _RETRY_DELAYS = [0.25, 0.5, 1.0, 2.0]

    def _retry_on_lock(self, operation, description: str = "DB operation"):
        """Run a DB operation with retry+backoff while the database is locked."""
        try:
            return operation(self._get_conn())
        except sqlite3.OperationalError as e:
            err = str(e)
            if "disk I/O error" not in err and "database is locked" not in err:
                raise
            last_exc = e
            for attempt, delay in enumerate(self._RETRY_DELAYS, start=1):
                logger.warning(
                    "SQLite %s error (attempt %d/%d): %s, retrying in %.2fs",
                    description, attempt, len(self._RETRY_DELAYS), e, delay,
                )
                self.close()
                time.sleep(delay)
                try:
                    return operation(self._get_conn())
                except sqlite3.OperationalError as retry_e:
                    last_exc = retry_e
            raise last_exc

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Execute a SQL statement. Retries while the database is locked."""
        return self._retry_on_lock(lambda conn: conn.execute(sql, params), "execute")

    def commit(self):
        """Commit on this thread's connection."""
        self._retry_on_lock(lambda conn: conn.commit(), "commit")

    def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        """First row as a dict, or None."""
        row = self.execute(sql, params).fetchone()
        return dict(row) if row else None

    def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        """All rows as dicts."""
        return [dict(row) for row in self.execute(sql, params).fetchall()]

    def close(self):
        """Close this thread's connection; the next call reopens it."""
        if hasattr(self._local, "conn") and self._local.conn:
            self._local.conn.close()
            self._local.conn = None

    # --- Settings ---

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        row = self.fetchone("SELECT value FROM settings WHERE key = ?", (key,))
        return row["value"] if row else default

    def set_setting(self, key: str, value) -> None:
        self.execute(
            "INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, str(value), time.time()),
        )
        self.commit()

    def get_last_auto_refresh(self) -> float | None:
        """Wall-clock time of the last automatic refresh request, if any."""
        value = self.get_setting(SETTING_LAST_AUTO_REFRESH)
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            logger.warning("Ignoring malformed %s setting: %r", SETTING_LAST_AUTO_REFRESH, value)
            return None

    def set_last_auto_refresh(self, timestamp: float) -> None:
        self.set_setting(SETTING_LAST_AUTO_REFRESH, timestamp)
