"""
SQLite database for one journal workspace.

Holds entries, tags, the entry/tag association and the AI job table in a
single file so that job lifecycle transitions and the entry status they
imply can be committed together.

The connection runs in autocommit mode (isolation_level=None) and all
multi-statement writes go through transaction(), which issues
BEGIN IMMEDIATE so concurrent writers on the same file serialize instead
of interleaving.
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)


# Ordered schema migrations, applied by PRAGMA user_version.
# Never edit a released migration; append a new one.
MIGRATIONS: list[tuple[int, list[str]]] = [
    (1, [
        """
        CREATE TABLE IF NOT EXISTS entries (
            id TEXT PRIMARY KEY,
            created_at INTEGER NOT NULL,
            audio_uri TEXT NOT NULL,
            duration_sec INTEGER NOT NULL,
            transcript TEXT,
            summary TEXT,
            ai_status TEXT NOT NULL DEFAULT 'none'
                CHECK(ai_status IN ('none', 'queued', 'transcribed', 'summarized', 'error')),
            error_msg TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS tags (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS entry_tags (
            entry_id TEXT NOT NULL,
            tag_id TEXT NOT NULL,
            PRIMARY KEY (entry_id, tag_id),
            FOREIGN KEY(entry_id) REFERENCES entries(id) ON DELETE CASCADE,
            FOREIGN KEY(tag_id) REFERENCES tags(id) ON DELETE CASCADE
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS ai_jobs (
            id TEXT PRIMARY KEY,
            entry_id TEXT NOT NULL,
            type TEXT NOT NULL CHECK(type IN ('transcribe', 'summarize')),
            status TEXT NOT NULL CHECK(status IN ('queued', 'running', 'done', 'error')),
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            FOREIGN KEY(entry_id) REFERENCES entries(id) ON DELETE CASCADE
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_entries_created_at ON entries(created_at DESC)",
        "CREATE INDEX IF NOT EXISTS idx_ai_jobs_status_created_at ON ai_jobs(status, created_at)",
    ]),
    (2, [
        # Duplicate check in enqueue() looks up active jobs per entry
        "CREATE INDEX IF NOT EXISTS idx_ai_jobs_entry_type ON ai_jobs(entry_id, type, status)",
    ]),
    (3, [
        # Epoch ms before which a requeued job may not be claimed
        "ALTER TABLE ai_jobs ADD COLUMN retry_after INTEGER NOT NULL DEFAULT 0",
    ]),
]

SCHEMA_VERSION = MIGRATIONS[-1][0]


class Database:
    """
    A workspace's SQLite database.

    Safe to share between threads: statements are serialized through a
    re-entrant lock, and transaction() holds the lock for its duration.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def _init_db(self) -> None:
        """Open the connection and bring the schema up to date."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _migrate(self) -> None:
        """Apply pending migrations, one transaction per version."""
        current = self._conn.execute("PRAGMA user_version").fetchone()[0]
        for version, statements in MIGRATIONS:
            if version <= current:
                continue
            with self.transaction():
                for statement in statements:
                    self._conn.execute(statement)
                # PRAGMA does not accept bound parameters
                self._conn.execute(f"PRAGMA user_version = {int(version)}")
            logger.debug("Migrated %s to schema version %d", self._db_path.name, version)

    def schema_version(self) -> int:
        return self._conn.execute("PRAGMA user_version").fetchone()[0]

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block of statements atomically.

        Nested use joins the outermost transaction; only the outermost
        block commits or rolls back.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.rollback()
                raise
            else:
                self._depth -= 1
                if outermost:
                    self._conn.commit()

    def execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def executemany(self, sql: str, seq: list) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.executemany(sql, seq)

    def query_one(self, sql: str, params: tuple | list = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def query_all(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def table_counts(self) -> dict[str, Any]:
        """Row counts per table, for diagnostics."""
        return {
            table: self.query_one(f"SELECT COUNT(*) FROM {table}")[0]
            for table in ("entries", "tags", "entry_tags", "ai_jobs")
        }

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        """Ensure connection is closed on garbage collection."""
        self.close()
