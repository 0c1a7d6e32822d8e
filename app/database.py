"""
SQLite async database handle and schema initialization.
"""
import logging
import os
import sqlite3
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Union

import aiosqlite

from errors import TransientError

logger = logging.getLogger(__name__)

# Secure database location (outside static/code paths)
DATA_DIR = Path(__file__).parent / "data"
DATABASE_PATH = Path(os.getenv("DATABASE_PATH", str(DATA_DIR / "shares.db")))

SCHEMA = """
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL CHECK (kind IN ('text', 'file')),
    content TEXT,
    blob_locator TEXT,
    file_name TEXT,
    file_size INTEGER,
    file_type TEXT,
    secret_digest TEXT,
    expires_at TEXT NOT NULL,
    max_views INTEGER CHECK (max_views IS NULL OR max_views > 0),
    view_count INTEGER NOT NULL DEFAULT 0,
    download_count INTEGER NOT NULL DEFAULT 0,
    is_one_time INTEGER NOT NULL DEFAULT 0,
    owner_id TEXT,
    display_name TEXT,
    created_at TEXT NOT NULL,
    deleted_at TEXT,
    blob_purged_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_items_live_expiry
    ON items(expires_at) WHERE deleted_at IS NULL;

CREATE INDEX IF NOT EXISTS idx_items_owner ON items(owner_id);

CREATE INDEX IF NOT EXISTS idx_items_blob ON items(blob_locator);

CREATE TRIGGER IF NOT EXISTS items_no_hard_delete
BEFORE DELETE ON items
BEGIN
    SELECT RAISE(ABORT, 'items are soft-deleted only');
END;

CREATE TRIGGER IF NOT EXISTS items_deleted_is_terminal
BEFORE UPDATE OF deleted_at ON items
WHEN OLD.deleted_at IS NOT NULL
    AND (NEW.deleted_at IS NULL OR NEW.deleted_at != OLD.deleted_at)
BEGIN
    SELECT RAISE(ABORT, 'deleted items are terminal');
END;
"""


async def init_db(db: aiosqlite.Connection):
    """Initialize database with required tables."""
    await db.executescript(SCHEMA)


class Database:
    """
    Process-wide database handle.

    Opened once by the application lifespan and closed on shutdown. Runs in
    autocommit mode so every statement, including each conditional
    ``UPDATE ... RETURNING``, is its own atomic transaction.
    """

    def __init__(self, path=DATABASE_PATH):
        self.path = path
        self._conn: Optional[aiosqlite.Connection] = None

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        return self._conn

    async def connect(self):
        if self._conn is not None:
            return
        if str(self.path) != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = await aiosqlite.connect(str(self.path), isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
            await init_db(self._conn)
        except sqlite3.Error as e:
            raise TransientError(f"Could not open database: {e}") from e
        logger.info(f"Database connected: {self.path}")

    async def close(self):
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None
        logger.info("Database connection closed")

    async def fetchone(self, sql: str, params: Union[Sequence, Mapping] = ()) -> Optional[sqlite3.Row]:
        rows = await self.fetchall(sql, params)
        return rows[0] if rows else None

    async def fetchall(self, sql: str, params: Union[Sequence, Mapping] = ()) -> List[sqlite3.Row]:
        """Run a statement and consume every row, including ``RETURNING`` rows."""
        try:
            return list(await self.conn.execute_fetchall(sql, params))
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise TransientError(f"Database error: {e}") from e

    async def execute(self, sql: str, params: Union[Sequence, Mapping] = ()) -> int:
        """Run a write statement and return the number of affected rows."""
        try:
            cursor = await self.conn.execute(sql, params)
            try:
                return cursor.rowcount
            finally:
                await cursor.close()
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise TransientError(f"Database error: {e}") from e
