#  HDR Backend - Database Connection
#
#  Async SQLite manager with WAL mode and transaction support.
#  Production uses Alembic migrations; tests use inline schema for speed.
#
#  Depends on: hdr_backend/db/migrate.py (optional, for production migrations)
#  Used by:    container.py (via DI), services/store.py, tests

import asyncio
import logging
import sqlite3
import time
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

logger = logging.getLogger("hdr.db")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'created',
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    metadata_json TEXT NOT NULL DEFAULT '{}',
    name TEXT,
    provider_status TEXT,
    is_processing INTEGER NOT NULL DEFAULT 0,
    is_merging INTEGER NOT NULL DEFAULT 0,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    total_images INTEGER NOT NULL DEFAULT 0,
    provider_last_updated_at TEXT,
    error_message TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS brackets (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
    bracket_id TEXT NOT NULL,
    image_id TEXT,
    filename TEXT NOT NULL,
    upload_url TEXT,
    is_uploaded INTEGER NOT NULL DEFAULT 0,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    UNIQUE (order_id, bracket_id)
);

CREATE TABLE IF NOT EXISTS stored_files (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    filename TEXT NOT NULL,
    provider_image_id TEXT,
    storage_path TEXT NOT NULL,
    storage_url TEXT NOT NULL,
    file_size INTEGER NOT NULL DEFAULT 0,
    mime_type TEXT NOT NULL DEFAULT 'image/jpeg',
    is_final INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL,
    UNIQUE (user_id, order_id, storage_path)
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id);
CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
CREATE INDEX IF NOT EXISTS idx_brackets_order ON brackets(order_id);
CREATE INDEX IF NOT EXISTS idx_files_order ON stored_files(order_id);
CREATE INDEX IF NOT EXISTS idx_files_image ON stored_files(provider_image_id);
"""


# ---------------------------------------------------------------------------
# Database class
# ---------------------------------------------------------------------------

class Database:
    """Async SQLite database with WAL mode.

    Uses aiosqlite which runs SQLite on a dedicated background thread,
    so no threading.Lock is needed on our side.
    """

    def __init__(self):
        self._conn: aiosqlite.Connection | None = None
        self._path: Path | None = None
        self._in_transaction: bool = False
        self._tx_lock: asyncio.Lock = asyncio.Lock()
        self._tx_owner: asyncio.Task | None = None

    async def init(self, db_path: str | Path, *, run_migrations: bool = False):
        """Open or create the database and apply schema.

        Args:
            db_path: Path to the SQLite database file.
            run_migrations: If True, use Alembic migrations (production).
                            If False, use inline schema (tests, faster).
        """
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

        if run_migrations:
            from hdr_backend.db.migrate import run_migrations as _migrate
            await asyncio.to_thread(_migrate, self._path)

        self._conn = await aiosqlite.connect(str(self._path))
        self._conn.row_factory = sqlite3.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")

        if not run_migrations:
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()

        await self._recover_interrupted()

        logger.info("Database initialized at %s", self._path)

    async def _recover_interrupted(self):
        """Settle orders left in 'uploading' by a previous process.

        Orders with at least one uploaded bracket move on to 'uploaded';
        the rest are marked failed.
        """
        if not self._conn:
            return
        now = time.time()
        cursor = await self._conn.execute(
            "UPDATE orders SET status = 'uploaded', updated_at = ? "
            "WHERE status = 'uploading' AND EXISTS ("
            "  SELECT 1 FROM brackets b WHERE b.order_id = orders.id AND b.is_uploaded = 1)",
            (now,),
        )
        recovered = cursor.rowcount
        cursor = await self._conn.execute(
            "UPDATE orders SET status = 'failed', "
            "error_message = 'Server restart - upload interrupted', updated_at = ? "
            "WHERE status = 'uploading'",
            (now,),
        )
        if recovered or cursor.rowcount:
            logger.info(
                "Recovered %d interrupted upload(s), failed %d",
                recovered, cursor.rowcount,
            )
        await self._conn.commit()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call await db.init() first.")
        return self._conn

    @asynccontextmanager
    async def transaction(self):
        """Atomic read+write transaction. Rolls back on exception.

        Uses BEGIN IMMEDIATE to acquire a write lock upfront, preventing
        other writers from interleaving. An asyncio.Lock serializes
        concurrent coroutines sharing the same connection, so a second
        coroutine waits until the first transaction commits/rolls back.

        Safe to nest within the same task: if the current asyncio task
        already owns a transaction, inner calls are no-ops. Different
        tasks wait on the lock.
        """
        current = asyncio.current_task()
        if self._in_transaction and self._tx_owner is current:
            yield self.conn
            return

        async with self._tx_lock:
            self._in_transaction = True
            self._tx_owner = current
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self.conn
                    await self.conn.commit()
                except Exception:
                    await self.conn.rollback()
                    raise
            finally:
                self._in_transaction = False
                self._tx_owner = None

    async def execute_write(self, sql: str, params: tuple | list = ()) -> aiosqlite.Cursor:
        """Execute a write query and commit.

        Inside the calling task's transaction() block, participates in it
        (no auto-commit). Otherwise waits for any open transaction and
        auto-commits.
        """
        if self._in_transaction and self._tx_owner is asyncio.current_task():
            return await self.conn.execute(sql, params)
        async with self._tx_lock:
            cursor = await self.conn.execute(sql, params)
            await self.conn.commit()
        return cursor

    async def execute_many_write(self, statements: list[tuple[str, tuple | list]]):
        """Execute multiple write statements atomically. An empty list is a no-op."""
        if not statements:
            return
        async with self.transaction():
            for sql, params in statements:
                await self.conn.execute(sql, params)

    async def fetchone(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        cursor = await self.conn.execute(sql, params)
        return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        cursor = await self.conn.execute(sql, params)
        return await cursor.fetchall()

    async def close(self):
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
