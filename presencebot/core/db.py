from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

import aiosqlite

from .errors import StoreError

logger = logging.getLogger(__name__)


class Database:
    """
    One shared aiosqlite connection.

    Statements from different tasks never interleave with an open transaction:
    the task that runs `transaction()` holds the connection lock until COMMIT or
    ROLLBACK, and every other task's statements wait for it.
    """

    def __init__(self, path: str):
        self.path = path
        self.conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()
        self._tx_owner: asyncio.Task | None = None

    async def connect(self):
        try:
            self.conn = await aiosqlite.connect(self.path)
            self.conn.row_factory = aiosqlite.Row
            # WAL keeps report reads from blocking voice writes
            await self.conn.execute("PRAGMA journal_mode=WAL;")
            await self.conn.execute("PRAGMA foreign_keys=ON;")
            await self.conn.execute("PRAGMA synchronous=NORMAL;")
            await self.conn.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"could not open database {self.path}: {e}") from e

    async def close(self):
        if self.conn:
            await self.conn.close()
            self.conn = None

    def _owns_transaction(self) -> bool:
        return self._tx_owner is not None and self._tx_owner is asyncio.current_task()

    @asynccontextmanager
    async def _connection(self):
        """Yields True when the statement runs on its own (and may commit), False inside our transaction."""
        if self._owns_transaction():
            yield False
            return
        async with self._lock:
            yield True

    async def execute(self, sql: str, params=(), commit: bool = True) -> int | None:
        """Execute SQL statement and return lastrowid. Inside a transaction the commit is deferred."""
        assert self.conn
        async with self._connection() as standalone:
            try:
                cur = await self.conn.execute(sql, params)
                rowid = cur.lastrowid
                await cur.close()
                if commit and standalone:
                    await self.conn.commit()
                return rowid
            except aiosqlite.Error as e:
                raise StoreError(str(e)) from e

    async def executemany(self, sql: str, params_list, commit: bool = True):
        assert self.conn
        async with self._connection() as standalone:
            try:
                await self.conn.executemany(sql, params_list)
                if commit and standalone:
                    await self.conn.commit()
            except aiosqlite.Error as e:
                raise StoreError(str(e)) from e

    @asynccontextmanager
    async def transaction(self):
        """Transaction context manager: BEGIN on enter, COMMIT on success, ROLLBACK on exception."""
        assert self.conn
        if self._owns_transaction():
            # nested use joins the outer transaction
            yield self
            return
        async with self._lock:
            self._tx_owner = asyncio.current_task()
            try:
                await self.conn.execute("BEGIN")
                yield self
                await self.conn.commit()
            except aiosqlite.Error as e:
                await self.conn.rollback()
                raise StoreError(str(e)) from e
            except Exception:
                await self.conn.rollback()
                raise
            finally:
                self._tx_owner = None

    async def fetchone(self, sql: str, params=()):
        assert self.conn
        async with self._connection():
            try:
                cur = await self.conn.execute(sql, params)
                row = await cur.fetchone()
                await cur.close()
                return row
            except aiosqlite.Error as e:
                raise StoreError(str(e)) from e

    async def fetchall(self, sql: str, params=()):
        assert self.conn
        async with self._connection():
            try:
                cur = await self.conn.execute(sql, params)
                rows = await cur.fetchall()
                await cur.close()
                return rows
            except aiosqlite.Error as e:
                raise StoreError(str(e)) from e

    async def migrate(self):
        """Create tables and indexes. Safe to run on every start."""
        try:
            async with self.transaction():
                await self._migrate_tables()
        except StoreError:
            logger.exception("Database migration failed")
            raise

    async def _migrate_tables(self):
        await self.execute("""
        CREATE TABLE IF NOT EXISTS sessions (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          guild_id TEXT NOT NULL,
          user_id  TEXT NOT NULL,
          user_name TEXT NOT NULL,
          room_id TEXT NOT NULL,
          checkin_at TEXT NOT NULL,
          checkout_at TEXT,
          duration_minutes INTEGER
        );
        """)

        await self.execute("""
        CREATE TABLE IF NOT EXISTS tracked_rooms (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          guild_id TEXT NOT NULL,
          room_id  TEXT NOT NULL,
          UNIQUE(guild_id, room_id)
        );
        """)

        await self.execute("""
        CREATE TABLE IF NOT EXISTS events (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          guild_id TEXT NOT NULL,
          name TEXT NOT NULL,
          room_id TEXT NOT NULL,
          started_at TEXT NOT NULL,
          expected_end_at TEXT NOT NULL,
          ended_at TEXT
        );
        """)

        await self.execute("""
        CREATE TABLE IF NOT EXISTS event_participations (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          event_id INTEGER NOT NULL REFERENCES events(id),
          user_id TEXT NOT NULL,
          user_name TEXT NOT NULL,
          joined_at TEXT NOT NULL,
          left_at TEXT,
          duration_minutes INTEGER
        );
        """)

        await self.execute("CREATE INDEX IF NOT EXISTS idx_sessions_open ON sessions (guild_id, user_id, checkout_at);")
        await self.execute("CREATE INDEX IF NOT EXISTS idx_sessions_checkin ON sessions (guild_id, checkin_at);")
        await self.execute("CREATE INDEX IF NOT EXISTS idx_tracked_guild ON tracked_rooms (guild_id);")
        await self.execute("CREATE INDEX IF NOT EXISTS idx_events_open ON events (guild_id, ended_at);")
        await self.execute("CREATE INDEX IF NOT EXISTS idx_participations_open ON event_participations (event_id, user_id, left_at);")
