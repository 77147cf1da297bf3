"""
SQLite connection management using aiosqlite.

A single connection per database file is shared by the replica and the
sync state store. Statements are serialized through a lock so that a
transaction is never interleaved with other writes on the same connection.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import aiosqlite

logger = logging.getLogger(__name__)


class SQLiteTransaction:
    """Explicit BEGIN/COMMIT/ROLLBACK on a connection held by the caller."""

    def __init__(self, connection: aiosqlite.Connection):
        self.connection = connection
        self._active = False

    async def execute(self, query: str, params: Optional[Iterable[Any]] = None) -> aiosqlite.Cursor:
        return await self.connection.execute(query, tuple(params or ()))

    async def executemany(self, query: str, rows: Iterable[Iterable[Any]]) -> None:
        await self.connection.executemany(query, [tuple(row) for row in rows])

    async def fetch_all(self, query: str, params: Optional[Iterable[Any]] = None) -> List[Dict[str, Any]]:
        cursor = await self.connection.execute(query, tuple(params or ()))
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def commit(self) -> None:
        """Commit the transaction."""
        if self._active:
            await self.connection.execute("COMMIT")
            self._active = False

    async def rollback(self) -> None:
        """Rollback the transaction."""
        if self._active:
            await self.connection.execute("ROLLBACK")
            self._active = False

    async def __aenter__(self) -> 'SQLiteTransaction':
        await self.connection.execute("BEGIN")
        self._active = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            await self.rollback()
        else:
            await self.commit()


class SQLiteConnection:
    """Lazily opened aiosqlite connection with schema bootstrap."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._schemas: List[str] = []

    def register_schema(self, script: str) -> None:
        """Add a CREATE script to run on connect (idempotent statements only)."""
        if script not in self._schemas:
            self._schemas.append(script)

    async def connect(self) -> None:
        """Open the database and apply registered schemas."""
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # Autocommit mode; transactions are opened explicitly
        conn = await aiosqlite.connect(self.db_path, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        if self.db_path != ":memory:":
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        self._connection = conn
        logger.debug(f"Opened SQLite database at {self.db_path}")

        for script in self._schemas:
            await conn.executescript(script)

    async def disconnect(self) -> None:
        """Close the connection."""
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None

    async def ensure_schema(self, script: str) -> None:
        """Register a schema and apply it now if already connected."""
        self.register_schema(script)
        if self._connection is not None:
            async with self._lock:
                await self._connection.executescript(script)

    async def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            await self.connect()
        return self._connection

    async def execute(self, query: str, params: Optional[Iterable[Any]] = None) -> int:
        """Execute a statement and return the number of affected rows."""
        conn = await self._conn()
        async with self._lock:
            cursor = await conn.execute(query, tuple(params or ()))
            return cursor.rowcount

    async def fetch_one(self, query: str, params: Optional[Iterable[Any]] = None) -> Optional[Dict[str, Any]]:
        """Fetch a single row from the database."""
        conn = await self._conn()
        async with self._lock:
            cursor = await conn.execute(query, tuple(params or ()))
            row = await cursor.fetchone()
            if row:
                return dict(row)
            return None

    async def fetch_all(self, query: str, params: Optional[Iterable[Any]] = None) -> List[Dict[str, Any]]:
        """Fetch all rows from the database."""
        conn = await self._conn()
        async with self._lock:
            cursor = await conn.execute(query, tuple(params or ()))
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteTransaction]:
        """
        Run statements atomically.

        Usage:
            async with connection.transaction() as tx:
                await tx.execute(...)
        """
        conn = await self._conn()
        async with self._lock:
            async with SQLiteTransaction(conn) as tx:
                yield tx
