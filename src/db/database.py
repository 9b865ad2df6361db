# manages connections to the sqlite store, provides helpers internal to db package
import asyncio
import os.path
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from sqlite3 import Row
from typing import AsyncIterator, Optional

import aiosqlite

from utils.logger import get_logger

_logger = get_logger(__name__)

SCHEMA_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "schema.sql")

# seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT = 10.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    # fixed width so lexical order in SQL matches chronological order
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


async def _table_exists(conn: aiosqlite.Connection, table_name: str) -> bool:
    cur = await conn.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'table'
          AND name = ?;
        """,
        (table_name,),
    )
    row = await cur.fetchone()
    await cur.close()
    return row is not None


class Database:
    """A sqlite file shared by every request of the process.

    Each ``connect()`` opens its own connection, so concurrent coroutines never
    share transaction state; the file itself serializes writers.
    """

    def __init__(self, path: str):
        self.path = path
        self._initialized = False
        self._init_lock: Optional[asyncio.Lock] = None

    async def _init_db(self, conn: aiosqlite.Connection) -> None:
        _logger.info(f"Initializing database {self.path} with {SCHEMA_SCRIPT}...")
        with open(SCHEMA_SCRIPT, "r") as f:
            await conn.executescript(f.read())
        await conn.commit()

    async def initialize(self) -> None:
        """Create the database file and its tables if they do not exist yet."""
        if self._initialized:
            return
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._initialized:
                return
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            conn = await aiosqlite.connect(self.path, timeout=BUSY_TIMEOUT)
            try:
                await conn.execute("PRAGMA journal_mode = WAL;")
                if not await _table_exists(conn, "orders"):
                    await self._init_db(conn)
            finally:
                await conn.close()
            self._initialized = True

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Async context manager yielding an aiosqlite connection with FK enabled.

        Ensures the schema exists on first use.
        """
        await self.initialize()
        conn = await aiosqlite.connect(self.path, timeout=BUSY_TIMEOUT)
        conn.row_factory = Row
        await conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
        finally:
            await conn.close()
