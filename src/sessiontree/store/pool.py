"""
Shared connection pool for EntryStore.

A single ``StorePool`` instance manages, per database path, one writer
``aiosqlite.Connection`` and one reader connection.  All ``EntryStore``
objects pointing at the same path share them.

SQLite in WAL mode lets a reader see the last committed state while a write
transaction is open on another connection.  Routing every read through the
reader connection is what keeps readers from ever observing a half-finished
append (entry inserted, leaf not yet moved) and from waiting on the writer.

Usage::

    pool = StorePool()

    store_a = EntryStore(config, pool=pool)
    store_b = EntryStore(config, pool=pool)   # same DB path → same connections

    await store_a.initialize()   # opens the connections (idempotent on 2nd call)
    await store_b.initialize()   # reuses existing connections

    # … use stores …

    await pool.close_all()       # close all managed connections once at shutdown
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("sessiontree.store.pool")


async def open_connection(
    db_path: str,
    *,
    wal_mode: bool = True,
    connection_timeout: float = 30.0,
    read_only: bool = False,
) -> aiosqlite.Connection:
    """
    Open and configure one SQLite connection.

    Writer connections get ``foreign_keys=ON`` (referential integrity is
    enforced on insert); reader connections are switched to ``query_only``.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(db_path, timeout=connection_timeout)
    try:
        conn.row_factory = aiosqlite.Row
        if wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA synchronous=NORMAL")
        if read_only:
            await conn.execute("PRAGMA query_only=ON")
    except Exception:
        await conn.close()
        raise
    return conn


class StorePool:
    """
    Process-scoped registry of open ``aiosqlite.Connection`` pairs.

    Thread-safety: only safe to use from a single asyncio event loop; do not
    share a ``StorePool`` across threads.

    For each unique *resolved* database path the pool holds exactly one
    writer and one reader connection.  Callers may call ``acquire()``
    concurrently; only the first caller opens the connections, subsequent
    callers receive the same objects.

    The pool also manages a per-path ``asyncio.Lock`` that ``EntryStore``
    holds for the whole of every write transaction.  SQLite allows only one
    writer, and serialising here means the read-leaf / insert / update-leaf
    sequence of an append can never interleave with another append.
    """

    def __init__(self) -> None:
        self._writers: dict[str, aiosqlite.Connection] = {}
        self._readers: dict[str, aiosqlite.Connection] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def resolve(db_path: str) -> str:
        return str(Path(db_path).expanduser().resolve())

    # ── Public API ─────────────────────────────────────────────────────────────

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> tuple[aiosqlite.Connection, aiosqlite.Connection]:
        """
        Return the shared ``(writer, reader)`` pair for *db_path*, opening it if needed.

        Args:
            db_path: Path to the database file (``~`` is expanded).
            wal_mode: Enable WAL journal mode on first open.
            connection_timeout: SQLite busy timeout in seconds.
        """
        resolved = self.resolve(db_path)  # noqa: ASYNC240

        if resolved in self._writers:
            return self._writers[resolved], self._readers[resolved]

        # Guard with a per-path lock so concurrent coroutines don't race to
        # open the same file.
        if resolved not in self._open_locks:
            self._open_locks[resolved] = asyncio.Lock()

        async with self._open_locks[resolved]:
            if resolved in self._writers:
                return self._writers[resolved], self._readers[resolved]

            writer = await open_connection(
                resolved, wal_mode=wal_mode, connection_timeout=connection_timeout
            )
            try:
                reader = await open_connection(
                    resolved,
                    wal_mode=wal_mode,
                    connection_timeout=connection_timeout,
                    read_only=True,
                )
            except Exception:
                await writer.close()
                raise

            self._writers[resolved] = writer
            self._readers[resolved] = reader
            self._write_locks[resolved] = asyncio.Lock()
            _logger.debug("pool_connections_opened", db_path=resolved)
            return writer, reader

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """
        Return the write-serialisation lock for *db_path*.

        Raises ``KeyError`` if called before ``acquire()``.
        """
        return self._write_locks[self.resolve(db_path)]

    async def close_path(self, db_path: str) -> None:
        """Close and remove the connections for a single path."""
        resolved = self.resolve(db_path)  # noqa: ASYNC240
        writer = self._writers.pop(resolved, None)
        reader = self._readers.pop(resolved, None)
        self._write_locks.pop(resolved, None)
        self._open_locks.pop(resolved, None)
        if reader is not None:
            await reader.close()
        if writer is not None:
            await writer.close()
            _logger.debug("pool_connections_closed", db_path=resolved)

    async def close_all(self) -> None:
        """Close every connection managed by this pool."""
        for path in list(self._writers.keys()):
            await self.close_path(path)

    # ── Convenience: process-level default pool ─────────────────────────────────

    @staticmethod
    def default() -> StorePool:
        """
        Return the process-level default pool.

        Created lazily on first access; tests should create their own
        ``StorePool()`` instances to get full isolation.
        """
        global _default_pool
        if _default_pool is None:
            _default_pool = StorePool()
        return _default_pool


_default_pool: StorePool | None = None
