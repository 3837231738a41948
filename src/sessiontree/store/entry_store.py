"""Append-only SQLite-backed store for branching session entry trees."""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, cast

import aiosqlite
import structlog

from sessiontree.events.bus import EventBus, SessionEvent
from sessiontree.events.payloads import EntryAppendedPayload, LabelChangedPayload, LeafMovedPayload
from sessiontree.ids import make_entry_id, make_id
from sessiontree.models.config import StoreConfig
from sessiontree.models.entry import (
    BranchInfo,
    Entry,
    EntryPayload,
    Label,
    SearchHit,
    Session,
    SessionSummary,
    now_ms,
    payload_adapter,
    payload_to_json,
)
from sessiontree.store.pool import StorePool, open_connection

# ── Exceptions ─────────────────────────────────────────────────────────────────


class SessionTreeStoreError(Exception):
    """Base class for store errors."""


class StorageError(SessionTreeStoreError):
    """
    Raised when the underlying database operation fails.

    The failed operation's transaction has been rolled back; committed data is
    untouched and the caller may retry the whole operation.
    """

    retryable = True


class SessionNotFoundError(SessionTreeStoreError):
    """Raised when a session_id does not exist in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class EntryNotFoundError(SessionTreeStoreError):
    """Raised when an entry id does not exist (in the given session, if any)."""

    def __init__(
        self, entry_id: str, session_id: str | None = None, *, message: str | None = None
    ) -> None:
        if message is None:
            where = f" in session {session_id!r}" if session_id else ""
            message = f"Entry not found: {entry_id!r}{where}"
        super().__init__(message)
        self.entry_id = entry_id
        self.session_id = session_id


class BrokenAncestryError(EntryNotFoundError):
    """
    Raised when a parent link points at an entry that does not exist.

    ``entry_id`` is the missing ancestor; ``reached_entry_id`` is the furthest
    entry (closest to the root) that could still be loaded.
    """

    def __init__(self, missing_id: str, reached_entry_id: str) -> None:
        super().__init__(
            missing_id,
            message=(
                f"Broken ancestry: parent {missing_id!r} of entry "
                f"{reached_entry_id!r} does not exist"
            ),
        )
        self.reached_entry_id = reached_entry_id


class CrossSessionReferenceError(SessionTreeStoreError):
    """Raised when an operation would link a session to another session's entry."""

    def __init__(self, entry_id: str, session_id: str, owner_session_id: str) -> None:
        super().__init__(
            f"Entry {entry_id!r} belongs to session {owner_session_id!r}, not {session_id!r}"
        )
        self.entry_id = entry_id
        self.session_id = session_id
        self.owner_session_id = owner_session_id


class DuplicateIDError(SessionTreeStoreError):
    """Raised when attempting to insert a record with a duplicate primary key."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Duplicate ID: {record_id!r}")
        self.record_id = record_id


class MalformedEntryError(SessionTreeStoreError):
    """
    Raised when a stored payload cannot be decoded.

    ``reached_entry_id`` is the last entry on the path that decoded
    successfully, so callers can report how far a conversation loaded.
    """

    def __init__(
        self, entry_id: str, reached_entry_id: str | None = None, reason: str = ""
    ) -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(f"Malformed entry {entry_id!r}{detail}")
        self.entry_id = entry_id
        self.reached_entry_id = reached_entry_id
        self.reason = reason


class CycleOrDepthExceededError(SessionTreeStoreError):
    """Raised when a parent chain is longer than the configured cap (a cycle or corruption)."""

    def __init__(self, entry_id: str, depth: int) -> None:
        super().__init__(
            f"Ancestry of entry {entry_id!r} exceeded {depth} parent links; "
            "the parent chain is cyclic or corrupted"
        )
        self.entry_id = entry_id
        self.depth = depth


# ── Internal raw storage model ─────────────────────────────────────────────────


class RawEntry:
    """Undecoded entry row. ``data`` is the stored JSON text."""

    __slots__ = ("created_at", "data", "depth", "id", "parent_id", "session_id", "type")

    def __init__(
        self,
        id: str,
        session_id: str,
        parent_id: str | None,
        type: str,
        created_at: int,
        data: str,
        depth: int = 0,
    ) -> None:
        self.id = id
        self.session_id = session_id
        self.parent_id = parent_id
        self.type = type
        self.created_at = created_at
        self.data = data
        self.depth = depth

    def decode(self) -> Entry:
        """
        Parse the payload into a typed :class:`Entry`.

        Raises:
            MalformedEntryError: If ``data`` is not a JSON object or does not
                validate against the payload model for ``type``.
        """
        try:
            data = json.loads(self.data)
            if not isinstance(data, dict):
                raise ValueError("payload is not a JSON object")
            # pydantic.ValidationError is a ValueError subclass.
            payload = payload_adapter.validate_python({**data, "type": self.type})
        except ValueError as exc:
            raise MalformedEntryError(self.id, reason=str(exc)) from exc
        return Entry(
            id=self.id,
            session_id=self.session_id,
            parent_id=self.parent_id,
            created_at=self.created_at,
            data=payload,
        )


_ENTRY_COLUMNS = "session_id, id, parent_id, type, created_at, data"

# ── EntryStore ─────────────────────────────────────────────────────────────────


class EntryStore:
    """
    Append-only, SQLite-backed store of session entry trees.

    Entries are never updated. The only mutable session fields are
    ``leaf_id`` and ``display_name``. Every write runs inside one
    ``BEGIN IMMEDIATE`` transaction while holding the per-path write lock;
    every read goes through a separate reader connection, so readers only
    ever see committed state and never wait for the writer.

    Change notifications are published on :attr:`event_bus` after each write
    transaction commits.

    Usage (standalone)::

        store = EntryStore(StoreConfig())
        await store.initialize()
        try:
            session = await store.create_session("~/projects/demo")
            await store.append_entry(session.id, MessagePayload(role="user", text="hi"))
        finally:
            await store.close()   # closes the private connections

    Usage (with pool)::

        pool = StorePool()
        store_a = EntryStore(config, pool=pool)
        store_b = EntryStore(config, pool=pool)
        await store_a.initialize()   # opens the shared connections once
        await store_b.initialize()   # reuses them
        await pool.close_all()       # actually closes the connections
    """

    def __init__(
        self,
        config: StoreConfig,
        pool: StorePool | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool
        self._writer: aiosqlite.Connection | None = None
        self._reader: aiosqlite.Connection | None = None
        self._write_lock: asyncio.Lock | None = None
        self.event_bus = event_bus or EventBus()
        self._logger = structlog.get_logger("sessiontree.store")

    @property
    def config(self) -> StoreConfig:
        return self._config

    async def initialize(self) -> None:
        """
        Open (or borrow) the writer and reader connections and apply the schema.

        Raises:
            StorageError: If the database cannot be opened or the schema fails.
        """
        try:
            if self._pool is not None:
                writer, reader = await self._pool.acquire(
                    self._db_path,
                    wal_mode=self._config.wal_mode,
                    connection_timeout=self._config.connection_timeout,
                )
                write_lock = self._pool.write_lock(self._db_path)
            else:
                writer = await open_connection(
                    self._db_path,
                    wal_mode=self._config.wal_mode,
                    connection_timeout=self._config.connection_timeout,
                )
                try:
                    reader = await open_connection(
                        self._db_path,
                        wal_mode=self._config.wal_mode,
                        connection_timeout=self._config.connection_timeout,
                        read_only=True,
                    )
                except aiosqlite.Error:
                    await writer.close()
                    raise
                write_lock = asyncio.Lock()

            schema = (Path(__file__).parent / "schema.sql").read_text()
            # executescript() commits first; never run it inside someone else's transaction.
            async with write_lock:
                await writer.executescript(schema)
                await writer.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Cannot open store at {self._db_path!r}: {exc}") from exc

        self._writer = writer
        self._reader = reader
        self._write_lock = write_lock
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """
        Release the database connections.

        Pool-managed connections are left open (the pool owns them); private
        connections are closed.
        """
        if self._writer is None:
            return
        if self._pool is None:
            if self._reader is not None:
                await self._reader.close()
            await self._writer.close()
        self._writer = None
        self._reader = None
        self._write_lock = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._writer is None:
            raise SessionTreeStoreError("Store is not initialized. Call initialize() first.")
        return self._writer

    def _reader_or_raise(self) -> aiosqlite.Connection:
        if self._reader is None:
            raise SessionTreeStoreError("Store is not initialized. Call initialize() first.")
        return self._reader

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run the body as one ``BEGIN IMMEDIATE`` transaction under the write lock."""
        conn = self._conn_or_raise()
        if self._write_lock is None:
            raise SessionTreeStoreError("Store is not initialized. Call initialize() first.")
        async with self._write_lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as exc:
                raise StorageError(str(exc)) from exc
            try:
                yield conn
            except aiosqlite.Error as exc:
                await self._rollback(conn)
                raise StorageError(str(exc)) from exc
            except BaseException:
                await self._rollback(conn)
                raise
            try:
                await conn.commit()
            except aiosqlite.Error as exc:
                await self._rollback(conn)
                raise StorageError(str(exc)) from exc

    async def _rollback(self, conn: aiosqlite.Connection) -> None:
        try:
            await conn.rollback()
        except aiosqlite.Error as exc:
            self._logger.error("rollback_failed", db_path=self._db_path, error=str(exc))

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        conn = self._reader_or_raise()
        try:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Row | None:
        conn = self._reader_or_raise()
        try:
            async with conn.execute(sql, params) as cursor:
                return await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc

    # ── Session Methods ────────────────────────────────────────────────────────

    async def create_session(
        self,
        working_context: str = "",
        parent_session_id: str | None = None,
        *,
        session_id: str | None = None,
        display_name: str | None = None,
    ) -> Session:
        """
        Insert a new session row with a null leaf.

        Args:
            working_context: Free-form context string (e.g. a working directory).
            parent_session_id: Session this one was derived from, if any.
            session_id: Explicit id; a ``sess_<ULID>`` id is generated when omitted.
            display_name: Optional user-facing name.

        Raises:
            DuplicateIDError: If *session_id* already exists.
            StorageError: On database failure.
        """
        session = Session(
            id=session_id or make_id("sess"),
            working_context=working_context,
            parent_session_id=parent_session_id,
            display_name=display_name,
        )
        async with self._transaction() as conn:
            await self._insert_session(conn, session)

        self._logger.info(
            "session_created", session_id=session.id, parent_session_id=parent_session_id
        )
        self.event_bus.publish(
            SessionEvent.SESSION_CREATED,
            {"session_id": session.id, "parent_session_id": parent_session_id},
        )
        return session

    async def get_session(self, session_id: str) -> Session:
        """
        Fetch a session by ID.

        Raises:
            SessionNotFoundError: If no session with this ID exists.
        """
        row = await self._fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))
        if row is None:
            raise SessionNotFoundError(session_id)
        return self._row_to_session(row)

    async def list_sessions(self) -> list[SessionSummary]:
        """
        One summary row per session, most recent activity first.

        ``last_activity`` is the newest ``message`` entry timestamp (falling
        back to the session's creation time); ``message_count`` counts
        ``message`` entries; ``first_message`` is the text of the earliest
        user message. Everything is aggregated at read time.
        """
        rows = await self._fetchall(
            """
            SELECT
                s.*,
                COALESCE(
                    (SELECT MAX(e.created_at) FROM entries e
                      WHERE e.session_id = s.id AND e.type = 'message'),
                    s.created_at
                ) AS last_activity,
                (SELECT COUNT(*) FROM entries e
                  WHERE e.session_id = s.id AND e.type = 'message') AS message_count,
                (SELECT CASE WHEN json_valid(e.data) THEN json_extract(e.data, '$.text') END
                   FROM entries e
                  WHERE e.session_id = s.id
                    AND e.type = 'message'
                    AND CASE WHEN json_valid(e.data)
                             THEN json_extract(e.data, '$.role') END = 'user'
                  ORDER BY e.created_at, e.rowid
                  LIMIT 1) AS first_message
            FROM sessions s
            ORDER BY last_activity DESC, s.created_at DESC, s.rowid DESC
            """
        )
        return [
            SessionSummary(
                id=r["id"],
                created_at=r["created_at"],
                working_context=r["working_context"],
                display_name=r["display_name"],
                parent_session_id=r["parent_session_id"],
                leaf_id=r["leaf_id"],
                last_activity=r["last_activity"],
                message_count=r["message_count"],
                first_message=r["first_message"],
            )
            for r in rows
        ]

    async def rename_session(self, session_id: str, display_name: str | None) -> None:
        """Set (or clear, with ``None``) the session's display name."""
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "UPDATE sessions SET display_name = ? WHERE id = ?", (display_name, session_id)
            )
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)
        self.event_bus.publish(
            SessionEvent.SESSION_RENAMED,
            {"session_id": session_id, "display_name": display_name},
        )

    async def delete_session(self, session_id: str) -> None:
        """
        Delete a session together with its entries and labels.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM entry_text_fts WHERE session_id = ?", (session_id,))
            cursor = await conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)
        self._logger.info("session_deleted", session_id=session_id)
        self.event_bus.publish(SessionEvent.SESSION_DELETED, {"session_id": session_id})

    # ── Entry Methods ──────────────────────────────────────────────────────────

    async def append_entry(self, session_id: str, payload: EntryPayload) -> Entry:
        """
        Append *payload* as a child of the session's leaf and advance the leaf.

        Reading the leaf, inserting the entry and moving the leaf happen in a
        single transaction: either all three are committed or none is. If the
        leaf references an entry that no longer exists the entry is inserted
        as a new root instead.

        Raises:
            SessionNotFoundError: If the session does not exist.
            StorageError: On database failure (nothing was written).
        """
        async with self._transaction() as conn:
            leaf_id = await self._read_leaf(conn, session_id)
            entry = await self._insert_new_entry(conn, session_id, leaf_id, payload)
            await self._update_leaf(conn, session_id, entry.id)
        self._entry_appended(entry)
        return entry

    async def append_entry_at(
        self, session_id: str, parent_id: str | None, payload: EntryPayload
    ) -> Entry:
        """
        Move the leaf to *parent_id* and append *payload* beneath it, atomically.

        ``parent_id=None`` starts a new root.

        Raises:
            SessionNotFoundError: If the session does not exist.
            EntryNotFoundError: If *parent_id* does not exist.
            CrossSessionReferenceError: If *parent_id* belongs to another session.
        """
        async with self._transaction() as conn:
            await self._read_leaf(conn, session_id)
            if parent_id is not None:
                await self._check_entry_in_session(conn, session_id, parent_id)
            entry = await self._insert_new_entry(conn, session_id, parent_id, payload)
            await self._update_leaf(conn, session_id, entry.id)
        self._entry_appended(entry)
        return entry

    async def set_leaf(self, session_id: str, entry_id: str | None) -> None:
        """
        Repoint the session's leaf without creating an entry.

        ``None`` resets the session to "before the first entry".

        Raises:
            SessionNotFoundError: If the session does not exist.
            EntryNotFoundError: If *entry_id* does not exist.
            CrossSessionReferenceError: If *entry_id* belongs to another session.
        """
        async with self._transaction() as conn:
            await self._read_leaf(conn, session_id)
            if entry_id is not None:
                await self._check_entry_in_session(conn, session_id, entry_id)
            await self._update_leaf(conn, session_id, entry_id)
        self._logger.debug("leaf_moved", session_id=session_id, leaf_id=entry_id)
        self._leaf_moved(session_id, entry_id)

    async def get_entry(self, entry_id: str, *, session_id: str | None = None) -> Entry | None:
        """
        Fetch one entry, or ``None`` if it does not exist.

        Without *session_id* the earliest-inserted row with this id is
        returned (the original, never a fork copy).

        Raises:
            MalformedEntryError: If the stored payload cannot be decoded.
        """
        if session_id is None:
            row = await self._fetchone(
                f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE id = ? ORDER BY rowid LIMIT 1",
                (entry_id,),
            )
        else:
            row = await self._fetchone(
                f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE session_id = ? AND id = ?",
                (session_id, entry_id),
            )
        return self._row_to_raw(row).decode() if row is not None else None

    async def get_children(self, parent_id: str, *, session_id: str | None = None) -> list[Entry]:
        """Children of *parent_id*, ordered by ``created_at`` then insertion order."""
        if session_id is None:
            session_id = await self._owner_session(parent_id)
            if session_id is None:
                return []
        rows = await self._fetchall(
            f"""
            SELECT {_ENTRY_COLUMNS} FROM entries
            WHERE session_id = ? AND parent_id = ?
            ORDER BY created_at, rowid
            """,
            (session_id, parent_id),
        )
        return [self._row_to_raw(r).decode() for r in rows]

    async def get_session_entries(self, session_id: str) -> list[Entry]:
        """Every entry of the session in creation order (the whole tree, flattened)."""
        rows = await self._fetchall(
            f"SELECT {_ENTRY_COLUMNS} FROM entries WHERE session_id = ? ORDER BY created_at, rowid",
            (session_id,),
        )
        return [self._row_to_raw(r).decode() for r in rows]

    async def get_roots(self, session_id: str) -> list[Entry]:
        """Entries with no parent. A healthy non-empty session has exactly one."""
        rows = await self._fetchall(
            f"""
            SELECT {_ENTRY_COLUMNS} FROM entries
            WHERE session_id = ? AND parent_id IS NULL
            ORDER BY created_at, rowid
            """,
            (session_id,),
        )
        return [self._row_to_raw(r).decode() for r in rows]

    async def ancestry_rows(self, leaf_id: str, *, session_id: str | None = None) -> list[RawEntry]:
        """
        Undecoded root→leaf path ending at *leaf_id*.

        Lets callers decide how to treat individual malformed payloads.

        Raises:
            EntryNotFoundError: If *leaf_id* does not exist.
            BrokenAncestryError: If an ancestor is missing.
            CycleOrDepthExceededError: If the chain exceeds ``max_ancestry_depth``.
        """
        if session_id is None:
            session_id = await self._owner_session(leaf_id)
            if session_id is None:
                raise EntryNotFoundError(leaf_id)
        conn = self._reader_or_raise()
        try:
            rows = await self._ancestry_rows(conn, session_id, leaf_id)
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc
        self._check_chain(rows, session_id, leaf_id)
        return rows

    async def reconstruct_ancestry(
        self, leaf_id: str, *, session_id: str | None = None
    ) -> list[Entry]:
        """
        Decoded root→leaf path ending at *leaf_id*.

        Raises:
            EntryNotFoundError: If *leaf_id* does not exist.
            BrokenAncestryError: If an ancestor is missing.
            CycleOrDepthExceededError: If the chain exceeds ``max_ancestry_depth``.
            MalformedEntryError: If any payload on the path cannot be decoded.
        """
        entries: list[Entry] = []
        for raw in await self.ancestry_rows(leaf_id, session_id=session_id):
            try:
                entries.append(raw.decode())
            except MalformedEntryError as exc:
                reached = entries[-1].id if entries else None
                raise MalformedEntryError(raw.id, reached, exc.reason) from exc
        return entries

    async def list_branches(self, session_id: str) -> list[BranchInfo]:
        """
        Every tip of the session's tree (entries without children), newest first.

        ``entry_count`` is the length of the root→tip path.
        """
        rows = await self._fetchall(
            "SELECT id, parent_id FROM entries WHERE session_id = ?", (session_id,)
        )
        parents: dict[str, str | None] = {r["id"]: r["parent_id"] for r in rows}
        tips = await self._fetchall(
            """
            SELECT e.id, e.created_at,
                   CASE WHEN json_valid(e.data) THEN json_extract(e.data, '$.text') END AS text
            FROM entries e
            WHERE e.session_id = ?
              AND NOT EXISTS (
                  SELECT 1 FROM entries c WHERE c.session_id = e.session_id AND c.parent_id = e.id
              )
            ORDER BY e.created_at DESC, e.rowid DESC
            """,
            (session_id,),
        )
        depths: dict[str, int] = {}
        return [
            BranchInfo(
                leaf_id=t["id"],
                entry_count=self._path_length(t["id"], parents, depths),
                last_text=t["text"] if isinstance(t["text"], str) else "",
                last_updated=t["created_at"],
            )
            for t in tips
        ]

    async def latest_leaf(self, session_id: str) -> str | None:
        """The most recently created tip of the tree, or ``None`` for an empty session."""
        branches = await self.list_branches(session_id)
        return branches[0].leaf_id if branches else None

    async def insert_entries(
        self, session_id: str, entries: Iterable[Entry], leaf_id: str | None
    ) -> None:
        """
        Bulk-insert pre-built entries (ids, parents and timestamps preserved) and set the leaf.

        Entries may arrive in any order; parents are always inserted before
        their children.

        Raises:
            SessionNotFoundError: If the session does not exist.
            DuplicateIDError: If an entry id is already used in the session.
            BrokenAncestryError: If an entry's parent is neither in the batch
                nor already in the session.
        """
        async with self._transaction() as conn:
            await self._read_leaf(conn, session_id)
            await self._insert_entries(conn, session_id, list(entries))
            if leaf_id is not None:
                await self._check_entry_in_session(conn, session_id, leaf_id)
            await self._update_leaf(conn, session_id, leaf_id)
        self._leaf_moved(session_id, leaf_id)

    async def fork_session(
        self,
        source_session_id: str,
        leaf_id: str | None,
        *,
        working_context: str | None = None,
    ) -> Session:
        """
        Copy the root→*leaf_id* path of a session into a brand-new session.

        Copied entries keep their ids, parent links, timestamps and stored
        payloads verbatim. The new session's ``parent_session_id`` is the
        source and its leaf is *leaf_id*. The source session is not modified.

        Raises:
            SessionNotFoundError: If the source session does not exist.
            EntryNotFoundError: If *leaf_id* is not in the source session.
            CrossSessionReferenceError: If *leaf_id* belongs to another session.
            BrokenAncestryError: If the path to *leaf_id* is broken.
        """
        async with self._transaction() as conn:
            async with conn.execute(
                "SELECT * FROM sessions WHERE id = ?", (source_session_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                raise SessionNotFoundError(source_session_id)
            source = self._row_to_session(row)

            rows: list[RawEntry] = []
            if leaf_id is not None:
                await self._check_entry_in_session(conn, source_session_id, leaf_id)
                rows = await self._ancestry_rows(conn, source_session_id, leaf_id)
                self._check_chain(rows, source_session_id, leaf_id)

            session = Session(
                id=make_id("sess"),
                working_context=(
                    source.working_context if working_context is None else working_context
                ),
                parent_session_id=source_session_id,
                leaf_id=leaf_id,
            )
            await self._insert_session(conn, session)
            for raw in rows:
                await conn.execute(
                    f"INSERT INTO entries ({_ENTRY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                    (session.id, raw.id, raw.parent_id, raw.type, raw.created_at, raw.data),
                )
            await self._update_leaf(conn, session.id, leaf_id)

        self._logger.info(
            "session_forked",
            session_id=session.id,
            source_session_id=source_session_id,
            leaf_id=leaf_id,
            entry_count=len(rows),
        )
        self.event_bus.publish(
            SessionEvent.SESSION_FORKED,
            {"session_id": session.id, "source_session_id": source_session_id, "leaf_id": leaf_id},
        )
        return session

    async def import_records(
        self, session: Session, entries: Sequence[Entry], labels: Sequence[Label] = ()
    ) -> Session:
        """
        Insert a complete session (row, entries, labels, leaf) in one transaction.

        Raises:
            DuplicateIDError: If the session id, an entry id or a label id already exists.
            BrokenAncestryError: If an entry's parent is not part of *entries*.
            EntryNotFoundError: If the leaf or a label target is not part of *entries*.
        """
        async with self._transaction() as conn:
            await self._insert_session(conn, session.model_copy(update={"leaf_id": None}))
            await self._insert_entries(conn, session.id, list(entries))
            for label in labels:
                await self._insert_label(conn, label.model_copy(update={"session_id": session.id}))
            if session.leaf_id is not None:
                await self._check_entry_in_session(conn, session.id, session.leaf_id)
            await self._update_leaf(conn, session.id, session.leaf_id)

        self._logger.info("session_imported", session_id=session.id, entry_count=len(entries))
        self.event_bus.publish(
            SessionEvent.SESSION_IMPORTED,
            {"session_id": session.id, "entry_count": len(entries)},
        )
        return session

    # ── Label Methods ──────────────────────────────────────────────────────────

    async def add_label(self, session_id: str, target_id: str, label: str | None) -> Label:
        """
        Record a label for *target_id*. ``None`` or ``""`` clears it.

        Raises:
            SessionNotFoundError: If the session does not exist.
            EntryNotFoundError: If *target_id* does not exist.
            CrossSessionReferenceError: If *target_id* belongs to another session.
        """
        async with self._transaction() as conn:
            await self._read_leaf(conn, session_id)
            await self._check_entry_in_session(conn, session_id, target_id)
            async with conn.execute(
                "SELECT COALESCE(MAX(created_at), 0) FROM labels WHERE session_id = ?",
                (session_id,),
            ) as cursor:
                row = await cursor.fetchone()
            record = Label(
                id=make_id("lbl"),
                session_id=session_id,
                target_id=target_id,
                label=label,
                created_at=max(now_ms(), row[0] if row else 0),
            )
            await self._insert_label(conn, record)

        current = label or None
        self._logger.debug(
            "label_changed", session_id=session_id, target_id=target_id, label=current
        )
        payload: LabelChangedPayload = {
            "session_id": session_id,
            "target_id": target_id,
            "label": current,
        }
        self.event_bus.publish(SessionEvent.LABEL_CHANGED, dict(payload))
        return record

    async def get_label(self, session_id: str, target_id: str) -> str | None:
        """Current label of *target_id* (the latest record wins), or ``None``."""
        row = await self._fetchone(
            """
            SELECT label FROM labels
            WHERE session_id = ? AND target_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (session_id, target_id),
        )
        if row is None:
            return None
        return row["label"] or None

    async def get_labels(self, session_id: str) -> dict[str, str]:
        """Current labels of every labelled entry in the session."""
        current: dict[str, str] = {}
        for record in await self.get_label_records(session_id):
            if record.label:
                current[record.target_id] = record.label
            else:
                current.pop(record.target_id, None)
        return current

    async def get_label_records(self, session_id: str) -> list[Label]:
        """The raw, append-only label history of a session, oldest first."""
        rows = await self._fetchall(
            "SELECT * FROM labels WHERE session_id = ? ORDER BY created_at, rowid", (session_id,)
        )
        return [
            Label(
                id=r["id"],
                session_id=r["session_id"],
                target_id=r["target_id"],
                label=r["label"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ── Search ─────────────────────────────────────────────────────────────────

    async def search(self, query: str, limit: int = 20) -> list[SearchHit]:
        """
        Full-text search over the text of ``message`` and ``custom_message`` entries.

        Every word of *query* must match (as a prefix). Results are ordered by
        relevance; snippets wrap matched terms in ``[`` ``]``.
        """
        match = _fts_query(query)
        if not match:
            return []
        rows = await self._fetchall(
            """
            SELECT session_id, entry_id,
                   snippet(entry_text_fts, 0, '[', ']', '…', 12) AS snippet,
                   bm25(entry_text_fts) AS rank
            FROM entry_text_fts
            WHERE entry_text_fts MATCH ?
            ORDER BY rank
            LIMIT ?
            """,
            (match, limit),
        )
        return [
            SearchHit(
                session_id=r["session_id"],
                entry_id=r["entry_id"],
                snippet=r["snippet"],
                score=-float(r["rank"]),
            )
            for r in rows
        ]

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _entry_appended(self, entry: Entry) -> None:
        self._logger.debug(
            "entry_appended",
            session_id=entry.session_id,
            entry_id=entry.id,
            parent_id=entry.parent_id,
            entry_type=entry.type,
        )
        payload: EntryAppendedPayload = {
            "session_id": entry.session_id,
            "entry_id": entry.id,
            "parent_id": entry.parent_id,
            "type": entry.type,
        }
        self.event_bus.publish(SessionEvent.ENTRY_APPENDED, dict(payload))

    def _leaf_moved(self, session_id: str, leaf_id: str | None) -> None:
        payload: LeafMovedPayload = {"session_id": session_id, "leaf_id": leaf_id}
        self.event_bus.publish(SessionEvent.LEAF_MOVED, dict(payload))

    async def _insert_session(self, conn: aiosqlite.Connection, session: Session) -> None:
        try:
            await conn.execute(
                """
                INSERT INTO sessions
                    (id, created_at, working_context, parent_session_id, leaf_id, display_name)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.created_at,
                    session.working_context,
                    session.parent_session_id,
                    session.leaf_id,
                    session.display_name,
                ),
            )
        except aiosqlite.IntegrityError as exc:
            raise DuplicateIDError(session.id) from exc

    async def _read_leaf(self, conn: aiosqlite.Connection, session_id: str) -> str | None:
        async with conn.execute(
            "SELECT leaf_id FROM sessions WHERE id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return row["leaf_id"]

    async def _update_leaf(
        self, conn: aiosqlite.Connection, session_id: str, leaf_id: str | None
    ) -> None:
        await conn.execute("UPDATE sessions SET leaf_id = ? WHERE id = ?", (leaf_id, session_id))

    async def _insert_new_entry(
        self,
        conn: aiosqlite.Connection,
        session_id: str,
        parent_id: str | None,
        payload: EntryPayload,
    ) -> Entry:
        async with conn.execute(
            "SELECT COALESCE(MAX(created_at), 0) FROM entries WHERE session_id = ?",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        entry = Entry(
            id=await self._new_entry_id(conn, session_id),
            session_id=session_id,
            parent_id=parent_id,
            created_at=max(now_ms(), row[0] if row else 0),
            data=payload,
        )
        try:
            await self._insert_entry_row(conn, entry)
        except aiosqlite.IntegrityError as exc:
            if parent_id is None or "FOREIGN KEY" not in str(exc):
                raise
            # The leaf points at a vanished entry: start a new root instead.
            self._logger.warning(
                "append_parent_missing",
                session_id=session_id,
                parent_id=parent_id,
                entry_id=entry.id,
            )
            entry = entry.model_copy(update={"parent_id": None})
            await self._insert_entry_row(conn, entry)
        return entry

    async def _new_entry_id(self, conn: aiosqlite.Connection, session_id: str) -> str:
        taken: set[str] = set()
        while True:
            candidate = make_entry_id(taken)
            async with conn.execute(
                "SELECT 1 FROM entries WHERE session_id = ? AND id = ?", (session_id, candidate)
            ) as cursor:
                if await cursor.fetchone() is None:
                    return candidate
            taken.add(candidate)

    async def _insert_entry_row(self, conn: aiosqlite.Connection, entry: Entry) -> None:
        await conn.execute(
            f"INSERT INTO entries ({_ENTRY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            (
                entry.session_id,
                entry.id,
                entry.parent_id,
                entry.type,
                entry.created_at,
                json.dumps(payload_to_json(entry.data), ensure_ascii=False),
            ),
        )

    async def _insert_entries(
        self, conn: aiosqlite.Connection, session_id: str, entries: list[Entry]
    ) -> None:
        async with conn.execute(
            "SELECT id FROM entries WHERE session_id = ?", (session_id,)
        ) as cursor:
            present = {r["id"] for r in await cursor.fetchall()}

        pending = entries
        while pending:
            deferred: list[Entry] = []
            for entry in pending:
                if entry.parent_id is not None and entry.parent_id not in present:
                    deferred.append(entry)
                    continue
                if entry.id in present:
                    raise DuplicateIDError(entry.id)
                await self._insert_entry_row(conn, entry.model_copy(update={"session_id": session_id}))
                present.add(entry.id)
            if len(deferred) == len(pending):
                orphan = deferred[0]
                raise BrokenAncestryError(cast(str, orphan.parent_id), reached_entry_id=orphan.id)
            pending = deferred

    async def _insert_label(self, conn: aiosqlite.Connection, label: Label) -> None:
        try:
            await conn.execute(
                """
                INSERT INTO labels (id, session_id, target_id, label, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (label.id, label.session_id, label.target_id, label.label, label.created_at),
            )
        except aiosqlite.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                raise EntryNotFoundError(label.target_id, label.session_id) from exc
            raise DuplicateIDError(label.id) from exc

    async def _check_entry_in_session(
        self, conn: aiosqlite.Connection, session_id: str, entry_id: str
    ) -> None:
        async with conn.execute(
            "SELECT session_id FROM entries WHERE id = ? ORDER BY rowid", (entry_id,)
        ) as cursor:
            owners = [r["session_id"] for r in await cursor.fetchall()]
        if session_id in owners:
            return
        if not owners:
            raise EntryNotFoundError(entry_id, session_id)
        raise CrossSessionReferenceError(entry_id, session_id, owners[0])

    async def _owner_session(self, entry_id: str) -> str | None:
        row = await self._fetchone(
            "SELECT session_id FROM entries WHERE id = ? ORDER BY rowid LIMIT 1", (entry_id,)
        )
        return row["session_id"] if row is not None else None

    async def _ancestry_rows(
        self, conn: aiosqlite.Connection, session_id: str, leaf_id: str
    ) -> list[RawEntry]:
        # SQLite evaluates the recursive CTE iteratively; the depth column caps it.
        async with conn.execute(
            f"""
            WITH RECURSIVE ancestry({_ENTRY_COLUMNS}, depth) AS (
                SELECT {_ENTRY_COLUMNS}, 0 FROM entries
                WHERE session_id = :session_id AND id = :leaf_id
                UNION ALL
                SELECT e.session_id, e.id, e.parent_id, e.type, e.created_at, e.data, a.depth + 1
                FROM entries e
                JOIN ancestry a ON e.session_id = a.session_id AND e.id = a.parent_id
                WHERE a.depth < :max_depth
            )
            SELECT * FROM ancestry ORDER BY depth DESC
            """,
            {
                "session_id": session_id,
                "leaf_id": leaf_id,
                "max_depth": self._config.max_ancestry_depth,
            },
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_raw(r) for r in rows]

    def _check_chain(self, rows: list[RawEntry], session_id: str, leaf_id: str) -> None:
        if not rows:
            raise EntryNotFoundError(leaf_id, session_id)
        top = rows[0]
        if top.parent_id is None:
            return
        if top.depth >= self._config.max_ancestry_depth:
            self._logger.error(
                "ancestry_depth_exceeded",
                session_id=session_id,
                leaf_id=leaf_id,
                depth=top.depth,
            )
            raise CycleOrDepthExceededError(leaf_id, top.depth)
        self._logger.warning(
            "ancestry_broken",
            session_id=session_id,
            leaf_id=leaf_id,
            missing_id=top.parent_id,
            reached_entry_id=top.id,
        )
        raise BrokenAncestryError(top.parent_id, reached_entry_id=top.id)

    @staticmethod
    def _path_length(entry_id: str, parents: dict[str, str | None], memo: dict[str, int]) -> int:
        chain: list[str] = []
        current: str | None = entry_id
        base = 0
        while current is not None and current in parents:
            if current in memo:
                base = memo[current]
                break
            if len(chain) > len(parents):
                break
            chain.append(current)
            current = parents[current]
        for offset, node in enumerate(reversed(chain), start=1):
            memo[node] = base + offset
        return memo.get(entry_id, base)

    def _row_to_session(self, row: aiosqlite.Row) -> Session:
        return Session(
            id=row["id"],
            created_at=row["created_at"],
            working_context=row["working_context"],
            parent_session_id=row["parent_session_id"],
            leaf_id=row["leaf_id"],
            display_name=row["display_name"],
        )

    def _row_to_raw(self, row: aiosqlite.Row) -> RawEntry:
        return RawEntry(
            id=row["id"],
            session_id=row["session_id"],
            parent_id=row["parent_id"],
            type=row["type"],
            created_at=row["created_at"],
            data=row["data"],
            depth=row["depth"] if "depth" in row.keys() else 0,
        )


def _fts_query(query: str) -> str:
    """Turn free text into an FTS5 query: every word quoted, matched as a prefix."""
    tokens = re.findall(r"\w+", query)
    return " ".join(f'"{token}"*' for token in tokens)
