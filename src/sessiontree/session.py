"""ChatSession — the primary public API for one conversation tree."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import structlog

from sessiontree.context.assembler import AssembledContext, ContextAssembler
from sessiontree.context.live import BranchWatcher
from sessiontree.context.reconstructor import Branch, BranchReconstructor
from sessiontree.events.bus import EventBus, SessionEvent
from sessiontree.export.jsonl import export_session, import_session
from sessiontree.models.config import SessionTreeConfig, StoreConfig
from sessiontree.models.entry import (
    BranchInfo,
    BranchSummaryPayload,
    ChatMessage,
    CompactionPayload,
    CustomMessagePayload,
    CustomPayload,
    Entry,
    EntryPayload,
    MessagePayload,
    MessageRole,
    ModelChangePayload,
    Session,
    TextContent,
    ThinkingLevel,
    ThinkingLevelChangePayload,
    ToolCall,
    ToolResult,
)
from sessiontree.models.stream import ModelRef, TurnRequest
from sessiontree.protocols import ModelTransport, ToolExecutor
from sessiontree.store.entry_store import EntryStore
from sessiontree.store.pool import StorePool
from sessiontree.tokens.estimator import TokenEstimator
from sessiontree.tools.registry import ToolRegistry
from sessiontree.turns import TurnAccumulator


@dataclass
class TreeNode:
    """One entry of the session tree with its children and current label."""

    entry: Entry
    children: list[TreeNode] = field(default_factory=list)
    label: str | None = None


class ChatSession:
    """
    A single conversation: an append-only tree of entries with a movable leaf.

    Every mutation goes through the shared :class:`EntryStore`, which commits
    it atomically and then publishes a :class:`SessionEvent`.

    Usage::

        # Preferred: open() returns an async context manager directly
        async with ChatSession.open(db_path="chat.db") as session:
            await session.append_message("Hello!")
            context = await session.context()

        # Manual lifecycle
        session = await ChatSession.create(db_path="chat.db")
        hi = await session.append_message("hi")
        await session.append_message(ChatMessage.from_text("assistant", "hello"))
        await session.branch(hi.id)           # rewind
        await session.append_message("alt")   # second child of "hi"
        await session.close()

    **Agent turns**

    :meth:`run_turn` assembles the context, streams it through a
    :class:`~sessiontree.protocols.ModelTransport` and appends the assistant
    reply. If the turn is cancelled the text streamed so far is still
    persisted (``stopReason="aborted"``) before the cancellation propagates.
    """

    def __init__(
        self,
        session: Session,
        store: EntryStore,
        config: SessionTreeConfig,
        *,
        owns_store: bool = False,
        token_estimator: TokenEstimator | None = None,
    ) -> None:
        self._session_id = session.id
        self._session = session
        self._store = store
        self._config = config
        self._owns_store = owns_store
        self._reconstructor = BranchReconstructor(store)
        self._assembler = ContextAssembler(config.context)
        self._estimator = token_estimator or TokenEstimator()
        self._closed = False
        self._logger = structlog.get_logger("sessiontree.session").bind(session_id=session.id)

    # ── Construction ───────────────────────────────────────────────────────────

    @staticmethod
    def _resolve_config(
        config: SessionTreeConfig | None, db_path: str | None
    ) -> SessionTreeConfig:
        cfg = config or SessionTreeConfig()
        if db_path is not None:
            if config is not None and cfg.store.db_path != StoreConfig().db_path:
                raise ValueError(
                    "Specify db_path either via db_path= or config.store.db_path, not both."
                )
            cfg = cfg.model_copy(
                update={"store": cfg.store.model_copy(update={"db_path": db_path})}
            )
        return cfg

    @staticmethod
    async def _open_store(
        cfg: SessionTreeConfig, pool: StorePool | None, store: EntryStore | None
    ) -> tuple[EntryStore, bool]:
        if store is not None:
            return store, False
        opened = EntryStore(cfg.store, pool=pool)
        await opened.initialize()
        return opened, True

    @classmethod
    async def create(
        cls,
        *,
        working_context: str = "",
        display_name: str | None = None,
        parent_session_id: str | None = None,
        session_id: str | None = None,
        config: SessionTreeConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        store: EntryStore | None = None,
    ) -> ChatSession:
        """
        Create a new, empty session.

        Args:
            working_context: Free-form context string (e.g. a working directory).
            display_name: Optional user-facing name.
            parent_session_id: Session this one derives from, if any.
            session_id: Explicit id (a ``sess_<ULID>`` id is generated otherwise).
            config: Configuration. Defaults to ``SessionTreeConfig()``.
            db_path: Override database path (useful for testing). Raises
                ``ValueError`` if both ``db_path`` and ``config.store.db_path``
                are supplied.
            pool: Optional shared connection pool. The caller is responsible
                for calling ``pool.close_all()`` at shutdown.
            store: An already-initialised store to share (and not close).

        Raises:
            ValueError: If both ``db_path`` and ``config.store.db_path`` are supplied.
            DuplicateIDError: If *session_id* is already taken.
            StorageError: If the database cannot be opened or written.
        """
        cfg = cls._resolve_config(config, db_path)
        entry_store, owns = await cls._open_store(cfg, pool, store)
        try:
            session = await entry_store.create_session(
                working_context,
                parent_session_id,
                session_id=session_id,
                display_name=display_name,
            )
        except BaseException:
            if owns:
                await entry_store.close()
            raise
        return cls(session, entry_store, cfg, owns_store=owns)

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        *,
        working_context: str = "",
        display_name: str | None = None,
        config: SessionTreeConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        store: EntryStore | None = None,
    ) -> AsyncGenerator[ChatSession, None]:
        """
        Create a new session and use it as an async context manager.

        The session is closed when the ``async with`` block exits, even on
        exception::

            async with ChatSession.open(db_path="chat.db") as session:
                await session.append_message("Hello!")
        """
        session = await cls.create(
            working_context=working_context,
            display_name=display_name,
            config=config,
            db_path=db_path,
            pool=pool,
            store=store,
        )
        try:
            yield session
        finally:
            await session.close()

    @classmethod
    async def load(
        cls,
        session_id: str,
        *,
        config: SessionTreeConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        store: EntryStore | None = None,
    ) -> ChatSession:
        """
        Load an existing session from the store.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        cfg = cls._resolve_config(config, db_path)
        entry_store, owns = await cls._open_store(cfg, pool, store)
        try:
            session = await entry_store.get_session(session_id)
        except BaseException:
            if owns:
                await entry_store.close()
            raise
        return cls(session, entry_store, cfg, owns_store=owns)

    async def close(self) -> None:
        """
        Release the session.

        Publishes :attr:`SessionEvent.SESSION_CLOSED` (ending any live
        watchers) and closes the store if this session opened it.
        """
        if self._closed:
            return
        self._closed = True
        self._store.event_bus.publish(SessionEvent.SESSION_CLOSED, {"session_id": self._session_id})
        if self._owns_store:
            await self._store.close()
        self._logger.info("session_closed")

    async def __aenter__(self) -> ChatSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # ── Properties ─────────────────────────────────────────────────────────────

    @property
    def id(self) -> str:
        """The session ID."""
        return self._session_id

    @property
    def store(self) -> EntryStore:
        return self._store

    @property
    def config(self) -> SessionTreeConfig:
        return self._config

    @property
    def event_bus(self) -> EventBus:
        """The store's event bus. Subscribe to monitor changes."""
        return self._store.event_bus

    def subscribe(self, event: SessionEvent, handler: Any) -> None:
        """Convenience wrapper for ``session.event_bus.subscribe()``."""
        self._store.event_bus.subscribe(event, handler)

    async def info(self) -> Session:
        """Fresh session row (current leaf and display name)."""
        self._session = await self._store.get_session(self._session_id)
        return self._session

    async def leaf_id(self) -> str | None:
        return (await self.info()).leaf_id

    # ── Appending ──────────────────────────────────────────────────────────────

    async def append(self, payload: EntryPayload) -> Entry:
        """Append *payload* under the current leaf and advance the leaf to it."""
        return await self._store.append_entry(self._session_id, payload)

    async def append_message(
        self, message: ChatMessage | str, *, role: MessageRole = "user"
    ) -> Entry:
        """Append a conversation message. A bare string becomes a text message with *role*."""
        if isinstance(message, str):
            message = ChatMessage.from_text(role, message)
        return await self.append(MessagePayload.from_message(message))

    async def append_model_change(self, provider: str, model_id: str) -> Entry:
        return await self.append(ModelChangePayload(provider=provider, model_id=model_id))

    async def append_thinking_level_change(self, thinking_level: ThinkingLevel) -> Entry:
        return await self.append(ThinkingLevelChangePayload(thinking_level=thinking_level))

    async def append_custom(self, custom_type: str, payload: Any = None) -> Entry:
        """Append opaque extension state (enters the context only if ``payload['display']``)."""
        return await self.append(CustomPayload(custom_type=custom_type, payload=payload))

    async def append_custom_message(
        self,
        custom_type: str,
        content: Any,
        *,
        display: bool = True,
        details: Any = None,
    ) -> Entry:
        """Append an extension-authored message; ``display=False`` keeps it out of the context."""
        return await self.append(
            CustomMessagePayload.from_content(custom_type, content, display=display, details=details)
        )

    async def append_tool_results(self, results: list[ToolResult]) -> Entry:
        """Record tool outcomes as one ``toolResult`` message."""
        message = ChatMessage(
            role="toolResult",
            content=[TextContent(text=r.output) for r in results if r.output],
            tool_results=results,
        )
        return await self.append(MessagePayload.from_message(message))

    # ── Branching ──────────────────────────────────────────────────────────────

    async def branch(self, target_entry_id: str | None) -> None:
        """
        Move the leaf to *target_entry_id* without creating an entry.

        ``None`` rewinds to "before the first entry"; the next append starts a
        new root.

        Raises:
            EntryNotFoundError: If the entry does not exist.
            CrossSessionReferenceError: If it belongs to another session.
        """
        await self._store.set_leaf(self._session_id, target_entry_id)
        self._logger.info("branched", leaf_id=target_entry_id)

    async def branch_with_summary(
        self,
        from_entry_id: str | None,
        summary: str,
        details: Any = None,
        from_hook: bool = False,
    ) -> Entry:
        """
        Rewind to *from_entry_id* and record why, in one transaction.

        The new ``branch_summary`` entry becomes the leaf; its ``fromId`` is
        *from_entry_id* or ``"root"``.
        """
        payload = BranchSummaryPayload(
            from_id=from_entry_id or "root",
            summary=summary,
            details=details,
            from_hook=from_hook,
        )
        entry = await self._store.append_entry_at(self._session_id, from_entry_id, payload)
        self._logger.info("branched_with_summary", from_entry_id=from_entry_id, entry_id=entry.id)
        return entry

    async def fork(
        self, leaf_id: str | None = None, working_context: str | None = None
    ) -> ChatSession:
        """
        Copy the path ending at *leaf_id* (default: the current leaf) into a new session.

        Entry ids and parent links are preserved. The source session is left
        untouched. The returned session shares this session's store.

        Raises:
            BrokenAncestryError: If the path has a missing ancestor.
        """
        if leaf_id is None:
            leaf_id = await self.leaf_id()
        forked = await self._store.fork_session(
            self._session_id, leaf_id, working_context=working_context
        )
        return ChatSession(
            forked, self._store, self._config, token_estimator=self._estimator
        )

    async def compact(
        self,
        summary: str,
        first_kept_entry_id: str,
        tokens_before: int | None = None,
        details: Any = None,
        from_hook: bool = False,
    ) -> str:
        """
        Append a ``compaction`` entry and return its id.

        Context assembly will replace everything before *first_kept_entry_id*
        with *summary*. No other entry is touched. ``tokens_before`` defaults
        to the estimated size of the current context.
        """
        if tokens_before is None:
            tokens_before = self._estimator.estimate_context(await self.context())
        entry = await self.append(
            CompactionPayload(
                summary=summary,
                first_kept_entry_id=first_kept_entry_id,
                tokens_before=tokens_before,
                details=details,
                from_hook=from_hook,
            )
        )
        self._logger.info(
            "compaction_appended",
            entry_id=entry.id,
            first_kept_entry_id=first_kept_entry_id,
            tokens_before=tokens_before,
        )
        return entry.id

    # ── Metadata ───────────────────────────────────────────────────────────────

    async def label(self, target_id: str, label: str | None) -> None:
        """Label an entry; ``None`` or ``""`` clears its label."""
        await self._store.add_label(self._session_id, target_id, label)

    async def rename(self, display_name: str | None) -> None:
        await self._store.rename_session(self._session_id, display_name)
        self._logger.info("session_renamed", display_name=display_name)

    async def delete(self) -> None:
        """Delete the session with all its entries and labels, then close it."""
        await self._store.delete_session(self._session_id)
        await self.close()

    async def export(self) -> str:
        """This session as line-delimited JSON (see :mod:`sessiontree.export.jsonl`)."""
        return await export_session(
            self._store, self._session_id, version=self._config.export_version
        )

    @classmethod
    async def import_jsonl(
        cls,
        source: str,
        *,
        session_id: str | None = None,
        config: SessionTreeConfig | None = None,
        db_path: str | None = None,
        pool: StorePool | None = None,
        store: EntryStore | None = None,
    ) -> ChatSession:
        """
        Recreate an exported session and open it.

        Raises:
            ExportFormatError: If *source* is not a valid export.
            DuplicateIDError: If the session id is already taken.
        """
        cfg = cls._resolve_config(config, db_path)
        entry_store, owns = await cls._open_store(cfg, pool, store)
        try:
            session = await import_session(entry_store, source, session_id=session_id)
        except BaseException:
            if owns:
                await entry_store.close()
            raise
        return cls(session, entry_store, cfg, owns_store=owns)

    # ── Reading ────────────────────────────────────────────────────────────────

    async def current_branch(self, leaf_id: str | None = None) -> Branch:
        """The reconstructed branch ending at *leaf_id* (default: the current leaf)."""
        return await self._reconstructor.reconstruct(self._session_id, leaf_id)

    async def branch_entries(self, leaf_id: str | None = None) -> list[Entry]:
        """Root→leaf entries of the current (or given) branch."""
        return (await self.current_branch(leaf_id)).entries

    async def context(self, leaf_id: str | None = None) -> AssembledContext:
        """The assembled LLM context for the current (or given) leaf."""
        return self._assembler.assemble(await self.current_branch(leaf_id))

    async def tree(self) -> list[TreeNode]:
        """The whole entry tree as root nodes (normally exactly one), children in creation order."""
        entries = await self._store.get_session_entries(self._session_id)
        labels = await self._store.get_labels(self._session_id)
        nodes = {e.id: TreeNode(entry=e, label=labels.get(e.id)) for e in entries}
        roots: list[TreeNode] = []
        for entry in entries:
            node = nodes[entry.id]
            if entry.parent_id is not None and entry.parent_id in nodes:
                nodes[entry.parent_id].children.append(node)
            else:
                roots.append(node)
        return roots

    async def branches(self) -> list[BranchInfo]:
        """Every tip of the tree, newest first."""
        return await self._store.list_branches(self._session_id)

    async def watch(self) -> AsyncIterator[AssembledContext]:
        """
        Yield the assembled context now and again after every change to this session.

        Ends when the session is closed or deleted::

            async for context in session.watch():
                render(context.messages)
        """
        watcher = BranchWatcher(
            self._store.event_bus, self._session_id, self._reconstructor, self._assembler
        )
        async with watcher:
            async for context in watcher:
                yield context

    # ── Agent turns ────────────────────────────────────────────────────────────

    async def prepare_turn(
        self,
        registry: ToolRegistry | None = None,
        *,
        model: ModelRef | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> TurnRequest:
        """
        Build the request for the next model call from the current context.

        *model* overrides the model derived from the branch.
        """
        context = await self.context()
        return TurnRequest(
            model=model or context.model,
            messages=context.to_dicts(),
            tools=registry.definitions() if registry is not None and len(registry) else None,
            thinking_level=context.thinking_level,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def run_turn(
        self,
        transport: ModelTransport,
        registry: ToolRegistry | None = None,
        *,
        model: ModelRef | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Entry:
        """
        Stream one assistant turn through *transport* and append the result.

        On cancellation, whatever was streamed so far is appended with
        ``stopReason="aborted"`` before ``CancelledError`` propagates. If the
        transport raises, the partial reply is appended with
        ``stopReason="error"`` and the exception propagates.
        """
        request = await self.prepare_turn(
            registry, model=model, temperature=temperature, max_tokens=max_tokens
        )
        accumulator = TurnAccumulator()
        try:
            async for event in transport.stream(request):
                accumulator.process(event)
        except asyncio.CancelledError:
            await self._persist_partial(accumulator, request.model, "aborted")
            raise
        except Exception as exc:
            self._logger.error("turn_stream_failed", error=str(exc))
            await self._persist_partial(accumulator, request.model, "error")
            raise

        if accumulator.error is not None:
            self._logger.warning("turn_stream_error", error=accumulator.error)
        entry = await self.append_message(accumulator.to_message(request.model))
        self._logger.info(
            "turn_completed",
            entry_id=entry.id,
            stop_reason=accumulator.stop_reason,
            tool_calls=len(accumulator.tool_calls),
        )
        return entry

    async def run_tools(
        self, executor: ToolExecutor, calls: list[ToolCall] | None = None
    ) -> Entry | None:
        """
        Execute tool calls and append their results as one ``toolResult`` message.

        *calls* defaults to the tool calls of the current leaf (when it is an
        assistant message). Returns ``None`` when there is nothing to run.
        """
        if calls is None:
            leaf_id = await self.leaf_id()
            leaf = (
                await self._store.get_entry(leaf_id, session_id=self._session_id)
                if leaf_id is not None
                else None
            )
            if leaf is None or not isinstance(leaf.data, MessagePayload):
                return None
            calls = leaf.data.message.tool_calls
        if not calls:
            return None
        results: list[ToolResult] = []
        for call in calls:
            outcome = await executor.execute(call.name, call.arguments)
            results.append(
                ToolResult(
                    tool_call_id=call.id,
                    tool_name=call.name,
                    output=outcome.output,
                    details=outcome.details,
                    is_error=outcome.is_error,
                )
            )
        return await self.append_tool_results(results)

    async def _persist_partial(
        self, accumulator: TurnAccumulator, model: ModelRef | None, stop_reason: str
    ) -> Entry | None:
        if not accumulator.has_content:
            self._logger.info("turn_interrupted_empty", stop_reason=stop_reason)
            return None
        message = accumulator.to_message(model, stop_reason=stop_reason)
        # Shielded so a second cancellation cannot drop the partial reply.
        entry = await asyncio.shield(self.append_message(message))
        self._logger.info(
            "turn_partial_persisted",
            entry_id=entry.id,
            stop_reason=stop_reason,
            chars=len(accumulator.text),
        )
        return entry

