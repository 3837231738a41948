"""Integration tests for ChatSession."""

from __future__ import annotations

import asyncio

import pytest

from sessiontree.events.bus import SessionEvent
from sessiontree.models.entry import (
    BranchSummaryPayload,
    ChatMessage,
    CompactionPayload,
    MessagePayload,
)
from sessiontree.store.entry_store import (
    CrossSessionReferenceError,
    DuplicateIDError,
    EntryNotFoundError,
    SessionNotFoundError,
)


class TestLifecycle:
    async def test_open_closes_owned_store(self, tmp_path):
        """open() creates a session with its own store and releases it on exit."""
        from sessiontree import ChatSession

        async with ChatSession.open(db_path=str(tmp_path / "chat.db")) as session:
            assert session.id.startswith("sess_")
            await session.append_message("hi")
            store = session.store
        with pytest.raises(Exception, match="not initialized"):
            await store.get_session(session.id)

    async def test_load_existing_session(self, tmp_path):
        """A session written by one process-level store can be loaded by another."""
        from sessiontree import ChatSession

        db_path = str(tmp_path / "chat.db")
        session = await ChatSession.create(db_path=db_path, display_name="Saved")
        hi = await session.append_message("hi")
        await session.close()

        loaded = await ChatSession.load(session.id, db_path=db_path)
        try:
            assert (await loaded.info()).display_name == "Saved"
            assert await loaded.leaf_id() == hi.id
        finally:
            await loaded.close()

    async def test_load_missing_session_raises(self, tmp_path):
        """load() raises SessionNotFoundError for an unknown id."""
        from sessiontree import ChatSession

        with pytest.raises(SessionNotFoundError):
            await ChatSession.load("sess_missing", db_path=str(tmp_path / "chat.db"))

    async def test_db_path_and_config_conflict(self, tmp_path, config):
        """Passing db_path together with a configured db_path is rejected."""
        from sessiontree import ChatSession

        with pytest.raises(ValueError, match="db_path"):
            await ChatSession.create(config=config, db_path=str(tmp_path / "other.db"))

    async def test_explicit_duplicate_id(self, store, config):
        """Creating two sessions with one explicit id raises DuplicateIDError."""
        from sessiontree import ChatSession

        first = await ChatSession.create(session_id="sess_FIXED", store=store, config=config)
        with pytest.raises(DuplicateIDError):
            await ChatSession.create(session_id="sess_FIXED", store=store, config=config)
        await first.close()

    async def test_close_publishes_event(self, session, events):
        """close() publishes SESSION_CLOSED once."""
        await session.close()
        await session.close()
        closed = [p for e, p in events if e == SessionEvent.SESSION_CLOSED]
        assert closed == [{"session_id": session.id}]


class TestMutations:
    async def test_append_message_variants(self, session):
        """Strings and structured messages are both appended as message entries."""
        hi = await session.append_message("hi")
        reply = await session.append_message(ChatMessage.from_text("assistant", "hello"))
        assert isinstance(reply.data, MessagePayload)
        assert reply.data.role == "assistant"
        assert reply.data.text == "hello"
        assert reply.parent_id == hi.id
        assert [e.id for e in await session.branch_entries()] == [hi.id, reply.id]

    async def test_branch_and_continue(self, session):
        """branch() rewinds the leaf; the next append is a sibling."""
        hi = await session.append_message("hi")
        first = await session.append_message("hello", role="assistant")
        await session.branch(hi.id)
        second = await session.append_message("hey", role="assistant")

        assert second.parent_id == hi.id
        assert {b.leaf_id for b in await session.branches()} == {first.id, second.id}
        context = await session.context()
        assert [m.text for m in context.messages] == ["hi", "hey"]

    async def test_branch_to_none_starts_new_root(self, session):
        """branch(None) resets to before the first entry."""
        await session.append_message("a")
        await session.branch(None)
        assert (await session.context()).messages == []
        fresh = await session.append_message("b")
        assert fresh.parent_id is None

    async def test_branch_rejects_unknown_and_foreign_entries(self, session, store, config):
        """branch() refuses ids that are missing or owned by another session."""
        from sessiontree import ChatSession

        other = await ChatSession.create(store=store, config=config)
        foreign = await other.append_message("elsewhere")
        with pytest.raises(EntryNotFoundError):
            await session.branch("missing0")
        with pytest.raises(CrossSessionReferenceError):
            await session.branch(foreign.id)
        await other.close()

    async def test_branch_with_summary(self, session):
        """branch_with_summary records the abandoned path beneath the rewind point."""
        hi = await session.append_message("hi")
        await session.append_message("bad answer", role="assistant")
        summary = await session.branch_with_summary(hi.id, "the first answer was off")

        assert summary.parent_id == hi.id
        assert isinstance(summary.data, BranchSummaryPayload)
        assert summary.data.from_id == hi.id
        assert await session.leaf_id() == summary.id
        assert [m.text for m in (await session.context()).messages] == ["hi"]

    async def test_branch_with_summary_from_root(self, session):
        """Rewinding to before the first entry records fromId 'root'."""
        await session.append_message("hi")
        summary = await session.branch_with_summary(None, "start over")
        assert summary.parent_id is None
        assert summary.data.from_id == "root"

    async def test_compact(self, session):
        """compact() appends a compaction entry and the context starts with its summary."""
        hi = await session.append_message("hi")
        await session.append_message("hello", role="assistant")
        keep = await session.append_message("keep me")
        entries_before = await session.store.get_session_entries(session.id)

        compaction_id = await session.compact("we said hello", keep.id)
        tail = await session.append_message("after", role="assistant")

        compaction = await session.store.get_entry(compaction_id, session_id=session.id)
        assert isinstance(compaction.data, CompactionPayload)
        assert compaction.data.tokens_before > 0
        assert compaction.data.first_kept_entry_id == keep.id
        # Nothing else was touched.
        assert (await session.store.get_session_entries(session.id))[:3] == entries_before

        context = await session.context()
        assert context.messages[0].kind == "compaction_summary"
        assert [m.entry_id for m in context.messages[1:]] == [keep.id, tail.id]
        assert hi.id not in [m.entry_id for m in context.messages]

    async def test_compact_explicit_tokens(self, session):
        """An explicit tokens_before is stored as given."""
        hi = await session.append_message("hi")
        compaction_id = await session.compact("s", hi.id, tokens_before=1234, from_hook=True)
        entry = await session.store.get_entry(compaction_id)
        assert entry.data.tokens_before == 1234
        assert entry.data.from_hook is True

    async def test_fork(self, session):
        """fork() copies the active path into a new session and leaves the source alone."""
        hi = await session.append_message("hi")
        hello = await session.append_message("hello", role="assistant")
        await session.branch(hi.id)
        await session.append_message("other")

        forked = await session.fork(hello.id, working_context="~/fork")
        info = await forked.info()
        assert info.parent_session_id == session.id
        assert info.working_context == "~/fork"
        assert [e.id for e in await forked.branch_entries()] == [hi.id, hello.id]

        await forked.append_message("only in the fork")
        assert len(await session.store.get_session_entries(session.id)) == 3
        await forked.close()

    async def test_labels_in_tree(self, session):
        """Labels show up on tree nodes and can be cleared."""
        hi = await session.append_message("hi")
        reply = await session.append_message("hello", role="assistant")
        await session.label(hi.id, "start")
        await session.label(reply.id, "answer")
        await session.label(reply.id, None)

        (root,) = await session.tree()
        assert root.entry.id == hi.id
        assert root.label == "start"
        assert [child.entry.id for child in root.children] == [reply.id]
        assert root.children[0].label is None

    async def test_tree_shape(self, session):
        """tree() nests children in creation order."""
        hi = await session.append_message("hi")
        a = await session.append_message("a", role="assistant")
        await session.branch(hi.id)
        b = await session.append_message("b", role="assistant")
        (root,) = await session.tree()
        assert [c.entry.id for c in root.children] == [a.id, b.id]

    async def test_rename_and_delete(self, session, store, events):
        """rename() updates the display name; delete() removes the session."""
        await session.append_message("hi")
        await session.rename("Chat about hi")
        assert (await session.info()).display_name == "Chat about hi"

        await session.delete()
        with pytest.raises(SessionNotFoundError):
            await store.get_session(session.id)
        published = [e for e, _ in events]
        assert SessionEvent.SESSION_DELETED in published
        assert SessionEvent.SESSION_CLOSED in published

    async def test_settings_entries(self, session):
        """Model and thinking-level entries drive the assembled settings."""
        await session.append_model_change("anthropic", "claude-x")
        await session.append_thinking_level_change("high")
        await session.append_message("hi")
        context = await session.context()
        assert context.thinking_level == "high"
        assert str(context.model) == "anthropic/claude-x"

    async def test_custom_entries(self, session):
        """Custom state stays out of the context; display-worthy messages enter it."""
        await session.append_custom("ext-state", {"cursor": 3})
        await session.append_custom_message("ext", "visible note")
        await session.append_custom_message("ext", "hidden note", display=False)
        context = await session.context()
        assert [m.text for m in context.messages] == ["visible note"]


    async def test_export_and_import(self, session, tmp_path):
        """A session exported by one store can be reopened from another database."""
        from sessiontree import ChatSession

        hi = await session.append_message("hi")
        await session.append_message("hello", role="assistant")
        await session.label(hi.id, "start")
        text = await session.export()

        restored = await ChatSession.import_jsonl(text, db_path=str(tmp_path / "copy.db"))
        try:
            assert restored.id == session.id
            assert [e.id for e in await restored.branch_entries()] == [
                e.id for e in await session.branch_entries()
            ]
            (root,) = await restored.tree()
            assert root.label == "start"
        finally:
            await restored.close()


class TestWatch:
    async def test_watch_yields_on_every_write(self, session):
        """watch() yields the initial context and a fresh one after each write."""
        seen: list[list[str]] = []

        async def consume():
            async for context in session.watch():
                seen.append([m.text for m in context.messages])
                if len(seen) == 3:
                    break

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        await session.append_message("one")
        await asyncio.sleep(0.05)
        await session.append_message("two", role="assistant")
        await asyncio.wait_for(task, timeout=2)

        assert seen[0] == []
        assert seen[-1] == ["one", "two"]

    async def test_watch_ends_on_close(self, session):
        """Closing the session ends the watch loop."""
        count = 0

        async def consume():
            nonlocal count
            async for _ in session.watch():
                count += 1

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        await session.close()
        await asyncio.wait_for(task, timeout=2)
        assert count == 1

    async def test_watch_ignores_other_sessions(self, session, store, config):
        """Writes to another session do not wake the watcher."""
        from sessiontree import ChatSession

        other = await ChatSession.create(store=store, config=config)
        count = 0

        async def consume():
            nonlocal count
            async for _ in session.watch():
                count += 1

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        await other.append_message("elsewhere")
        await asyncio.sleep(0.05)
        assert count == 1
        await session.close()
        await asyncio.wait_for(task, timeout=2)
        await other.close()
