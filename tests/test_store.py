"""Tests for EntryStore."""

from __future__ import annotations

import asyncio
import random

import aiosqlite
import pytest

from sessiontree.events.bus import SessionEvent
from sessiontree.models.config import StoreConfig
from sessiontree.models.entry import (
    CompactionPayload,
    Entry,
    MessagePayload,
    ModelChangePayload,
)
from sessiontree.store.entry_store import (
    BrokenAncestryError,
    CrossSessionReferenceError,
    CycleOrDepthExceededError,
    DuplicateIDError,
    EntryNotFoundError,
    EntryStore,
    MalformedEntryError,
    SessionNotFoundError,
    SessionTreeStoreError,
    StorageError,
)
from tests.conftest import assistant, insert_raw, point_leaf, user


class TestSessions:
    async def test_create_session(self, store):
        """Creating a session returns a Session with a null leaf."""
        session = await store.create_session("~/proj", display_name="Demo")
        assert session.id.startswith("sess_")
        assert session.working_context == "~/proj"
        assert session.display_name == "Demo"
        assert session.leaf_id is None

    async def test_create_session_duplicate_raises(self, store):
        """Duplicate session ID raises DuplicateIDError."""
        await store.create_session(session_id="sess_dup")
        with pytest.raises(DuplicateIDError):
            await store.create_session(session_id="sess_dup")

    async def test_get_session_not_found(self, store):
        """get_session raises SessionNotFoundError for a missing session."""
        with pytest.raises(SessionNotFoundError):
            await store.get_session("sess_nonexistent")

    async def test_parent_session_need_not_exist(self, store):
        """parent_session_id is provenance only and is not checked."""
        session = await store.create_session(parent_session_id="sess_gone")
        assert (await store.get_session(session.id)).parent_session_id == "sess_gone"

    async def test_list_sessions_aggregates(self, store, session_id):
        """Message count and first user message are aggregated from entries."""
        await store.append_entry(session_id, ModelChangePayload(provider="p", model_id="m"))
        await store.append_entry(session_id, user("hi"))
        await store.append_entry(session_id, assistant("hello"))
        (summary,) = await store.list_sessions()
        assert summary.id == session_id
        assert summary.message_count == 2
        assert summary.first_message == "hi"
        assert summary.last_activity >= summary.created_at

    async def test_list_sessions_most_recent_activity_first(self, store):
        """Sessions are ordered by their last message, not their creation."""
        older = await store.create_session(session_id="sess_A")
        newer = await store.create_session(session_id="sess_B")
        await store.append_entry(newer.id, user("first"))
        await asyncio.sleep(0.01)
        await store.append_entry(older.id, user("later"))
        ids = [s.id for s in await store.list_sessions()]
        assert ids == ["sess_A", "sess_B"]

    async def test_rename_session(self, store, session_id, events):
        """rename_session updates display_name and publishes SESSION_RENAMED."""
        await store.rename_session(session_id, "Renamed")
        assert (await store.get_session(session_id)).display_name == "Renamed"
        assert (SessionEvent.SESSION_RENAMED, {"session_id": session_id, "display_name": "Renamed"}) in events

    async def test_rename_missing_session_raises(self, store):
        """Renaming an unknown session raises SessionNotFoundError."""
        with pytest.raises(SessionNotFoundError):
            await store.rename_session("sess_missing", "x")

    async def test_delete_session_cascades(self, store, session_id):
        """Deleting a session removes its entries, labels and search rows."""
        entry = await store.append_entry(session_id, user("needle in haystack"))
        await store.add_label(session_id, entry.id, "bookmark")
        await store.delete_session(session_id)

        with pytest.raises(SessionNotFoundError):
            await store.get_session(session_id)
        assert await store.get_entry(entry.id) is None
        assert await store.get_label_records(session_id) == []
        assert await store.search("needle") == []

    async def test_delete_missing_session_raises(self, store):
        """delete_session raises SessionNotFoundError for an unknown id."""
        with pytest.raises(SessionNotFoundError):
            await store.delete_session("sess_missing")

    async def test_uninitialized_store_raises(self, config):
        """Operations before initialize() raise a clear store error."""
        fresh = EntryStore(config.store)
        with pytest.raises(SessionTreeStoreError, match="not initialized"):
            await fresh.get_session("sess_x")
        with pytest.raises(SessionTreeStoreError, match="not initialized"):
            await fresh.create_session()

    async def test_closed_store_rejects_writes(self, config):
        """After close() a write fails with a store error instead of touching SQLite."""
        private = EntryStore(config.store)
        await private.initialize()
        session = await private.create_session()
        await private.close()
        with pytest.raises(SessionTreeStoreError, match="not initialized"):
            await private.append_entry(session.id, user("late"))


class TestAppend:
    async def test_append_first_entry_is_root(self, store, session_id):
        """The first entry has no parent and becomes the leaf."""
        entry = await store.append_entry(session_id, user("hi"))
        assert entry.parent_id is None
        assert len(entry.id) == 8
        assert (await store.get_session(session_id)).leaf_id == entry.id

    async def test_append_links_to_leaf(self, store, session_id):
        """Each append is a child of the previous leaf."""
        e1 = await store.append_entry(session_id, user("hi"))
        e2 = await store.append_entry(session_id, assistant("hello"))
        assert e2.parent_id == e1.id
        assert (await store.get_session(session_id)).leaf_id == e2.id

    async def test_append_unknown_session_raises(self, store):
        """Appending to an unknown session raises SessionNotFoundError."""
        with pytest.raises(SessionNotFoundError):
            await store.append_entry("sess_missing", user("hi"))

    async def test_created_at_is_monotonic(self, store, session_id):
        """Timestamps never decrease within a session."""
        entries = [await store.append_entry(session_id, user(str(i))) for i in range(10)]
        stamps = [e.created_at for e in entries]
        assert stamps == sorted(stamps)

    async def test_append_publishes_after_commit(self, store, session_id):
        """ENTRY_APPENDED handlers already see the committed entry and leaf."""
        seen: list[str | None] = []

        async def on_append(event, payload):
            seen.append((await store.get_session(payload["session_id"])).leaf_id)

        store.event_bus.subscribe(SessionEvent.ENTRY_APPENDED, on_append)
        entry = await store.append_entry(session_id, user("hi"))
        await asyncio.sleep(0)
        await asyncio.sleep(0.01)
        assert seen == [entry.id]

    async def test_append_falls_back_to_root_for_vanished_leaf(self, store, session_id):
        """A leaf pointing at a missing entry makes the next append a new root."""
        await point_leaf(store, session_id, "ghost000")
        entry = await store.append_entry(session_id, user("recovered"))
        assert entry.parent_id is None
        assert (await store.get_session(session_id)).leaf_id == entry.id

    async def test_append_entry_at(self, store, session_id):
        """append_entry_at rewinds and appends in one step."""
        e1 = await store.append_entry(session_id, user("hi"))
        await store.append_entry(session_id, assistant("hello"))
        e3 = await store.append_entry_at(session_id, e1.id, user("alt"))
        assert e3.parent_id == e1.id
        assert (await store.get_session(session_id)).leaf_id == e3.id

    async def test_append_entry_at_unknown_parent_raises(self, store, session_id):
        """append_entry_at rejects a parent that does not exist, writing nothing."""
        with pytest.raises(EntryNotFoundError):
            await store.append_entry_at(session_id, "nope0000", user("x"))
        assert await store.get_session_entries(session_id) == []


class TestAtomicity:
    async def test_crash_between_insert_and_leaf_update(self, store, session_id, monkeypatch):
        """An interrupted append leaves neither an orphan entry nor a moved leaf."""
        e1 = await store.append_entry(session_id, user("hi"))

        async def crash(*args, **kwargs):
            raise RuntimeError("simulated crash")

        monkeypatch.setattr(store, "_update_leaf", crash)
        with pytest.raises(RuntimeError, match="simulated crash"):
            await store.append_entry(session_id, assistant("lost"))
        monkeypatch.undo()

        assert [e.id for e in await store.get_session_entries(session_id)] == [e1.id]
        assert (await store.get_session(session_id)).leaf_id == e1.id
        # The store is still usable.
        e2 = await store.append_entry(session_id, assistant("hello"))
        assert e2.parent_id == e1.id

    async def test_database_error_is_wrapped_and_rolled_back(self, store, session_id, monkeypatch):
        """sqlite errors surface as retryable StorageError and nothing is committed."""

        async def failing(*args, **kwargs):
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_update_leaf", failing)
        with pytest.raises(StorageError) as exc_info:
            await store.append_entry(session_id, user("hi"))
        assert exc_info.value.retryable is True
        monkeypatch.undo()

        assert await store.get_session_entries(session_id) == []
        assert (await store.get_session(session_id)).leaf_id is None

    async def test_no_event_for_failed_write(self, store, session_id, events, monkeypatch):
        """Events are only published for committed writes."""

        async def crash(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(store, "_update_leaf", crash)
        with pytest.raises(RuntimeError):
            await store.append_entry(session_id, user("hi"))
        assert not [e for e, _ in events if e == SessionEvent.ENTRY_APPENDED]


class TestBranching:
    async def test_scenario_linear_ancestry(self, store, session_id):
        """hi → hello reconstructs root-first; list shows two messages."""
        e1 = await store.append_entry(session_id, MessagePayload(role="user", text="hi"))
        e2 = await store.append_entry(session_id, MessagePayload(role="assistant", text="hello"))
        assert e2.parent_id == e1.id
        assert await store.reconstruct_ancestry(e2.id) == [e1, e2]
        (summary,) = await store.list_sessions()
        assert summary.message_count == 2
        assert summary.first_message == "hi"

    async def test_scenario_rewind_creates_sibling(self, store, session_id):
        """Rewinding to E1 and appending gives E1 two children in creation order."""
        e1 = await store.append_entry(session_id, MessagePayload(role="user", text="hi"))
        e2 = await store.append_entry(session_id, MessagePayload(role="assistant", text="hello"))
        await store.set_leaf(session_id, e1.id)
        e3 = await store.append_entry(session_id, MessagePayload(role="user", text="alt"))

        assert e3.parent_id == e1.id
        assert [c.id for c in await store.get_children(e1.id)] == [e2.id, e3.id]
        assert (await store.get_session(session_id)).leaf_id == e3.id

    async def test_set_leaf_none(self, store, session_id):
        """A null leaf makes the next append a second root."""
        await store.append_entry(session_id, user("a"))
        await store.set_leaf(session_id, None)
        second = await store.append_entry(session_id, user("b"))
        assert second.parent_id is None
        assert len(await store.get_roots(session_id)) == 2

    async def test_set_leaf_unknown_entry_raises(self, store, session_id):
        """set_leaf rejects ids that do not exist."""
        with pytest.raises(EntryNotFoundError):
            await store.set_leaf(session_id, "missing0")

    async def test_set_leaf_cross_session_raises(self, store, session_id):
        """set_leaf rejects another session's entry and leaves the leaf alone."""
        other = await store.create_session(session_id="sess_OTHER")
        foreign = await store.append_entry(other.id, user("elsewhere"))
        mine = await store.append_entry(session_id, user("here"))

        with pytest.raises(CrossSessionReferenceError) as exc_info:
            await store.set_leaf(session_id, foreign.id)
        assert exc_info.value.owner_session_id == other.id
        assert (await store.get_session(session_id)).leaf_id == mine.id

    async def test_list_branches(self, store, session_id):
        """Every tip is listed newest first with its path length."""
        e1 = await store.append_entry(session_id, user("hi"))
        await store.append_entry(session_id, assistant("one"))
        await store.set_leaf(session_id, e1.id)
        await asyncio.sleep(0.002)
        tip = await store.append_entry(session_id, assistant("two"))

        branches = await store.list_branches(session_id)
        assert [b.leaf_id for b in branches][0] == tip.id
        assert [b.entry_count for b in branches] == [2, 2]
        assert branches[0].last_text == "two"
        assert await store.latest_leaf(session_id) == tip.id

    async def test_entry_ids_unique_in_session(self, store, session_id):
        """Entry ids never repeat within a session."""
        ids = [(await store.append_entry(session_id, user(str(i)))).id for i in range(50)]
        assert len(set(ids)) == 50


class TestProperties:
    async def test_entries_never_change(self, store, session_id):
        """Entries read back identically after further appends, rewinds and labels."""
        e1 = await store.append_entry(session_id, user("hi"))
        e2 = await store.append_entry(session_id, assistant("hello"))
        before = [await store.get_entry(e1.id), await store.get_entry(e2.id)]

        await store.set_leaf(session_id, e1.id)
        await store.append_entry(session_id, user("alt"))
        await store.add_label(session_id, e2.id, "keep")
        await store.append_entry(
            session_id, CompactionPayload(summary="s", first_kept_entry_id=e1.id)
        )
        after = [await store.get_entry(e1.id), await store.get_entry(e2.id)]
        assert before == after == [e1, e2]

    async def test_random_operations_keep_tree_and_leaf_valid(self, store, session_id):
        """One root, finite parent chains and a valid leaf after random operations."""
        rng = random.Random(7)
        ids: list[str] = []
        for step in range(80):
            choice = rng.random()
            if ids and choice < 0.3:
                await store.set_leaf(session_id, rng.choice(ids))
            else:
                ids.append((await store.append_entry(session_id, user(f"m{step}"))).id)

            leaf = (await store.get_session(session_id)).leaf_id
            assert leaf is None or leaf in ids

        entries = await store.get_session_entries(session_id)
        parents = {e.id: e.parent_id for e in entries}
        roots = [e for e in entries if e.parent_id is None]
        assert len(roots) == 1
        for entry in entries:
            current, steps = entry.id, 0
            while parents[current] is not None:
                current = parents[current]
                steps += 1
                assert steps <= len(entries)
            assert current == roots[0].id


class TestAncestryFailures:
    async def test_unknown_leaf_raises(self, store, session_id):
        """Reconstructing from an unknown id raises EntryNotFoundError."""
        with pytest.raises(EntryNotFoundError):
            await store.reconstruct_ancestry("missing0", session_id=session_id)

    async def test_broken_parent_link(self, store, session_id):
        """A missing ancestor raises BrokenAncestryError naming how far it got."""
        await insert_raw(store, session_id, "child001", "ghost001", user("orphan").to_wire())
        with pytest.raises(BrokenAncestryError) as exc_info:
            await store.reconstruct_ancestry("child001")
        assert exc_info.value.entry_id == "ghost001"
        assert exc_info.value.reached_entry_id == "child001"
        assert isinstance(exc_info.value, EntryNotFoundError)

    async def test_cycle_is_detected(self, tmp_path):
        """A cyclic parent chain fails with CycleOrDepthExceededError instead of looping."""
        capped = EntryStore(StoreConfig(db_path=str(tmp_path / "cycle.db"), max_ancestry_depth=10))
        await capped.initialize()
        try:
            session = await capped.create_session()
            await insert_raw(capped, session.id, "aaaaaaaa", "bbbbbbbb", user("a").to_wire())
            await insert_raw(capped, session.id, "bbbbbbbb", "aaaaaaaa", user("b").to_wire())
            with pytest.raises(CycleOrDepthExceededError) as exc_info:
                await capped.reconstruct_ancestry("aaaaaaaa", session_id=session.id)
            assert exc_info.value.depth == 10
        finally:
            await capped.close()

    async def test_depth_cap(self, tmp_path):
        """Paths within the cap reconstruct; longer ones fail loudly."""
        capped = EntryStore(StoreConfig(db_path=str(tmp_path / "deep.db"), max_ancestry_depth=5))
        await capped.initialize()
        try:
            session = await capped.create_session()
            entries = [await capped.append_entry(session.id, user(str(i))) for i in range(8)]
            assert len(await capped.reconstruct_ancestry(entries[5].id)) == 6
            with pytest.raises(CycleOrDepthExceededError):
                await capped.reconstruct_ancestry(entries[7].id)
        finally:
            await capped.close()

    async def test_malformed_payload(self, store, session_id):
        """Undecodable JSON raises MalformedEntryError naming the entry and the last good one."""
        good = await store.append_entry(session_id, user("fine"))
        await insert_raw(store, session_id, "badjson1", good.id, "{not json")
        with pytest.raises(MalformedEntryError) as exc_info:
            await store.reconstruct_ancestry("badjson1")
        assert exc_info.value.entry_id == "badjson1"
        assert exc_info.value.reached_entry_id == good.id

    async def test_invalid_payload_shape(self, store, session_id):
        """Valid JSON that fails validation is also malformed."""
        await insert_raw(store, session_id, "badshape", None, {"role": "narrator"})
        with pytest.raises(MalformedEntryError):
            await store.get_entry("badshape")


class TestForkAndBulk:
    async def test_fork_copies_path(self, store, session_id, events):
        """fork_session copies the root→leaf path verbatim into a new session."""
        e1 = await store.append_entry(session_id, user("hi"))
        e2 = await store.append_entry(session_id, assistant("hello"))
        await store.set_leaf(session_id, e1.id)
        await store.append_entry(session_id, user("alt"))

        forked = await store.fork_session(session_id, e2.id, working_context="~/copy")
        assert forked.parent_session_id == session_id
        assert forked.leaf_id == e2.id
        assert forked.working_context == "~/copy"

        copied = await store.get_session_entries(forked.id)
        assert [(e.id, e.parent_id, e.data) for e in copied] == [
            (e1.id, None, e1.data),
            (e2.id, e1.id, e2.data),
        ]
        assert len(await store.get_session_entries(session_id)) == 3
        assert any(e == SessionEvent.SESSION_FORKED for e, _ in events)

    async def test_fork_shared_ids_resolve_per_session(self, store, session_id):
        """Forked entries share ids with the source; lookups stay session-scoped."""
        e1 = await store.append_entry(session_id, user("hi"))
        forked = await store.fork_session(session_id, e1.id)
        await store.append_entry(forked.id, assistant("only in fork"))

        assert (await store.get_entry(e1.id)).session_id == session_id
        assert (await store.get_entry(e1.id, session_id=forked.id)).session_id == forked.id
        assert await store.get_children(e1.id, session_id=session_id) == []
        assert len(await store.get_children(e1.id, session_id=forked.id)) == 1

    async def test_fork_of_empty_path(self, store, session_id):
        """Forking with no leaf creates an empty session."""
        forked = await store.fork_session(session_id, None)
        assert forked.leaf_id is None
        assert await store.get_session_entries(forked.id) == []

    async def test_fork_foreign_leaf_raises(self, store, session_id):
        """A leaf from another session is rejected before anything is written."""
        other = await store.create_session(session_id="sess_OTHER")
        foreign = await store.append_entry(other.id, user("x"))
        with pytest.raises(CrossSessionReferenceError):
            await store.fork_session(session_id, foreign.id)
        assert len(await store.list_sessions()) == 2

    async def test_insert_entries_any_order(self, store, session_id):
        """Bulk insert accepts children before parents."""
        root = Entry(id="r0000000", session_id=session_id, data=user("root"))
        child = Entry(id="c0000000", session_id=session_id, parent_id=root.id, data=user("child"))
        await store.insert_entries(session_id, [child, root], child.id)
        assert [e.id for e in await store.reconstruct_ancestry(child.id)] == [root.id, child.id]

    async def test_insert_entries_orphan_rolls_back(self, store, session_id):
        """An entry whose parent is nowhere to be found aborts the whole batch."""
        ok = Entry(id="ok000000", session_id=session_id, data=user("ok"))
        orphan = Entry(id="or000000", session_id=session_id, parent_id="nowhere0", data=user("x"))
        with pytest.raises(BrokenAncestryError):
            await store.insert_entries(session_id, [ok, orphan], None)
        assert await store.get_session_entries(session_id) == []


class TestLabels:
    async def test_label_latest_wins(self, store, session_id, events):
        """The newest label record for a target is its current label."""
        entry = await store.append_entry(session_id, user("hi"))
        await store.add_label(session_id, entry.id, "first")
        await store.add_label(session_id, entry.id, "second")
        assert await store.get_label(session_id, entry.id) == "second"
        assert await store.get_labels(session_id) == {entry.id: "second"}
        assert len(await store.get_label_records(session_id)) == 2
        assert (
            SessionEvent.LABEL_CHANGED,
            {"session_id": session_id, "target_id": entry.id, "label": "second"},
        ) in events

    @pytest.mark.parametrize("cleared", [None, ""])
    async def test_label_cleared(self, store, session_id, cleared):
        """None or empty string clears a label."""
        entry = await store.append_entry(session_id, user("hi"))
        await store.add_label(session_id, entry.id, "tag")
        await store.add_label(session_id, entry.id, cleared)
        assert await store.get_label(session_id, entry.id) is None
        assert await store.get_labels(session_id) == {}

    async def test_label_cross_session_raises(self, store, session_id):
        """Labels cannot target another session's entries."""
        other = await store.create_session(session_id="sess_OTHER")
        foreign = await store.append_entry(other.id, user("x"))
        with pytest.raises(CrossSessionReferenceError):
            await store.add_label(session_id, foreign.id, "nope")


class TestConcurrency:
    async def test_concurrent_appends_are_serialised(self, store, session_id):
        """Concurrent appends to one session form a single linear chain."""
        await asyncio.gather(*(store.append_entry(session_id, user(str(i))) for i in range(25)))
        entries = await store.get_session_entries(session_id)
        assert len(entries) == 25
        assert len(await store.list_branches(session_id)) == 1
        leaf = (await store.get_session(session_id)).leaf_id
        assert len(await store.reconstruct_ancestry(leaf)) == 25

    async def test_readers_only_see_committed_state(self, store, session_id):
        """Reads interleaved with writes always find the leaf's entry."""

        async def writer():
            for i in range(30):
                await store.append_entry(session_id, user(str(i)))

        async def reader():
            for _ in range(30):
                leaf = (await store.get_session(session_id)).leaf_id
                if leaf is not None:
                    path = await store.reconstruct_ancestry(leaf, session_id=session_id)
                    assert path[-1].id == leaf
                await asyncio.sleep(0)

        await asyncio.gather(writer(), reader(), reader())

    async def test_two_stores_share_pool(self, config, pool, store, session_id):
        """A second store on the same pool sees the first store's writes."""
        second = EntryStore(config.store, pool=pool)
        await second.initialize()
        entry = await store.append_entry(session_id, user("shared"))
        assert (await second.get_entry(entry.id)) == entry
