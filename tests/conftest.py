"""Shared fixtures for sessiontree tests."""

from __future__ import annotations

import json
from typing import Any

import pytest
import pytest_asyncio

from sessiontree.events.bus import SessionEvent
from sessiontree.models.config import SessionTreeConfig, StoreConfig
from sessiontree.models.entry import ChatMessage, MessagePayload, now_ms
from sessiontree.session import ChatSession
from sessiontree.store.entry_store import EntryStore
from sessiontree.store.pool import StorePool
from sessiontree.tokens.estimator import TokenEstimator


@pytest.fixture
def config(tmp_path):
    """SessionTreeConfig with a temp database path."""
    return SessionTreeConfig(store=StoreConfig(db_path=str(tmp_path / "test.db")))


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def store(config, pool):
    """Initialized EntryStore backed by a temp SQLite database (pool-managed)."""
    s = EntryStore(config.store, pool=pool)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def events(store):
    """Every event published on the store's bus, as ``(event, payload)`` tuples."""
    collected: list[tuple[SessionEvent, dict[str, Any]]] = []

    def _collect(event: SessionEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    store.event_bus.subscribe_all(_collect)
    return collected


@pytest.fixture
def estimator():
    """TokenEstimator using heuristic only (no tiktoken required in tests)."""
    e = TokenEstimator()
    e._force_heuristic = True
    return e


@pytest_asyncio.fixture
async def session(store, config, estimator):
    """A fresh ChatSession sharing the test store."""
    s = await ChatSession.create(store=store, config=config)
    s._estimator = estimator
    yield s
    await s.close()


@pytest_asyncio.fixture
async def session_id(store):
    """A pre-created session ID in the store."""
    created = await store.create_session("~/test", session_id="sess_TEST01")
    return created.id


def user(text: str) -> MessagePayload:
    """Helper to create a user message payload."""
    return MessagePayload.from_message(ChatMessage.from_text("user", text))


def assistant(text: str, *, provider: str | None = None, model: str | None = None) -> MessagePayload:
    """Helper to create an assistant message payload."""
    return MessagePayload.from_message(
        ChatMessage.from_text("assistant", text, provider=provider, model=model)
    )


async def insert_raw(
    store: EntryStore,
    session_id: str,
    entry_id: str,
    parent_id: str | None,
    data: str | dict[str, Any],
    entry_type: str = "message",
) -> None:
    """Write an entry row directly, bypassing validation and foreign keys."""
    conn = store._conn_or_raise()
    if not isinstance(data, str):
        data = json.dumps(data)
    await conn.execute("PRAGMA foreign_keys=OFF")
    try:
        await conn.execute(
            "INSERT INTO entries (session_id, id, parent_id, type, created_at, data) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (session_id, entry_id, parent_id, entry_type, now_ms(), data),
        )
        await conn.commit()
    finally:
        await conn.execute("PRAGMA foreign_keys=ON")


async def point_leaf(store: EntryStore, session_id: str, leaf_id: str | None) -> None:
    """Move a session's leaf directly, without existence checks."""
    conn = store._conn_or_raise()
    await conn.execute("UPDATE sessions SET leaf_id = ? WHERE id = ?", (leaf_id, session_id))
    await conn.commit()
