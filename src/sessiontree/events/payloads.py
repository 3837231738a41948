"""Typed payload definitions for each SessionEvent.

Handlers receive plain dicts; these ``TypedDict`` classes document the keys so
static type checkers and IDEs can help::

    from sessiontree.events.bus import EventBus, SessionEvent
    from sessiontree.events.payloads import EntryAppendedPayload

    def on_append(event: SessionEvent, payload: EntryAppendedPayload) -> None:
        print(payload["entry_id"], payload["type"])

    bus.subscribe(SessionEvent.ENTRY_APPENDED, on_append)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import TypedDict

# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionCreatedPayload(TypedDict):
    """Payload for :attr:`SessionEvent.SESSION_CREATED`."""

    session_id: str
    parent_session_id: str | None


class SessionForkedPayload(TypedDict):
    """Payload for :attr:`SessionEvent.SESSION_FORKED`."""

    session_id: str
    """The new session."""
    source_session_id: str
    leaf_id: str | None
    """Leaf of the new session (the id of the entry the fork was taken at)."""


class SessionImportedPayload(TypedDict):
    """Payload for :attr:`SessionEvent.SESSION_IMPORTED`."""

    session_id: str
    entry_count: int


class SessionRenamedPayload(TypedDict):
    """Payload for :attr:`SessionEvent.SESSION_RENAMED`."""

    session_id: str
    display_name: str | None


class SessionDeletedPayload(TypedDict):
    """Payload for :attr:`SessionEvent.SESSION_DELETED`."""

    session_id: str


class SessionClosedPayload(TypedDict):
    """Payload for :attr:`SessionEvent.SESSION_CLOSED`."""

    session_id: str


# ── Tree mutations ────────────────────────────────────────────────────────────


class EntryAppendedPayload(TypedDict):
    """Payload for :attr:`SessionEvent.ENTRY_APPENDED`.

    The session's leaf already points at ``entry_id`` when this fires.
    """

    session_id: str
    entry_id: str
    parent_id: str | None
    type: str


class LeafMovedPayload(TypedDict):
    """Payload for :attr:`SessionEvent.LEAF_MOVED` (``branch()`` without a new entry)."""

    session_id: str
    leaf_id: str | None


class LabelChangedPayload(TypedDict):
    """Payload for :attr:`SessionEvent.LABEL_CHANGED`. ``label=None`` means cleared."""

    session_id: str
    target_id: str
    label: str | None
