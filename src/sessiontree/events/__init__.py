"""Event bus and typed event payloads."""

from sessiontree.events.bus import EventBus, Handler, SessionEvent
from sessiontree.events.payloads import (
    EntryAppendedPayload,
    LabelChangedPayload,
    LeafMovedPayload,
    SessionClosedPayload,
    SessionCreatedPayload,
    SessionDeletedPayload,
    SessionForkedPayload,
    SessionImportedPayload,
    SessionRenamedPayload,
)

__all__ = [
    "EntryAppendedPayload",
    "EventBus",
    "Handler",
    "LabelChangedPayload",
    "LeafMovedPayload",
    "SessionClosedPayload",
    "SessionCreatedPayload",
    "SessionDeletedPayload",
    "SessionEvent",
    "SessionForkedPayload",
    "SessionImportedPayload",
    "SessionRenamedPayload",
]
