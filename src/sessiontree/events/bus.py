"""In-process pub/sub event bus for session-tree change notifications."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["SessionEvent", dict[str, Any]], None | Awaitable[None]]


class SessionEvent(StrEnum):
    """All event types published by sessiontree components.

    Typed payload definitions for each event live in
    :mod:`sessiontree.events.payloads`.

    Store-level events (everything except ``SESSION_CLOSED``) are published by
    :class:`~sessiontree.store.entry_store.EntryStore` *after* the write
    transaction commits, so a handler that reads the store always sees the
    state the event describes.

    **Payload schemas by event:**

    ``SESSION_CREATED``
        ``session_id: str``, ``parent_session_id: str | None``

    ``SESSION_FORKED``
        ``session_id: str``, ``source_session_id: str``, ``leaf_id: str | None``

    ``SESSION_IMPORTED``
        ``session_id: str``, ``entry_count: int``

    ``SESSION_RENAMED``
        ``session_id: str``, ``display_name: str | None``

    ``SESSION_DELETED``, ``SESSION_CLOSED``
        ``session_id: str``

    ``ENTRY_APPENDED``
        ``session_id: str``, ``entry_id: str``, ``parent_id: str | None``,
        ``type: str``

    ``LEAF_MOVED``
        ``session_id: str``, ``leaf_id: str | None``

    ``LABEL_CHANGED``
        ``session_id: str``, ``target_id: str``, ``label: str | None``
    """

    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_FORKED = "session.forked"
    SESSION_IMPORTED = "session.imported"
    SESSION_RENAMED = "session.renamed"
    SESSION_DELETED = "session.deleted"
    SESSION_CLOSED = "session.closed"

    # Tree mutations
    ENTRY_APPENDED = "entry.appended"
    LEAF_MOVED = "leaf.moved"
    LABEL_CHANGED = "label.changed"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    Design decisions:
    - Sync handlers are called inline within ``publish()``.
    - Async handlers are scheduled via ``asyncio.create_task()``; the bus keeps
      a reference until each task finishes and logs its exception.
    - Handler exceptions are logged but never propagate to the publisher.
    - Each ``EntryStore`` owns one ``EventBus``; every ``ChatSession`` opened
      on that store shares it.

    Example::

        bus = EventBus()

        def on_append(event, payload):
            print(f"{payload['type']} appended to {payload['session_id']}")

        bus.subscribe(SessionEvent.ENTRY_APPENDED, on_append)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[SessionEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = logger or structlog.get_logger("sessiontree.events")

    def subscribe(self, event: SessionEvent, handler: Handler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event: The event type to listen for.
            handler: Callable accepting ``(event, payload)``. May be sync or async.
        """
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for ALL event types."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: SessionEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def unsubscribe_all(self, handler: Handler) -> None:
        """Remove a handler registered with :meth:`subscribe_all`. No-op if not found."""
        if handler in self._global_handlers:
            self._global_handlers.remove(handler)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                "event_handler_error",
                handler=task.get_name(),
                error=str(exc),
            )

    def publish(self, event: SessionEvent, payload: dict[str, Any]) -> None:
        """
        Publish an event to all registered handlers.

        Sync handlers are called immediately in registration order.
        Async handlers are scheduled as background tasks (non-blocking).
        Exceptions from any handler are logged, never raised to the publisher.
        """
        all_handlers = list(self._handlers.get(event, [])) + list(self._global_handlers)
        for handler in all_handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        result.close()
                        self._logger.warning(
                            "event_async_handler_skipped",
                            event=str(event),
                            handler=getattr(handler, "__qualname__", repr(handler)),
                        )
                        continue
                    task = loop.create_task(
                        result, name=getattr(handler, "__qualname__", repr(handler))
                    )
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception as exc:
                self._logger.error(
                    "event_handler_error",
                    event=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
