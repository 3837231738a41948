"""Live (recompute-on-write) view of a session's assembled context."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from sessiontree.context.assembler import AssembledContext, ContextAssembler
from sessiontree.context.reconstructor import BranchReconstructor
from sessiontree.events.bus import EventBus, SessionEvent

_TERMINAL_EVENTS = frozenset({SessionEvent.SESSION_DELETED, SessionEvent.SESSION_CLOSED})


class BranchWatcher:
    """
    Async iterator yielding a fresh :class:`AssembledContext` after every write.

    The first iteration yields the current context immediately. Afterwards
    each iteration waits for a change notification for the watched session
    and then runs a full reconstruct + assemble. Notifications that arrive
    while a recompute is running are coalesced into one further iteration.
    Iteration ends when the session is deleted or closed, or :meth:`stop`
    is called.

    Usage::

        async with BranchWatcher(store.event_bus, session_id, reconstructor, assembler) as w:
            async for context in w:
                render(context.messages)
    """

    def __init__(
        self,
        event_bus: EventBus,
        session_id: str,
        reconstructor: BranchReconstructor,
        assembler: ContextAssembler,
    ) -> None:
        self.session_id = session_id
        self._bus = event_bus
        self._reconstructor = reconstructor
        self._assembler = assembler
        self._changed = asyncio.Event()
        self._stopped = False
        self._primed = False
        self._logger = structlog.get_logger("sessiontree.live").bind(session_id=session_id)

    async def __aenter__(self) -> BranchWatcher:
        self._bus.subscribe_all(self._on_event)
        return self

    async def __aexit__(self, *args: Any) -> None:
        self._bus.unsubscribe_all(self._on_event)

    def __aiter__(self) -> BranchWatcher:
        return self

    async def __anext__(self) -> AssembledContext:
        if self._primed:
            await self._changed.wait()
        if self._stopped:
            raise StopAsyncIteration
        self._primed = True
        self._changed.clear()
        return await self.current()

    async def current(self) -> AssembledContext:
        """Reconstruct and assemble the session's current branch."""
        branch = await self._reconstructor.reconstruct(self.session_id)
        return self._assembler.assemble(branch)

    def stop(self) -> None:
        """End iteration at the next wait point."""
        self._stopped = True
        self._changed.set()

    def _on_event(self, event: SessionEvent, payload: dict[str, Any]) -> None:
        if payload.get("session_id") != self.session_id:
            return
        if event in _TERMINAL_EVENTS:
            self._logger.debug("watch_ended", event=str(event))
            self._stopped = True
        self._changed.set()
