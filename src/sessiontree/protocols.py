"""
Collaborator protocols.

The session tree never talks to a model vendor or runs a tool itself. It
consumes two narrow, structurally-typed interfaces that applications supply:

- :class:`ModelTransport` turns a :class:`~sessiontree.models.stream.TurnRequest`
  into an ordered stream of incremental events.
- :class:`ToolExecutor` runs a named tool with structured input.

Any object with matching methods satisfies them; no subclassing required::

    class EchoTransport:
        async def stream(self, request):
            yield TextDelta(text=request.messages[-1]["content"][0]["text"])
            yield DoneEvent()

    assert isinstance(EchoTransport(), ModelTransport)
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol, runtime_checkable

from sessiontree.models.stream import StreamEvent, ToolOutcome, TurnRequest

__all__ = ["ModelTransport", "ToolExecutor"]


@runtime_checkable
class ModelTransport(Protocol):
    """Structural interface for the model/transport layer."""

    def stream(self, request: TurnRequest) -> AsyncIterator[StreamEvent]:
        """Yield text/thinking/tool-call deltas, usage, and finally ``done`` or ``error``."""
        ...


@runtime_checkable
class ToolExecutor(Protocol):
    """Structural interface for the tool layer."""

    async def execute(self, name: str, input: dict[str, Any]) -> ToolOutcome:
        """Run tool *name* and report its output, structured details and error flag."""
        ...
