"""Explicitly constructed tool registry (definitions plus optional handlers)."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from sessiontree.models.stream import ToolDefinition, ToolOutcome

ToolHandler = Callable[[dict[str, Any]], ToolOutcome | Awaitable[ToolOutcome]]


class ToolRegistry:
    """
    The set of tools offered to the model on a turn.

    There is no process-wide registry: build one and pass it to
    :meth:`ChatSession.prepare_turn` / :meth:`ChatSession.run_turn`. A
    registry whose tools all carry handlers also satisfies
    :class:`~sessiontree.protocols.ToolExecutor`.

    Example::

        registry = ToolRegistry()

        @registry.tool(description="Add two integers")
        def add(args):
            return ToolOutcome(output=str(args["a"] + args["b"]))
    """

    def __init__(self) -> None:
        self._definitions: dict[str, ToolDefinition] = {}
        self._handlers: dict[str, ToolHandler] = {}
        self._logger = structlog.get_logger("sessiontree.tools")

    def register(self, definition: ToolDefinition, handler: ToolHandler | None = None) -> None:
        """
        Add a tool.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """
        if definition.name in self._definitions:
            raise ValueError(f"Tool already registered: {definition.name!r}")
        self._definitions[definition.name] = definition
        if handler is not None:
            self._handlers[definition.name] = handler

    def tool(
        self,
        name: str | None = None,
        *,
        description: str = "",
        parameters: dict[str, Any] | None = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of :meth:`register`; the function name is the default tool name."""

        def decorator(fn: ToolHandler) -> ToolHandler:
            definition = ToolDefinition(
                name=name or fn.__name__,
                description=description or (fn.__doc__ or "").strip(),
            )
            if parameters is not None:
                definition = definition.model_copy(update={"parameters": parameters})
            self.register(definition, fn)
            return fn

        return decorator

    def definitions(self) -> list[ToolDefinition]:
        """Definitions in registration order."""
        return list(self._definitions.values())

    def get(self, name: str) -> ToolDefinition | None:
        return self._definitions.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    async def execute(self, name: str, input: dict[str, Any]) -> ToolOutcome:
        """
        Run the handler registered for *name*.

        Unknown tools, handler exceptions and non-ToolOutcome results are
        reported back to the model as error outcomes rather than raised: the conversation must record them.
        """
        handler = self._handlers.get(name)
        if handler is None:
            self._logger.warning("tool_unknown", tool=name)
            return ToolOutcome(output=f"Unknown tool: {name}", is_error=True)
        try:
            result = handler(input)
            if asyncio.iscoroutine(result):
                result = await result
        except Exception as exc:
            self._logger.warning("tool_failed", tool=name, error=str(exc))
            return ToolOutcome(output=f"{type(exc).__name__}: {exc}", is_error=True)
        if not isinstance(result, ToolOutcome):
            self._logger.warning("tool_bad_result", tool=name, result_type=type(result).__name__)
            return ToolOutcome(
                output=f"TypeError: tool {name!r} returned {type(result).__name__}, not ToolOutcome",
                is_error=True,
            )
        return result
