"""Aggregation of incremental model stream events into one assistant message."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from sessiontree.models.entry import ChatMessage, TextContent, TokenUsage, ToolCall
from sessiontree.models.stream import (
    DoneEvent,
    ErrorEvent,
    ModelRef,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    UsageEvent,
)


@dataclass
class PendingToolCall:
    """A tool call whose JSON arguments are still streaming in."""

    id: str
    name: str
    argument_parts: list[str] = field(default_factory=list)
    complete: bool = False

    def arguments(self) -> dict[str, Any]:
        """Parsed arguments. Unparseable or non-object JSON is kept under ``_raw``."""
        raw = "".join(self.argument_parts)
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {"_raw": raw}
        return parsed if isinstance(parsed, dict) else {"_raw": raw}


@dataclass
class TurnAccumulator:
    """
    Accumulates a model stream into its end state.

    Only the aggregate (full text, full thinking, tool calls, usage, stop
    reason) is persisted; wire framing is never interpreted here.
    """

    text_parts: list[str] = field(default_factory=list)
    thinking_parts: list[str] = field(default_factory=list)
    tool_calls: dict[str, PendingToolCall] = field(default_factory=dict)
    usage: TokenUsage | None = None
    stop_reason: str | None = None
    error: str | None = None

    def process(self, event: StreamEvent) -> None:
        """Fold one stream event into the accumulated state."""
        if isinstance(event, TextDelta):
            self.text_parts.append(event.text)
        elif isinstance(event, ThinkingDelta):
            self.thinking_parts.append(event.text)
        elif isinstance(event, ToolCallStart):
            self.tool_calls[event.id] = PendingToolCall(id=event.id, name=event.name)
        elif isinstance(event, ToolCallDelta):
            pending = self.tool_calls.setdefault(event.id, PendingToolCall(id=event.id, name=""))
            pending.argument_parts.append(event.arguments_delta)
        elif isinstance(event, ToolCallEnd):
            if event.id in self.tool_calls:
                self.tool_calls[event.id].complete = True
        elif isinstance(event, UsageEvent):
            self.usage = event.usage
        elif isinstance(event, DoneEvent):
            self.stop_reason = event.stop_reason
        elif isinstance(event, ErrorEvent):
            self.error = event.message
            self.stop_reason = "error"

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    @property
    def thinking(self) -> str:
        return "".join(self.thinking_parts)

    @property
    def has_content(self) -> bool:
        return bool(self.text or self.thinking or self.tool_calls)

    def finished_tool_calls(self) -> list[ToolCall]:
        """Tool calls in start order, with parsed arguments."""
        return [
            ToolCall(id=pending.id, name=pending.name, arguments=pending.arguments())
            for pending in self.tool_calls.values()
        ]

    def to_message(self, model: ModelRef | None = None, *, stop_reason: str | None = None) -> ChatMessage:
        """
        Build the assistant message for the accumulated turn.

        *stop_reason* overrides the streamed one (e.g. ``"aborted"`` on cancellation).
        """
        return ChatMessage(
            role="assistant",
            content=[TextContent(text=self.text)] if self.text else [],
            tool_calls=self.finished_tool_calls(),
            thinking=self.thinking,
            provider=model.provider if model is not None else None,
            model=model.model_id if model is not None else None,
            usage=self.usage,
            stop_reason=stop_reason or self.stop_reason or "stop",
        )
