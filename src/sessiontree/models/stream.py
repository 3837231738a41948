"""Collaborator-facing models: turn requests and incremental stream events."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from sessiontree.models.entry import TokenUsage


class ModelRef(BaseModel):
    """Identifies the model a turn should be sent to."""

    provider: str
    model_id: str

    def __str__(self) -> str:
        return f"{self.provider}/{self.model_id}" if self.provider else self.model_id


class ToolDefinition(BaseModel):
    """A tool the model may call, described for the transport layer."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class TurnRequest(BaseModel):
    """Everything the model/transport layer needs to run one turn."""

    model: ModelRef | None
    messages: list[dict[str, Any]]
    tools: list[ToolDefinition] | None = None
    thinking_level: str = "off"
    temperature: float | None = None
    max_tokens: int | None = None


# ── Stream events ──────────────────────────────────────────────────────────────


class TextDelta(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ThinkingDelta(BaseModel):
    type: Literal["thinking_delta"] = "thinking_delta"
    text: str


class ToolCallStart(BaseModel):
    type: Literal["tool_call_start"] = "tool_call_start"
    id: str
    name: str


class ToolCallDelta(BaseModel):
    """A fragment of a tool call's JSON arguments."""

    type: Literal["tool_call_delta"] = "tool_call_delta"
    id: str
    arguments_delta: str


class ToolCallEnd(BaseModel):
    type: Literal["tool_call_end"] = "tool_call_end"
    id: str


class UsageEvent(BaseModel):
    type: Literal["usage"] = "usage"
    usage: TokenUsage


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    stop_reason: str = "stop"


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


StreamEvent = Annotated[
    TextDelta
    | ThinkingDelta
    | ToolCallStart
    | ToolCallDelta
    | ToolCallEnd
    | UsageEvent
    | DoneEvent
    | ErrorEvent,
    Field(discriminator="type"),
]


class ToolOutcome(BaseModel):
    """What the tool layer returns for one call."""

    output: str = ""
    details: Any = None
    is_error: bool = False
