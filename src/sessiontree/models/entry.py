"""Session, entry and payload models for sessiontree.

Entry payloads form a closed tagged union keyed by ``type``. Payloads are
decoded once, at the store boundary, and travel through the rest of the
package as typed models. JSON field names are camelCase both on disk and in
the export format; Python attributes are snake_case.
"""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

EntryType = Literal[
    "message",
    "tool_call",
    "tool_result",
    "thinking_level_change",
    "model_change",
    "compaction",
    "branch_summary",
    "custom",
    "custom_message",
    "label",
]

ThinkingLevel = Literal["off", "low", "medium", "high"]
MessageRole = Literal["user", "assistant", "toolResult"]


def now_ms() -> int:
    """Current unix time in milliseconds."""
    return int(time.time() * 1000)


class WireModel(BaseModel):
    """Base for every model serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """Dump to a JSON-compatible dict using wire (camelCase) names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── Structured message body ────────────────────────────────────────────────────


class TextContent(WireModel):
    """A plain text content block."""

    type: Literal["text"] = "text"
    text: str = ""


class ImageContent(WireModel):
    """An inline image content block (base64 payload)."""

    type: Literal["image"] = "image"
    data: str = ""
    mime_type: str = "image/png"


ContentBlock = Annotated[TextContent | ImageContent, Field(discriminator="type")]


class ToolCall(WireModel):
    """A tool invocation requested by the assistant."""

    id: str = ""
    name: str = ""
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResult(WireModel):
    """The outcome of executing a tool call."""

    tool_call_id: str = ""
    tool_name: str = ""
    output: str = ""
    details: Any = None
    is_error: bool = False


class TokenUsage(WireModel):
    """Token counts reported by the transport for one response."""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_read + self.cache_write


class ChatMessage(WireModel):
    """
    The full structured body of a conversation message.

    Every field has a default so that payloads written by older clients (or
    with optional parts missing) still decode.
    """

    role: MessageRole = "user"
    content: list[ContentBlock] = Field(default_factory=list)
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    thinking: str = ""
    provider: str | None = None
    model: str | None = None
    usage: TokenUsage | None = None
    stop_reason: str | None = None

    def text_content(self) -> str:
        """Concatenate the text of every text block."""
        return "".join(block.text for block in self.content if isinstance(block, TextContent))

    @classmethod
    def from_text(cls, role: MessageRole, text: str, **kwargs: Any) -> ChatMessage:
        return cls(role=role, content=[TextContent(text=text)], **kwargs)


# ── Entry payloads ─────────────────────────────────────────────────────────────


class MessagePayload(WireModel):
    """Payload of a ``message`` entry."""

    type: Literal["message"] = "message"
    role: MessageRole = "user"
    text: str = ""
    """Flattened text, kept for search and list previews."""
    message: ChatMessage = Field(default_factory=ChatMessage)

    @classmethod
    def from_message(cls, message: ChatMessage) -> MessagePayload:
        """Build a payload whose ``role`` and ``text`` are derived from *message*."""
        text = message.text_content()
        if not text and message.tool_results:
            text = "\n".join(r.output for r in message.tool_results)
        return cls(role=message.role, text=text, message=message)


class ToolCallPayload(WireModel):
    """Payload of a standalone ``tool_call`` entry."""

    type: Literal["tool_call"] = "tool_call"
    tool_call_id: str = ""
    name: str = ""
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResultPayload(WireModel):
    """Payload of a standalone ``tool_result`` entry."""

    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str = ""
    tool_name: str = ""
    output: str = ""
    details: Any = None
    is_error: bool = False


class ThinkingLevelChangePayload(WireModel):
    type: Literal["thinking_level_change"] = "thinking_level_change"
    thinking_level: ThinkingLevel = "off"


class ModelChangePayload(WireModel):
    type: Literal["model_change"] = "model_change"
    provider: str = ""
    model_id: str = ""


class CompactionPayload(WireModel):
    """Summary of a history prefix; entries before ``first_kept_entry_id`` are dropped."""

    type: Literal["compaction"] = "compaction"
    summary: str = ""
    first_kept_entry_id: str = ""
    tokens_before: int = 0
    details: Any = None
    from_hook: bool = False


class BranchSummaryPayload(WireModel):
    type: Literal["branch_summary"] = "branch_summary"
    from_id: str = "root"
    summary: str = ""
    details: Any = None
    from_hook: bool = False


class CustomPayload(WireModel):
    """Opaque extension state. Only enters the context when ``payload['display']`` is true."""

    type: Literal["custom"] = "custom"
    custom_type: str = ""
    payload: Any = None

    @property
    def display(self) -> bool:
        return isinstance(self.payload, dict) and self.payload.get("display") is True


def content_text(content: Any) -> str:
    """Flatten extension message content (a string or a list of blocks) to plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item.get("text", "")
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        )
    return ""


class CustomMessagePayload(WireModel):
    type: Literal["custom_message"] = "custom_message"
    custom_type: str = ""
    content: Any = None
    display: bool = True
    details: Any = None
    text: str = ""

    @classmethod
    def from_content(cls, custom_type: str, content: Any, **kwargs: Any) -> CustomMessagePayload:
        return cls(custom_type=custom_type, content=content, text=content_text(content), **kwargs)


class LabelPayload(WireModel):
    """Label changes live in their own table; this variant only exists to keep the union closed."""

    type: Literal["label"] = "label"
    target_id: str = ""
    label: str | None = None


EntryPayload = Annotated[
    MessagePayload
    | ToolCallPayload
    | ToolResultPayload
    | ThinkingLevelChangePayload
    | ModelChangePayload
    | CompactionPayload
    | BranchSummaryPayload
    | CustomPayload
    | CustomMessagePayload
    | LabelPayload,
    Field(discriminator="type"),
]

payload_adapter: TypeAdapter[EntryPayload] = TypeAdapter(EntryPayload)

# Fields that exist only for the search index and list previews.
SEARCH_ONLY_FIELDS: frozenset[str] = frozenset({"text"})


def payload_to_json(payload: EntryPayload) -> dict[str, Any]:
    """Dump a payload for the ``data`` column (the ``type`` lives in its own column)."""
    data = payload.to_wire()
    data.pop("type", None)
    return data


# ── Records ────────────────────────────────────────────────────────────────────


class Entry(BaseModel):
    """One immutable node of a session's conversation tree."""

    model_config = ConfigDict(frozen=True)

    id: str
    session_id: str
    parent_id: str | None = None
    created_at: int = Field(default_factory=now_ms)
    data: EntryPayload

    @property
    def type(self) -> str:
        return self.data.type

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class Session(BaseModel):
    """One conversation. ``leaf_id`` and ``display_name`` are the only mutable fields."""

    id: str
    created_at: int = Field(default_factory=now_ms)
    working_context: str = ""
    parent_session_id: str | None = None
    leaf_id: str | None = None
    display_name: str | None = None


class Label(BaseModel):
    """An append-only label record. ``label=None`` or ``""`` clears the target's label."""

    id: str
    session_id: str
    target_id: str
    label: str | None = None
    created_at: int = Field(default_factory=now_ms)


class SessionSummary(BaseModel):
    """Aggregated row for session list screens."""

    id: str
    created_at: int
    working_context: str = ""
    display_name: str | None = None
    parent_session_id: str | None = None
    leaf_id: str | None = None
    last_activity: int
    message_count: int = 0
    first_message: str | None = None


class BranchInfo(BaseModel):
    """A tip of the tree (an entry with no children)."""

    leaf_id: str
    entry_count: int
    last_text: str = ""
    last_updated: int


class SearchHit(BaseModel):
    """One full-text search match."""

    session_id: str
    entry_id: str
    snippet: str
    score: float = 0.0
