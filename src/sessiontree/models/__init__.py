"""sessiontree data models."""

from sessiontree.models.config import ContextConfig, SessionTreeConfig, StoreConfig
from sessiontree.models.entry import (
    BranchInfo,
    BranchSummaryPayload,
    ChatMessage,
    CompactionPayload,
    ContentBlock,
    CustomMessagePayload,
    CustomPayload,
    Entry,
    EntryPayload,
    EntryType,
    ImageContent,
    Label,
    LabelPayload,
    MessagePayload,
    MessageRole,
    ModelChangePayload,
    SearchHit,
    Session,
    SessionSummary,
    TextContent,
    ThinkingLevel,
    ThinkingLevelChangePayload,
    TokenUsage,
    ToolCall,
    ToolCallPayload,
    ToolResult,
    ToolResultPayload,
)
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
    ToolDefinition,
    ToolOutcome,
    TurnRequest,
    UsageEvent,
)

__all__ = [
    # Config
    "ContextConfig",
    "SessionTreeConfig",
    "StoreConfig",
    # Message body
    "ChatMessage",
    "ContentBlock",
    "ImageContent",
    "MessageRole",
    "TextContent",
    "TokenUsage",
    "ToolCall",
    "ToolResult",
    # Payloads
    "BranchSummaryPayload",
    "CompactionPayload",
    "CustomMessagePayload",
    "CustomPayload",
    "EntryPayload",
    "EntryType",
    "LabelPayload",
    "MessagePayload",
    "ModelChangePayload",
    "ThinkingLevel",
    "ThinkingLevelChangePayload",
    "ToolCallPayload",
    "ToolResultPayload",
    # Records
    "BranchInfo",
    "Entry",
    "Label",
    "SearchHit",
    "Session",
    "SessionSummary",
    # Collaborators
    "DoneEvent",
    "ErrorEvent",
    "ModelRef",
    "StreamEvent",
    "TextDelta",
    "ThinkingDelta",
    "ToolCallDelta",
    "ToolCallEnd",
    "ToolCallStart",
    "ToolDefinition",
    "ToolOutcome",
    "TurnRequest",
    "UsageEvent",
]
