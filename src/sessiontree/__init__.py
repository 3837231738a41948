"""
sessiontree — append-only branching conversation storage for AI chat clients.

Primary entry point::

    from sessiontree import ChatSession

    async with ChatSession.open(db_path="chat.db") as session:
        hi = await session.append_message("Hello!")
        await session.append_message("Hi there", role="assistant")
        await session.branch(hi.id)
        context = await session.context()
"""

from sessiontree.context import (
    AssembledContext,
    Branch,
    BranchReconstructor,
    BranchWatcher,
    ContextAssembler,
    ContextMessage,
)
from sessiontree.events.bus import EventBus, SessionEvent
from sessiontree.export import ExportFormatError, export_session, import_session
from sessiontree.ids import make_entry_id, make_id
from sessiontree.models import (
    BranchInfo,
    ChatMessage,
    ContextConfig,
    Entry,
    EntryPayload,
    Label,
    ModelRef,
    SearchHit,
    Session,
    SessionSummary,
    SessionTreeConfig,
    StoreConfig,
    StreamEvent,
    TextContent,
    TokenUsage,
    ToolCall,
    ToolDefinition,
    ToolOutcome,
    ToolResult,
    TurnRequest,
)
from sessiontree.protocols import ModelTransport, ToolExecutor
from sessiontree.session import ChatSession, TreeNode
from sessiontree.store import (
    BrokenAncestryError,
    CrossSessionReferenceError,
    CycleOrDepthExceededError,
    DuplicateIDError,
    EntryNotFoundError,
    EntryStore,
    MalformedEntryError,
    SessionNotFoundError,
    SessionTreeStoreError,
    StorageError,
    StorePool,
)
from sessiontree.tokens.estimator import TokenEstimator
from sessiontree.tools.registry import ToolRegistry

__version__ = "0.1.0"

__all__ = [
    # Core
    "ChatSession",
    "TreeNode",
    "make_id",
    "make_entry_id",
    # Config
    "SessionTreeConfig",
    "StoreConfig",
    "ContextConfig",
    # Models
    "BranchInfo",
    "ChatMessage",
    "Entry",
    "EntryPayload",
    "Label",
    "SearchHit",
    "Session",
    "SessionSummary",
    "TextContent",
    "TokenUsage",
    "ToolCall",
    "ToolResult",
    # Store
    "EntryStore",
    "StorePool",
    "SessionTreeStoreError",
    "StorageError",
    "SessionNotFoundError",
    "EntryNotFoundError",
    "BrokenAncestryError",
    "CrossSessionReferenceError",
    "DuplicateIDError",
    "MalformedEntryError",
    "CycleOrDepthExceededError",
    # Context
    "AssembledContext",
    "Branch",
    "BranchReconstructor",
    "BranchWatcher",
    "ContextAssembler",
    "ContextMessage",
    # Events
    "EventBus",
    "SessionEvent",
    # Export
    "ExportFormatError",
    "export_session",
    "import_session",
    # Turns
    "ModelRef",
    "ModelTransport",
    "StreamEvent",
    "ToolDefinition",
    "ToolExecutor",
    "ToolOutcome",
    "ToolRegistry",
    "TurnRequest",
    # Tokens
    "TokenEstimator",
]
