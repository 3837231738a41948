"""Context assembly: branch → ordered LLM message list plus derived settings."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Literal, cast

import structlog
from pydantic import ValidationError

from sessiontree.context.reconstructor import Branch
from sessiontree.models.config import ContextConfig
from sessiontree.models.entry import (
    BranchSummaryPayload,
    CompactionPayload,
    ContentBlock,
    CustomMessagePayload,
    CustomPayload,
    Entry,
    ImageContent,
    MessagePayload,
    ModelChangePayload,
    TextContent,
    ThinkingLevelChangePayload,
    ToolCall,
    ToolCallPayload,
    ToolResult,
    ToolResultPayload,
)
from sessiontree.models.stream import ModelRef

ContextRole = Literal["user", "assistant", "toolResult", "custom"]
MessageKind = Literal["message", "compaction_summary", "branch_summary", "custom"]


@dataclass
class ContextMessage:
    """A single message in the assembled context, provider-agnostic."""

    role: ContextRole
    content: list[ContentBlock] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    thinking: str = ""
    kind: MessageKind = "message"
    entry_id: str | None = None
    """The entry this message was built from."""
    custom_type: str | None = None
    details: Any = None

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.content if isinstance(block, TextContent))

    def to_dict(self) -> dict[str, Any]:
        """Wire-shaped dict (camelCase keys) handed to the model/transport layer."""
        data: dict[str, Any] = {
            "role": self.role,
            "content": [block.to_wire() for block in self.content],
        }
        if self.tool_calls:
            data["toolCalls"] = [call.to_wire() for call in self.tool_calls]
        if self.tool_results:
            data["toolResults"] = [result.to_wire() for result in self.tool_results]
        if self.thinking:
            data["thinking"] = self.thinking
        if self.kind != "message":
            data["kind"] = self.kind
        if self.custom_type is not None:
            data["customType"] = self.custom_type
        return data


@dataclass
class AssembledContext:
    """The message list and settings for the next model call."""

    messages: list[ContextMessage]
    model: ModelRef | None
    thinking_level: str
    leaf_id: str | None = None
    compaction_entry_id: str | None = None
    malformed_entry_ids: list[str] = field(default_factory=list)

    @property
    def has_compaction(self) -> bool:
        return self.compaction_entry_id is not None

    def to_dicts(self) -> list[dict[str, Any]]:
        return [message.to_dict() for message in self.messages]


class ContextAssembler:
    """
    Converts a :class:`Branch` into the exact message list sent to the model.

    Two passes over the path:

    1. **Settings pass** over every entry: the latest ``thinking_level_change``
       wins; the model is whichever comes later of a ``model_change`` entry or
       the provider/model recorded on an assistant ``message``.
    2. **Emission pass** over the entries retained by the active compaction.
       A compaction first emits a synthetic, marked user message carrying its
       summary. ``message`` entries are emitted with their structured body;
       standalone ``tool_call`` entries attach to the preceding assistant
       message; ``tool_result`` entries become ``toolResult`` messages.
       ``custom``/``custom_message`` entries are emitted (role ``custom``) only
       when they declare themselves display-worthy. Settings entries, labels,
       older compactions and (by default) branch summaries emit nothing.

    Assembly never fails on missing optional fields; undecodable entries were
    already filtered out by the reconstructor.
    """

    def __init__(self, config: ContextConfig | None = None) -> None:
        self._config = config or ContextConfig()
        self._logger = structlog.get_logger("sessiontree.assembler")

    def assemble(self, branch: Branch) -> AssembledContext:
        model, thinking_level = self._settings(branch.entries)

        messages: list[ContextMessage] = []
        compaction = branch.compaction
        if compaction is not None:
            data = cast(CompactionPayload, compaction.data)
            summary = self._config.compaction_summary_template.format(summary=data.summary)
            messages.append(
                ContextMessage(
                    role="user",
                    content=[TextContent(text=summary)],
                    kind="compaction_summary",
                    entry_id=compaction.id,
                    details=data.details,
                )
            )

        for entry in branch.retained_entries():
            self._emit(entry, messages)

        self._logger.debug(
            "context_assembled",
            session_id=branch.session_id,
            leaf_id=branch.leaf_id,
            message_count=len(messages),
            compaction_entry_id=compaction.id if compaction else None,
        )
        return AssembledContext(
            messages=messages,
            model=model,
            thinking_level=thinking_level,
            leaf_id=branch.leaf_id,
            compaction_entry_id=compaction.id if compaction else None,
            malformed_entry_ids=list(branch.malformed_entry_ids),
        )

    # ── Passes ─────────────────────────────────────────────────────────────────

    def _settings(self, entries: list[Entry]) -> tuple[ModelRef | None, str]:
        model: ModelRef | None = None
        thinking_level = self._config.default_thinking_level
        for entry in entries:
            data = entry.data
            if isinstance(data, ThinkingLevelChangePayload):
                thinking_level = data.thinking_level
            elif isinstance(data, ModelChangePayload):
                model = ModelRef(provider=data.provider, model_id=data.model_id)
            elif (
                isinstance(data, MessagePayload)
                and data.role == "assistant"
                and data.message.model
            ):
                model = ModelRef(provider=data.message.provider or "", model_id=data.message.model)
        return model, thinking_level

    def _emit(self, entry: Entry, messages: list[ContextMessage]) -> None:
        data = entry.data
        if isinstance(data, MessagePayload):
            body = data.message
            content: list[ContentBlock] = list(body.content)
            if not content and data.text:
                content = [TextContent(text=data.text)]
            messages.append(
                ContextMessage(
                    role=data.role,
                    content=content,
                    tool_calls=list(body.tool_calls),
                    tool_results=list(body.tool_results),
                    thinking=body.thinking,
                    entry_id=entry.id,
                )
            )
        elif isinstance(data, ToolCallPayload):
            call = ToolCall(id=data.tool_call_id, name=data.name, arguments=data.arguments)
            previous = messages[-1] if messages else None
            if previous is not None and previous.role == "assistant" and previous.kind == "message":
                previous.tool_calls.append(call)
            else:
                messages.append(
                    ContextMessage(role="assistant", tool_calls=[call], entry_id=entry.id)
                )
        elif isinstance(data, ToolResultPayload):
            result = ToolResult(
                tool_call_id=data.tool_call_id,
                tool_name=data.tool_name,
                output=data.output,
                details=data.details,
                is_error=data.is_error,
            )
            messages.append(
                ContextMessage(
                    role="toolResult",
                    content=[TextContent(text=data.output)] if data.output else [],
                    tool_results=[result],
                    entry_id=entry.id,
                )
            )
        elif isinstance(data, BranchSummaryPayload):
            if self._config.include_branch_summaries:
                text = self._config.branch_summary_template.format(summary=data.summary)
                messages.append(
                    ContextMessage(
                        role="user",
                        content=[TextContent(text=text)],
                        kind="branch_summary",
                        entry_id=entry.id,
                        details=data.details,
                    )
                )
        elif isinstance(data, CustomMessagePayload):
            if data.display:
                messages.append(
                    ContextMessage(
                        role="custom",
                        content=_content_blocks(data.content, data.text),
                        kind="custom",
                        entry_id=entry.id,
                        custom_type=data.custom_type,
                        details=data.details,
                    )
                )
        elif isinstance(data, CustomPayload):
            if data.display:
                messages.append(
                    ContextMessage(
                        role="custom",
                        content=_content_blocks(data.payload, ""),
                        kind="custom",
                        entry_id=entry.id,
                        custom_type=data.custom_type,
                        details=data.payload,
                    )
                )
        # thinking_level_change, model_change, label and superseded compactions emit nothing.


def _content_blocks(value: Any, fallback_text: str) -> list[ContentBlock]:
    """Best-effort conversion of an opaque custom payload into content blocks."""
    if isinstance(value, str):
        return [TextContent(text=value)]
    if isinstance(value, list):
        blocks: list[ContentBlock] = []
        for item in value:
            if isinstance(item, str):
                blocks.append(TextContent(text=item))
            elif isinstance(item, dict) and item.get("type") == "text":
                blocks.append(TextContent(text=str(item.get("text", ""))))
            elif isinstance(item, dict) and item.get("type") == "image":
                try:
                    blocks.append(ImageContent.model_validate(item))
                except ValidationError:
                    blocks.append(TextContent(text=_json_text(item)))
        if blocks:
            return blocks
    if isinstance(value, dict):
        for key in ("text", "content"):
            if isinstance(value.get(key), str):
                return [TextContent(text=value[key])]
    if fallback_text:
        return [TextContent(text=fallback_text)]
    if value is None:
        return []
    return [TextContent(text=_json_text(value))]


def _json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)
