"""Multi-model token estimation with caching and graceful fallback."""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from sessiontree.context.assembler import AssembledContext, ContextMessage
    from sessiontree.models.stream import ModelRef

from sessiontree.models.entry import ImageContent, TextContent

# Flat per-image cost; providers bill images by resolution, which we never decode.
IMAGE_TOKEN_ESTIMATE = 1_000


def encoding_for(model: ModelRef | None) -> str | None:
    """Map a model reference onto a tiktoken encoding name (or a heuristic marker)."""
    if model is None:
        return None
    name = model.model_id.lower()
    if "claude" in name or model.provider == "anthropic":
        return "claude_heuristic"
    if name.startswith(("gpt-4o", "gpt-4.1", "gpt-5", "o1", "o3", "o4")):
        return "o200k_base"
    if name.startswith(("gpt-4", "gpt-3.5")):
        return "cl100k_base"
    return None


class TokenEstimator:
    """
    Multi-model token counting with caching and graceful fallback.

    Priority order:
    1. tiktoken for OpenAI model families (gpt-4, gpt-3.5, gpt-4o, o-series)
    2. Character-based heuristic (``len // 3``) for Claude models
    3. Character-based heuristic (``len // 4``) for all other models

    Used for the default ``tokens_before`` of a compaction and for reporting
    the size of an assembled context.
    """

    def __init__(self) -> None:
        self._encoder_cache: dict[str, Any] = {}
        self._count_cache: dict[str, int] = {}
        self._force_heuristic: bool = False
        """Set to True in tests to skip tiktoken import."""
        self._logger = structlog.get_logger("sessiontree.tokens")

    def estimate(self, text: str, model: ModelRef | None = None) -> int:
        """
        Estimate the token count for a string.

        Returns:
            Estimated token count, always >= 1 for non-empty text.
        """
        if not text:
            return 0
        encoding = None if self._force_heuristic else encoding_for(model)
        if encoding == "claude_heuristic":
            return max(1, len(text) // 3)
        if encoding in ("cl100k_base", "o200k_base"):
            try:
                return self._tiktoken_estimate(text, encoding)
            except (ImportError, ValueError, KeyError) as exc:
                self._logger.debug("tiktoken_unavailable", encoding=encoding, error=str(exc))
        return self._heuristic(text)

    def estimate_cached(self, text: str, cache_key: str, model: ModelRef | None = None) -> int:
        """Estimate with caching, keyed by ``cache_key`` (use for immutable content)."""
        if cache_key in self._count_cache:
            return self._count_cache[cache_key]
        count = self.estimate(text, model)
        self._count_cache[cache_key] = count
        return count

    def estimate_message(self, msg: ContextMessage, model: ModelRef | None = None) -> int:
        """
        Estimate total tokens for one assembled message.

        Summaries are cached by content hash: they repeat unchanged on every
        turn after a compaction.
        """
        total = 4  # role + framing overhead
        for block in msg.content:
            if isinstance(block, TextContent):
                if msg.kind in ("compaction_summary", "branch_summary"):
                    total += self.estimate_cached(block.text, self.content_hash(block.text), model)
                else:
                    total += self.estimate(block.text, model)
            elif isinstance(block, ImageContent):
                total += IMAGE_TOKEN_ESTIMATE
        for call in msg.tool_calls:
            total += self.estimate(call.name, model)
            total += self.estimate(json.dumps(call.arguments, ensure_ascii=False), model)
        for result in msg.tool_results:
            if not msg.content:
                total += self.estimate(result.output, model)
        total += self.estimate(msg.thinking, model)
        return total

    def estimate_context(self, context: AssembledContext) -> int:
        """Estimate the whole message list using the context's own model for tokenisation."""
        return sum(self.estimate_message(m, context.model) for m in context.messages)

    def _heuristic(self, text: str) -> int:
        """Conservative heuristic: 4 characters per token, minimum 1."""
        return max(1, len(text) // 4)

    def _tiktoken_estimate(self, text: str, encoding_name: str) -> int:
        """Encode with tiktoken, caching the encoder object."""
        if encoding_name not in self._encoder_cache:
            import tiktoken

            self._encoder_cache[encoding_name] = tiktoken.get_encoding(encoding_name)
        encoder = self._encoder_cache[encoding_name]
        return len(encoder.encode(text))

    @staticmethod
    def content_hash(text: str) -> str:
        """Return a stable SHA-256 hex digest for use as a cache key."""
        return hashlib.sha256(text.encode()).hexdigest()
