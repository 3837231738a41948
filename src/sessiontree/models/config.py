"""Configuration models for sessiontree stores and context assembly."""

from __future__ import annotations

from pydantic import BaseModel, Field


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.sessiontree/sessions.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode so readers never wait on the writer."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""

    max_ancestry_depth: int = Field(
        default=100_000,
        ge=1,
        description=(
            "Maximum number of parent links followed when reconstructing a branch. "
            "Reaching it means the parent chain is corrupted (or cyclic)."
        ),
    )


class ContextConfig(BaseModel):
    """Configuration for turning a branch into an LLM message list."""

    compaction_summary_template: str = Field(
        default="[Context compacted. Summary of earlier conversation:]\n{summary}",
        description="Template for the synthetic user message that replaces compacted history.",
    )

    include_branch_summaries: bool = False
    """Emit ``branch_summary`` entries as marked user messages instead of skipping them."""

    branch_summary_template: str = "[Branch summary:]\n{summary}"

    default_thinking_level: str = Field(
        default="off",
        pattern="^(off|low|medium|high)$",
        description="Thinking level used when the branch carries no thinking_level_change entry.",
    )


class SessionTreeConfig(BaseModel):
    """
    Top-level configuration.

    Example::

        config = SessionTreeConfig(
            store=StoreConfig(db_path="/data/chat.db"),
            context=ContextConfig(include_branch_summaries=True),
        )
    """

    store: StoreConfig = Field(default_factory=StoreConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)

    export_version: int = Field(
        default=1,
        ge=1,
        description="Version number written into exported session headers.",
    )

    @classmethod
    def default(cls) -> SessionTreeConfig:
        """Return a config instance with all defaults."""
        return cls()
