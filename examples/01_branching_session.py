"""
Example 01: Branching Session
=============================

Demonstrates the core tree operations of ChatSession:
- Appending messages and settings changes
- Rewinding with branch() and starting a sibling branch
- Recording an abandoned path with branch_with_summary()
- Compacting history and inspecting the assembled context
- Forking the active path into a new session

Run:
    uv run python examples/01_branching_session.py
"""

import asyncio
import sys
import tempfile
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main() -> None:
    from sessiontree import ChatSession

    print("=== sessiontree Branching Example ===\n")

    db_path = str(Path(tempfile.mkdtemp()) / "example_01.db")

    async with ChatSession.open(db_path=db_path, working_context="~/notes") as session:
        print(f"Session created: {session.id}\n")

        await session.append_model_change("anthropic", "claude-sonnet-4")
        question = await session.append_message("What is a B-tree?")
        await session.append_message("A balanced search tree with wide nodes.", role="assistant")

        # Rewind to the question and answer it differently
        await session.branch(question.id)
        await session.append_message("A self-balancing tree used by databases.", role="assistant")

        for info in await session.branches():
            print(f"Branch tip {info.leaf_id}: {info.entry_count} entries, last: {info.last_text!r}")

        # Abandon the current answer, leaving a note on the tree
        await session.branch_with_summary(question.id, "Tried a database-centric answer.")
        follow_up = await session.append_message("Explain it like I'm five.")
        await session.append_message("It's a bookshelf where every shelf is sorted.", role="assistant")

        # Compact everything before the follow-up
        await session.compact("User asked what a B-tree is.", follow_up.id)

        context = await session.context()
        print(f"\nModel: {context.model}, thinking: {context.thinking_level}")
        for message in context.messages:
            print(f"  [{message.role}/{message.kind}] {message.text[:60]}")

        forked = await session.fork(working_context="~/notes-copy")
        print(f"\nForked into {forked.id} with {len(await forked.branch_entries())} entries")

        print("\nExport:")
        print(await session.export())

    print("Session closed cleanly.")


if __name__ == "__main__":
    asyncio.run(main())
