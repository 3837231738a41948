"""
Example 02: Streaming Turns with Tools
======================================

Demonstrates running agent turns through a ModelTransport:
- A scripted transport that streams text and a tool call
- A ToolRegistry that executes the call
- Cancelling a turn mid-stream; the partial reply is still persisted

The transport is a stub so the example runs without any API key. Any
object with an async ``stream(request)`` generator satisfies the protocol.

Run:
    uv run python examples/02_streaming_turns.py
"""

import asyncio
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class ScriptedTransport:
    """Streams one tool call on the first turn and a text answer afterwards."""

    def __init__(self, delay: float = 0.0) -> None:
        self.turns = 0
        self.delay = delay

    async def stream(self, request):
        from sessiontree.models.stream import (
            DoneEvent,
            TextDelta,
            ToolCallDelta,
            ToolCallEnd,
            ToolCallStart,
        )

        self.turns += 1
        if self.turns == 1:
            yield ToolCallStart(id="call_1", name="add")
            yield ToolCallDelta(id="call_1", arguments_delta='{"a": 2, ')
            yield ToolCallDelta(id="call_1", arguments_delta='"b": 3}')
            yield ToolCallEnd(id="call_1")
            yield DoneEvent(stop_reason="toolUse")
            return
        for word in "The answer is five, as the tool reported.".split():
            await asyncio.sleep(self.delay)
            yield TextDelta(text=word + " ")
        yield DoneEvent()


async def main() -> None:
    from sessiontree import ChatSession, ModelRef, ToolOutcome, ToolRegistry

    print("=== sessiontree Streaming Turns Example ===\n")

    registry = ToolRegistry()

    @registry.tool(description="Add two integers")
    def add(args):
        return ToolOutcome(output=str(args["a"] + args["b"]))

    db_path = str(Path(tempfile.mkdtemp()) / "example_02.db")
    model = ModelRef(provider="scripted", model_id="demo")

    async with ChatSession.open(db_path=db_path) as session:
        await session.append_message("What is 2 + 3?")

        transport = ScriptedTransport()
        call_entry = await session.run_turn(transport, registry, model=model)
        print(f"Assistant requested {len(call_entry.data.message.tool_calls)} tool call(s)")

        await session.run_tools(registry)
        answer = await session.run_turn(transport, registry, model=model)
        print(f"Assistant: {answer.data.text}")

        # Cancel a slow turn; whatever streamed so far is kept
        await session.append_message("Say it again, slowly.")
        slow = ScriptedTransport(delay=0.05)
        slow.turns = 1
        task = asyncio.create_task(session.run_turn(slow, model=model))
        await asyncio.sleep(0.12)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        leaf = (await session.branch_entries())[-1]
        print(f"Partial reply ({leaf.data.message.stop_reason}): {leaf.data.text!r}")


if __name__ == "__main__":
    asyncio.run(main())
