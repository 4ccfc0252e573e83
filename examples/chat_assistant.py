"""Interactive chat with tool calling.

Demonstrates:
- Loading settings from the environment
- Local simulated tools, plus remote tools when PARLEY_MCP_URL is set
- Streaming a turn and printing tool activity as it happens

Usage:
    Add OPENAI_API_KEY=sk-... to .env, then:
    uv run --env-file=.env examples/chat_assistant.py [steam|source2]
"""

import asyncio
import sys

from parley import (
    ChatSection,
    CompletionClient,
    CompositeToolExecutor,
    ContentDelta,
    JsonFileThreadStore,
    LocalToolExecutor,
    ParleySettings,
    SessionClient,
    SessionToolExecutor,
    ToolCallStarted,
    ToolOrchestrator,
    ToolResultEvent,
    TurnComplete,
    TurnFailed,
    configure_logging,
)
from parley.builtin_tools import builtin_tools
from parley.errors import HandshakeError


def print_progress(call, update):
    print(f"\n  [{call.name}] progress: {update.progress}")


async def main(section: ChatSection):
    settings = ParleySettings()
    configure_logging(settings.log_level, log_file="parley.log")

    executors = [LocalToolExecutor(builtin_tools())]
    session_client = None
    if settings.mcp_url:
        session_client = SessionClient.from_settings(settings)
        try:
            await session_client.connect()
            executors.insert(0, SessionToolExecutor(session_client, on_progress=print_progress))
        except HandshakeError as e:
            print(f"Tool server unavailable, using local tools only: {e}")

    orchestrator = ToolOrchestrator.from_settings(
        settings,
        completion=CompletionClient.from_settings(settings),
        executor=CompositeToolExecutor(executors),
        store=JsonFileThreadStore("threads.json"),
        section=section,
    )
    thread = orchestrator.new_thread()

    try:
        while True:
            user_text = input("\n> ")
            if user_text.strip().lower() in {"quit", "exit"}:
                break
            async for event in orchestrator.iter_turn(thread, user_text):
                if isinstance(event, ContentDelta):
                    print(event.text, end="", flush=True)
                elif isinstance(event, ToolCallStarted):
                    print(f"\n  calling {event.tool_call.name}...")
                elif isinstance(event, ToolResultEvent):
                    print(f"  {event.result.tool_name}: {event.result.status.value}")
                elif isinstance(event, TurnComplete):
                    print()
                elif isinstance(event, TurnFailed):
                    print(f"\nSomething went wrong: {event.error}")
    except (KeyboardInterrupt, EOFError):
        print("\nFarewell!")
    finally:
        if session_client is not None:
            await session_client.aclose()


if __name__ == "__main__":
    name = sys.argv[1] if len(sys.argv) > 1 else "steam"
    asyncio.run(main(ChatSection(name)))
