"""End-to-end turns over in-process transports.

The real CompletionClient talks to a scripted completion endpoint and the
real SessionClient talks to a scripted tool server; nothing leaves the
process.
"""

import json

import httpx
import pytest

from parley.builtin_tools import builtin_tools
from parley.completion import CompletionClient
from parley.errors import CompletionError
from parley.events import ContentDelta, ToolCallStarted, ToolResultEvent, TurnComplete, TurnFailed
from parley.executor import CompositeToolExecutor, LocalToolExecutor, SessionToolExecutor
from parley.message import MessageRole, ToolResultStatus
from parley.orchestrator import ToolOrchestrator
from parley.sections import ChatSection
from parley.session import SessionClient
from parley.store import JsonFileThreadStore
from tests.conftest import (
    CompletionServer,
    make_openai_client,
    text_stream,
    tool_call_stream,
)


async def in_pieces(body: bytes, size: int):
    for i in range(0, len(body), size):
        yield body[i:i + size]


def chunked(body: bytes, size: int = 7) -> httpx.Response:
    return httpx.Response(
        200, content=in_pieces(body, size), headers={"content-type": "text/event-stream"},
    )


def completion_client(server) -> CompletionClient:
    return CompletionClient(model="gpt-test", client=make_openai_client(server))


class ToolServer:
    """Minimal JSON-RPC tool server hosting ``workshop_search``."""

    def __init__(self):
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(405)
        body = json.loads(request.content)
        if "id" not in body:
            return httpx.Response(202)

        method = body["method"]
        if method == "initialize":
            return httpx.Response(200, json={
                "jsonrpc": "2.0", "id": body["id"],
                "result": {"protocolVersion": "2024-11-05", "capabilities": {}, "serverInfo": {"name": "workshop"}},
            }, headers={"Mcp-Session-Id": "s-1", "MCP-Protocol-Version": "2024-11-05"})
        if method == "tools/list":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"tools": [{
                "name": "workshop_search",
                "description": "Search Workshop items",
                "inputSchema": {"type": "object", "properties": {"term": {"type": "string"}}, "required": ["term"]},
            }]}})

        self.calls.append(body["params"])
        token = body["params"].get("_meta", {}).get("progressToken")
        records = []
        if token:
            records.append({
                "jsonrpc": "2.0", "method": "notifications/progress",
                "params": {"progressToken": token, "progress": 1, "total": 1, "message": "searching"},
            })
        records.append({
            "jsonrpc": "2.0", "id": body["id"],
            "result": {"content": [{"type": "text", "text": json.dumps({"items": ["cs_office remake"]})}]},
        })
        payload = "".join(f"data: {json.dumps(r)}\n\n" for r in records)
        return httpx.Response(200, content=payload.encode(), headers={"content-type": "text/event-stream"})


class TestLocalToolTurn:
    @pytest.mark.asyncio
    async def test_web_search_round_trip(self, tmp_path):
        server = CompletionServer([
            chunked(tool_call_stream([("web_search", {"query": "steam deck battery", "max_results": 2}, "call_ws")])),
            chunked(text_stream("The Deck lasts 2 to 8 hours."), size=5),
        ])
        store = JsonFileThreadStore(str(tmp_path / "threads.json"))
        orchestrator = ToolOrchestrator(
            completion_client(server),
            LocalToolExecutor(builtin_tools()),
            store=store,
            section=ChatSection.STEAM,
        )
        thread = orchestrator.new_thread()

        events = [e async for e in orchestrator.iter_turn(thread, "How long does the Steam Deck battery last?")]

        started = [e.tool_call for e in events if isinstance(e, ToolCallStarted)]
        assert [(c.id, c.name) for c in started] == [("call_ws", "web_search")]
        assert started[0].parsed_arguments() == {"query": "steam deck battery", "max_results": 2}

        settled = [e.result for e in events if isinstance(e, ToolResultEvent)]
        assert settled[0].status == ToolResultStatus.SUCCESS
        assert len(settled[0].payload["results"]) == 2

        text = "".join(e.text for e in events if isinstance(e, ContentDelta))
        assert text == "The Deck lasts 2 to 8 hours."
        final = events[-1]
        assert isinstance(final, TurnComplete)
        assert final.message.content == text
        assert orchestrator.results_for(final.message.id) == final.tool_results

        first_request, second_request = server.requests
        assert first_request["messages"][0]["role"] == "system"
        assert {t["function"]["name"] for t in first_request["tools"]} == {
            "web_search", "file_analyzer", "code_executor",
        }
        tool_message = second_request["messages"][-1]
        assert tool_message["role"] == "tool"
        assert tool_message["tool_call_id"] == "call_ws"
        assert json.loads(tool_message["content"])["query"] == "steam deck battery"

        reopened = JsonFileThreadStore(str(tmp_path / "threads.json"))
        stored = reopened.get_thread("steam", thread.id)
        assert [m.role for m in stored.messages] == [
            MessageRole.SYSTEM, MessageRole.USER, MessageRole.ASSISTANT,
            MessageRole.TOOL, MessageRole.ASSISTANT,
        ]
        assert stored.name == "How long does the Steam Deck b..."

    @pytest.mark.asyncio
    async def test_failing_tool_still_answers(self):
        server = CompletionServer([
            tool_call_stream([("code_executor", {"code": "   "}, "call_ce")]),
            text_stream("There was no code to run."),
        ])
        orchestrator = ToolOrchestrator(completion_client(server), LocalToolExecutor(builtin_tools()))
        result = await orchestrator.run_turn(orchestrator.new_thread(), "run nothing")

        tool_message = server.requests[1]["messages"][-1]
        assert tool_message["content"] == "Error executing code_executor: no code to execute"
        assert result.tool_results[0].status == ToolResultStatus.ERROR

    @pytest.mark.asyncio
    async def test_http_failure_surfaces_once(self):
        server = CompletionServer([httpx.Response(429, json={"error": {"message": "slow down"}})])
        orchestrator = ToolOrchestrator(completion_client(server))
        thread = orchestrator.new_thread()

        events = [e async for e in orchestrator.iter_turn(thread, "hi")]

        failures = [e for e in events if isinstance(e, TurnFailed)]
        assert len(failures) == 1
        assert isinstance(failures[0].error, CompletionError)
        assert failures[0].error.status_code == 429
        assert [m.role for m in thread.messages] == [MessageRole.USER]


class TestRemoteToolTurn:
    @pytest.mark.asyncio
    async def test_session_tool_with_progress(self):
        tool_server = ToolServer()
        session_client = SessionClient(
            "http://workshop.test/mcp",
            client=httpx.AsyncClient(transport=httpx.MockTransport(tool_server)),
        )
        await session_client.connect()

        progress = []
        executor = CompositeToolExecutor([
            LocalToolExecutor(builtin_tools()),
            SessionToolExecutor(session_client, on_progress=lambda call, update: progress.append((call.id, update.message))),
        ])
        server = CompletionServer([
            tool_call_stream([("workshop_search", {"term": "office"}, "call_w")]),
            text_stream("Found a remake of cs_office."),
        ])
        orchestrator = ToolOrchestrator(completion_client(server), executor, section=ChatSection.SOURCE2)

        result = await orchestrator.run_turn(orchestrator.new_thread(), "Any office map remakes?")

        assert tool_server.calls[0]["name"] == "workshop_search"
        assert tool_server.calls[0]["arguments"] == {"term": "office"}
        assert progress == [("call_w", "searching")]
        assert result.tool_results[0].payload == {"items": ["cs_office remake"]}
        assert server.requests[1]["messages"][-1]["content"] == '{"items":["cs_office remake"]}'
        offered = [t["function"]["name"] for t in server.requests[0]["tools"]]
        assert offered[-1] == "workshop_search"

        await session_client.aclose()
        assert not session_client.is_connected
