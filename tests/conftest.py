import asyncio
import json

import httpx
import pytest
from openai import AsyncOpenAI

from parley.completion import CompletionClient, TurnResolution
from parley.errors import ToolCallDecodeError
from parley.executor import ToolExecutor
from parley.message import Thread, ToolCall, ToolResult
from parley.streaming import ContentFragment
from parley.tools import tool


# ---------------------------------------------------------------------------
# Wire-format builders (mirror the completion service's stream shape)
# ---------------------------------------------------------------------------

def content_chunk(text: str, finish_reason: str | None = None) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": finish_reason}]}


def tool_call_chunk(
    index: int,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> dict:
    function = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    tc = {"index": index, "function": function}
    if call_id is not None:
        tc["id"] = call_id
    return {"choices": [{"index": 0, "delta": {"tool_calls": [tc]}, "finish_reason": None}]}


def finish_chunk(reason: str) -> dict:
    return {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}


def sse_body(*payloads: dict, done: bool = True) -> bytes:
    """Encode payloads as ``data:`` records, optionally ending with [DONE]."""
    records = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    if done:
        records.append("data: [DONE]\n\n")
    return "".join(records).encode("utf-8")


def text_stream(text: str) -> bytes:
    words = text.split(" ")
    chunks = [content_chunk(w if i == 0 else " " + w) for i, w in enumerate(words)]
    return sse_body(*chunks, finish_chunk("stop"))


def tool_call_stream(calls: list[tuple[str, dict, str]]) -> bytes:
    """Stream tool calls, splitting each argument string in two fragments."""
    chunks = []
    for index, (name, args, call_id) in enumerate(calls):
        arguments = json.dumps(args)
        half = len(arguments) // 2
        chunks.append(tool_call_chunk(index, call_id=call_id, name=name, arguments=""))
        chunks.append(tool_call_chunk(index, arguments=arguments[:half]))
        chunks.append(tool_call_chunk(index, arguments=arguments[half:]))
    return sse_body(*chunks, finish_chunk("tool_calls"))


def make_openai_client(handler) -> AsyncOpenAI:
    """AsyncOpenAI wired to an in-process transport. No network calls."""
    return AsyncOpenAI(
        api_key="test-key",
        base_url="http://completion.test/v1",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class CompletionServer:
    """Serves queued SSE bodies to successive completion requests."""

    def __init__(self, bodies: list[bytes | httpx.Response] | None = None):
        self.bodies = list(bodies or [])
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        body = self.bodies.pop(0)
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(
            200, content=body, headers={"content-type": "text/event-stream"},
        )


# ---------------------------------------------------------------------------
# Scripted completion client
# ---------------------------------------------------------------------------

class ScriptedCompletionClient(CompletionClient):
    """Completion client that replays queued turns. No network calls.

    Each queued item is either a list of content fragments and a final
    :class:`TurnResolution`, or an exception raised after any content.
    """

    def __init__(self):
        self.model = "mock-model"
        self.debug = False
        self.turns: list = []
        self.call_log: list[dict] = []

    async def stream_turn(self, messages, tools=None):
        self.call_log.append({"messages": list(messages), "tools": tools})
        script = self.turns.pop(0)
        for item in script:
            if isinstance(item, BaseException):
                raise item
            yield item
            await asyncio.sleep(0)


def make_text_turn(text: str) -> list:
    return [
        ContentFragment(text=text),
        TurnResolution(content=text, finish_reason="stop"),
    ]


def make_tool_call_turn(name: str, args: dict, call_id: str = "call_1") -> list:
    return make_multi_tool_call_turn([(name, args, call_id)])


def make_multi_tool_call_turn(calls: list[tuple[str, dict, str]]) -> list:
    tool_calls = [
        ToolCall(id=call_id, name=name, arguments=json.dumps(args))
        for name, args, call_id in calls
    ]
    return [TurnResolution(tool_calls=tool_calls, finish_reason="tool_calls")]


def make_undecodable_tool_turn() -> list:
    return [TurnResolution(
        finish_reason="tool_calls",
        decode_errors=[ToolCallDecodeError(0, "invalid arguments JSON", "web_search")],
    )]


# ---------------------------------------------------------------------------
# Scripted executor
# ---------------------------------------------------------------------------

class ScriptedExecutor(ToolExecutor):
    """Executor whose tools are plain async callables keyed by name.

    A callable may return a payload, raise to produce an error result, or
    sleep to simulate a slow tool.
    """

    def __init__(self, handlers: dict):
        self.handlers = handlers
        self.executed: list[ToolCall] = []

    def manifest(self) -> list[dict]:
        return [
            {"type": "function", "function": {"name": name, "description": "", "parameters": {}}}
            for name in self.handlers
        ]

    async def execute(self, call: ToolCall) -> ToolResult:
        self.executed.append(call)
        try:
            payload = await self.handlers[call.name](**call.parsed_arguments())
        except Exception as e:
            return ToolResult.error(call, str(e))
        return ToolResult.success(call, payload)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@tool
def echo(text: str):
    """Echo text back."""
    return text


@tool
async def async_echo(text: str):
    """Async echo."""
    return f"async: {text}"


@tool
def get_data():
    """Return structured data."""
    return {"items": [1, 2, 3]}


@tool
def explode():
    """Always fails."""
    raise RuntimeError("kaboom")


@pytest.fixture
def completion():
    return ScriptedCompletionClient()


@pytest.fixture
def thread():
    return Thread()
