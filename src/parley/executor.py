import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Any

from parley import instrumentation
from parley.errors import SessionError, ToolExecutionError
from parley.message import ToolCall, ToolResult
from parley.session import ProgressUpdate, SessionClient
from parley.tools import Tool

logger = logging.getLogger(__name__)


class ToolExecutor(ABC):
    """Runs tool calls by name.

    ``execute`` never raises for tool-level failures: unknown tools, bad
    arguments and exceptions from the tool itself all come back as an
    error :class:`ToolResult`.
    """

    @abstractmethod
    def manifest(self) -> list[dict]:
        """Return the function-tool schemas offered to the model."""
        ...

    @abstractmethod
    async def execute(self, call: ToolCall) -> ToolResult:
        ...

    def tool_names(self) -> list[str]:
        return [entry["function"]["name"] for entry in self.manifest()]


def _parse_arguments(call: ToolCall) -> dict:
    params = call.parsed_arguments()
    if not isinstance(params, dict):
        raise ValueError("arguments must be a JSON object")
    return params


class LocalToolExecutor(ToolExecutor):
    """Executes in-process :class:`Tool` objects.

    Raises:
        ValueError: If two tools share a name.
    """

    def __init__(self, tools: Sequence[Tool]):
        self.registry: dict[str, Tool] = {}
        for t in tools:
            if t.name in self.registry:
                raise ValueError(f"Duplicate tool name: '{t.name}'")
            self.registry[t.name] = t

    def manifest(self) -> list[dict]:
        return [t.get_schema() for t in self.registry.values()]

    async def execute(self, call: ToolCall) -> ToolResult:
        tool_obj = self.registry.get(call.name)
        if tool_obj is None:
            logger.warning(f"Tool not found: {call.name}")
            return ToolResult.error(call, f"tool '{call.name}' not found")

        try:
            params = _parse_arguments(call)
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Invalid arguments for {call.name}: {e}")
            return ToolResult.error(call, f"invalid arguments ({e})")

        logger.info(f"Calling {call.name} with {params}")
        async with instrumentation.tool_span(call.name, call.id) as span:
            try:
                output = await tool_obj(**params)
            except ToolExecutionError as e:
                logger.info(f"Tool {call.name} reported failure: {e}")
                instrumentation.record_error(span, e)
                return ToolResult.error(call, str(e))
            except Exception as e:
                logger.error(f"Tool {call.name} raised: {e}")
                instrumentation.record_error(span, e)
                return ToolResult.error(call, str(e) or type(e).__name__)
        return ToolResult.success(call, output)


def _flatten_content(result: dict) -> Any:
    """Reduce a ``tools/call`` result to the payload shown to the model."""
    if "structuredContent" in result:
        return result["structuredContent"]
    blocks = result.get("content") or []
    texts = [b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"]
    if texts and len(texts) == len(blocks):
        joined = "\n".join(texts)
        try:
            return json.loads(joined)
        except json.JSONDecodeError:
            return joined
    return blocks


class SessionToolExecutor(ToolExecutor):
    """Executes tools hosted behind a :class:`SessionClient`.

    Args:
        session_client: A connected client whose cached manifest is used.
        on_progress: Receives progress notifications for the call in
            flight.  A fresh progress token is registered per call and
            always unregistered afterwards.
    """

    def __init__(
        self,
        session_client: SessionClient,
        on_progress: Callable[[ToolCall, ProgressUpdate], Any] | None = None,
    ):
        self.session_client = session_client
        self.on_progress = on_progress

    def manifest(self) -> list[dict]:
        return [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("inputSchema") or {"type": "object", "properties": {}},
                },
            }
            for t in self.session_client.tools
        ]

    async def execute(self, call: ToolCall) -> ToolResult:
        try:
            params = _parse_arguments(call)
        except (json.JSONDecodeError, ValueError) as e:
            return ToolResult.error(call, f"invalid arguments ({e})")

        token = None
        if self.on_progress is not None:
            token = self.session_client.generate_progress_token()
            self.session_client.register_progress_callback(
                token, lambda update: self.on_progress(call, update),
            )
        try:
            async with instrumentation.tool_span(call.name, call.id) as span:
                try:
                    result = await self.session_client.call_tool(
                        call.name, params, progress_token=token,
                    )
                except SessionError as e:
                    logger.error(f"Remote tool {call.name} failed: {e}")
                    instrumentation.record_error(span, e)
                    return ToolResult.error(call, str(e))
        finally:
            if token is not None:
                self.session_client.unregister_progress_callback(token)

        result = result or {}
        payload = _flatten_content(result)
        if result.get("isError"):
            message = payload if isinstance(payload, str) else json.dumps(payload)
            return ToolResult.error(call, message)
        return ToolResult.success(call, payload)


class CompositeToolExecutor(ToolExecutor):
    """Routes calls across several executors by tool name.

    The first executor offering a name owns it; later duplicates are
    ignored with a warning.
    """

    def __init__(self, executors: Sequence[ToolExecutor]):
        self.executors = list(executors)

    def _routes(self) -> tuple[dict[str, ToolExecutor], list[dict]]:
        routes: dict[str, ToolExecutor] = {}
        manifest: list[dict] = []
        for executor in self.executors:
            for entry in executor.manifest():
                name = entry["function"]["name"]
                if name in routes:
                    logger.warning(f"Tool '{name}' offered twice, keeping the first")
                    continue
                routes[name] = executor
                manifest.append(entry)
        return routes, manifest

    def manifest(self) -> list[dict]:
        return self._routes()[1]

    async def execute(self, call: ToolCall) -> ToolResult:
        executor = self._routes()[0].get(call.name)
        if executor is None:
            logger.warning(f"Tool not found: {call.name}")
            return ToolResult.error(call, f"tool '{call.name}' not found")
        return await executor.execute(call)
