from parley.completion import CompletionClient, TurnResolution
from parley.config import ParleySettings, configure_logging
from parley.errors import (
    CompletionError,
    HandshakeError,
    NotConnectedError,
    ParleyError,
    SessionError,
    SessionRequestError,
    ThreadBusyError,
    ThreadNotFoundError,
    ToolCallDecodeError,
    ToolExecutionError,
    ToolRoundLimitError,
    TurnError,
)
from parley.events import (
    ContentDelta,
    DebugMessage,
    StateChanged,
    StreamEvent,
    ToolCallStarted,
    ToolResultEvent,
    TurnComplete,
    TurnFailed,
)
from parley.executor import (
    CompositeToolExecutor,
    LocalToolExecutor,
    SessionToolExecutor,
    ToolExecutor,
)
from parley.instrumentation import instrument, uninstrument
from parley.message import (
    Message,
    MessageRole,
    Thread,
    ToolCall,
    ToolResult,
    ToolResultStatus,
)
from parley.orchestrator import ToolOrchestrator, TurnState
from parley.sections import ChatSection
from parley.session import ProgressUpdate, Session, SessionClient, SessionState
from parley.store import InMemoryThreadStore, JsonFileThreadStore, ThreadStore
from parley.streaming import StreamDecoder, ToolCallAccumulator
from parley.tools import Tool, tool

__all__ = [
    "ChatSection",
    "CompletionClient",
    "CompletionError",
    "CompositeToolExecutor",
    "ContentDelta",
    "DebugMessage",
    "HandshakeError",
    "InMemoryThreadStore",
    "JsonFileThreadStore",
    "LocalToolExecutor",
    "Message",
    "MessageRole",
    "NotConnectedError",
    "ParleyError",
    "ParleySettings",
    "ProgressUpdate",
    "Session",
    "SessionClient",
    "SessionError",
    "SessionRequestError",
    "SessionState",
    "SessionToolExecutor",
    "StateChanged",
    "StreamDecoder",
    "StreamEvent",
    "Thread",
    "ThreadBusyError",
    "ThreadNotFoundError",
    "ThreadStore",
    "Tool",
    "ToolCall",
    "ToolCallAccumulator",
    "ToolCallDecodeError",
    "ToolCallStarted",
    "ToolExecutionError",
    "ToolExecutor",
    "ToolOrchestrator",
    "ToolResult",
    "ToolResultEvent",
    "ToolResultStatus",
    "ToolRoundLimitError",
    "TurnComplete",
    "TurnError",
    "TurnFailed",
    "TurnResolution",
    "TurnState",
    "configure_logging",
    "instrument",
    "tool",
    "uninstrument",
]
