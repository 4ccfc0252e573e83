"""Events emitted to the caller while a conversation turn runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from parley.message import Message, ToolCall, ToolResult

if TYPE_CHECKING:
    from parley.orchestrator import TurnState


@dataclass
class StreamEvent:
    """Base for all turn events."""


@dataclass
class ContentDelta(StreamEvent):
    """Text fragment from the model, forwarded as soon as it arrives."""

    text: str = ""


@dataclass
class ToolCallStarted(StreamEvent):
    tool_call: ToolCall | None = None


@dataclass
class ToolResultEvent(StreamEvent):
    """A tool call settled (or was given up on at the wait ceiling)."""

    result: ToolResult | None = None


@dataclass
class StateChanged(StreamEvent):
    state: TurnState | None = None


@dataclass
class DebugMessage(StreamEvent):
    """Diagnostic system note, only emitted when debug mode is on."""

    message: Message | None = None


@dataclass
class TurnComplete(StreamEvent):
    """Final event of a successful turn.

    ``tool_results`` are the results associated with ``message``; empty
    when the turn needed no tools.
    """

    message: Message | None = None
    tool_results: list[ToolResult] = field(default_factory=list)


@dataclass
class TurnFailed(StreamEvent):
    """Final event of a failed turn. Emitted at most once per turn."""

    error: BaseException | None = None
    state: TurnState | None = None
