"""Exception hierarchy for parley.

Recoverable faults (a bad stream record, a failing tool) are turned into
values by the component that sees them.  The exceptions below are the
fatal ones: they end the current round or handshake and reach the caller
exactly once.
"""

from __future__ import annotations


class ParleyError(Exception):
    """Base class for every error raised by parley."""


class CompletionError(ParleyError):
    """The completion request failed at the transport or HTTP level."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolCallDecodeError(ParleyError):
    """A streamed tool call could not be reassembled.

    Args:
        index: Position of the call in the streamed turn.
        reason: Why the call was rejected.
        name: Tool name, if one was streamed.
    """

    def __init__(self, index: int, reason: str, name: str | None = None):
        label = f"'{name}'" if name else f"at index {index}"
        super().__init__(f"Tool call {label} could not be decoded: {reason}")
        self.index = index
        self.reason = reason
        self.name = name


class ToolExecutionError(ParleyError):
    """Raised by tool implementations to report a failure message."""


class TurnError(ParleyError):
    """A conversation turn could not run to completion."""


class ThreadBusyError(TurnError):
    """Another turn is already in flight on the same thread."""

    def __init__(self, thread_id: str):
        super().__init__(f"Thread '{thread_id}' already has a turn in flight")
        self.thread_id = thread_id


class ToolRoundLimitError(TurnError):
    """The model kept requesting tools past the per-turn round cap."""

    def __init__(self, max_rounds: int):
        super().__init__(
            f"Model requested tools for more than {max_rounds} rounds"
        )
        self.max_rounds = max_rounds


class ThreadNotFoundError(ParleyError):
    def __init__(self, section: str, thread_id: str):
        super().__init__(f"Thread '{thread_id}' not found in section '{section}'")
        self.section = section
        self.thread_id = thread_id


class SessionError(ParleyError):
    """A tool-protocol request failed."""


class HandshakeError(SessionError):
    """The ``initialize`` exchange did not produce a usable session."""


class NotConnectedError(SessionError):
    def __init__(self, operation: str):
        super().__init__(f"Cannot {operation}: session is not connected")
        self.operation = operation


class SessionRequestError(SessionError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data=None):
        super().__init__(f"JSON-RPC Error {code}: {message}")
        self.code = code
        self.rpc_message = message
        self.data = data
