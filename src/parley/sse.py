"""Server-Sent Events framing.

:class:`SSEParser` turns raw bytes from a push stream into event records.
:func:`sse_generator` goes the other way and renders turn events for a
host service that relays them to its own clients.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, fields
from enum import Enum

from pydantic import BaseModel

from parley.events import StreamEvent


@dataclass
class ServerSentEvent:
    """One dispatched event record."""

    event: str = "message"
    data: str = ""
    id: str | None = None
    retry: int | None = None


class SSEParser:
    """Incremental event-record parser.

    Records are not aligned with transport chunks, so partial lines are
    buffered between :meth:`feed` calls.  Bytes are decoded incrementally
    so multi-byte characters may be split across chunks.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event = ""
        self._data: list[str] = []
        self._id: str | None = None
        self._retry: int | None = None
        self._pending_cr = False

    def feed(self, chunk: bytes) -> list[ServerSentEvent]:
        text = self._decoder.decode(chunk)
        return self._consume(text)

    def flush(self) -> list[ServerSentEvent]:
        """Dispatch whatever is left once the stream has ended."""
        events = self._consume(self._decoder.decode(b"", final=True))
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._process_line(line)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _consume(self, text: str) -> list[ServerSentEvent]:
        if not text:
            return []
        if self._pending_cr and text.startswith("\n"):
            text = text[1:]
        self._pending_cr = False
        self._buffer += text

        events: list[ServerSentEvent] = []
        while True:
            cut = _find_line_end(self._buffer)
            if cut is None:
                break
            end, width = cut
            line = self._buffer[:end]
            # A trailing \r may be the first half of \r\n in the next chunk.
            if width == 1 and self._buffer[end] == "\r" and end + 1 == len(self._buffer):
                self._pending_cr = True
            self._buffer = self._buffer[end + width:]
            if line == "":
                event = self._dispatch()
                if event is not None:
                    events.append(event)
            else:
                self._process_line(line)
        return events

    def _process_line(self, line: str) -> None:
        if line.startswith(":"):
            return
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value
        elif name == "retry" and value.isdigit():
            self._retry = int(value)

    def _dispatch(self) -> ServerSentEvent | None:
        if not self._data:
            self._event = ""
            return None
        event = ServerSentEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._id,
            retry=self._retry,
        )
        self._event = ""
        self._data = []
        return event


def _find_line_end(buffer: str) -> tuple[int, int] | None:
    for i, ch in enumerate(buffer):
        if ch == "\n":
            return i, 1
        if ch == "\r":
            if i + 1 < len(buffer) and buffer[i + 1] == "\n":
                return i, 2
            return i, 1
    return None


def _jsonable(value):
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, BaseException):
        return {"type": type(value).__name__, "message": str(value)}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def event_payload(event: StreamEvent) -> dict:
    return {f.name: _jsonable(getattr(event, f.name)) for f in fields(event)}


async def sse_generator(
    event_stream: AsyncIterator[StreamEvent],
) -> AsyncIterator[str]:
    """Convert a StreamEvent async iterator into SSE-formatted strings."""
    async for event in event_stream:
        event_type = type(event).__name__
        data = json.dumps(event_payload(event))
        yield f"event: {event_type}\ndata: {data}\n\n"
    yield "event: done\ndata: {}\n\n"
