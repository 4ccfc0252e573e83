"""Streaming primitives for completion responses.

:class:`StreamDecoder` turns raw response bytes into decoder events.  The
:class:`ToolCallAccumulator` reassembles tool calls whose arguments
arrive in fragments across multiple events.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass

from parley.errors import ToolCallDecodeError
from parley.message import ToolCall
from parley.sse import ServerSentEvent, SSEParser

logger = logging.getLogger(__name__)

END_MARKER = "[DONE]"
TOOL_CALLS_FINISH_REASON = "tool_calls"


@dataclass
class ContentFragment:
    """Text content from one choice delta."""

    text: str = ""


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming delta."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class FinishReason:
    reason: str = ""


@dataclass
class StreamEnd:
    """The server sent the end marker."""


DecoderEvent = ContentFragment | ToolCallFragment | FinishReason | StreamEnd


class StreamDecoder:
    """Stateful decoder for one completion response stream.

    Call :meth:`decode` with every chunk as it arrives and :meth:`close`
    once the transport is exhausted.  Malformed records are logged and
    dropped; they never abort the stream.

    Args:
        debug: Log every raw data payload at DEBUG level.
    """

    def __init__(self, debug: bool = False) -> None:
        self._parser = SSEParser()
        self.debug = debug
        self.dropped_records = 0

    def decode(self, chunk: bytes) -> list[DecoderEvent]:
        return self._convert(self._parser.feed(chunk))

    def close(self) -> list[DecoderEvent]:
        return self._convert(self._parser.flush())

    def _convert(self, records: list[ServerSentEvent]) -> list[DecoderEvent]:
        events: list[DecoderEvent] = []
        for record in records:
            events.extend(self._decode_record(record))
        return events

    def _decode_record(self, record: ServerSentEvent) -> list[DecoderEvent]:
        payload = record.data.strip()
        if self.debug:
            logger.debug(f"Stream record: {payload!r}")
        if not payload:
            return []
        if payload == END_MARKER:
            return [StreamEnd()]

        try:
            body = json.loads(payload)
        except json.JSONDecodeError as e:
            self.dropped_records += 1
            logger.warning(f"Dropping non-JSON stream record: {e}")
            return []

        try:
            return self._events_from_body(body)
        except (TypeError, ValueError, AttributeError) as e:
            self.dropped_records += 1
            logger.warning(f"Dropping malformed stream record: {e}")
            return []

    def _events_from_body(self, body: dict) -> list[DecoderEvent]:
        if "error" in body and not body.get("choices"):
            raise ValueError(f"error record {body['error']!r}")

        events: list[DecoderEvent] = []
        for choice in body.get("choices") or []:
            delta = choice.get("delta") or {}
            content = delta.get("content")
            if content:
                events.append(ContentFragment(text=content))
            for tc in delta.get("tool_calls") or []:
                function = tc.get("function") or {}
                events.append(ToolCallFragment(
                    index=int(tc.get("index", 0)),
                    call_id=tc.get("id"),
                    name=function.get("name"),
                    arguments_delta=function.get("arguments"),
                ))
            reason = choice.get("finish_reason")
            if reason:
                events.append(FinishReason(reason=reason))
        return events


@dataclass
class _PartialToolCall:
    id: str | None = None
    name: str | None = None
    arguments: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    Names and ids arrive once and overwrite; argument text is appended in
    arrival order and only parsed in :meth:`finalize`.
    """

    def __init__(self) -> None:
        self._pending: dict[int, _PartialToolCall] = {}
        self.errors: list[ToolCallDecodeError] = []

    @property
    def has_fragments(self) -> bool:
        return bool(self._pending)

    def apply(self, fragment: ToolCallFragment) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = _PartialToolCall()
        tc = self._pending[fragment.index]
        if fragment.call_id:
            tc.id = fragment.call_id
        if fragment.name:
            tc.name = fragment.name
        if fragment.arguments_delta:
            tc.arguments += fragment.arguments_delta

    def finalize(self) -> list[ToolCall]:
        """Return completed tool calls in index order.

        Calls without a name or with unparsable arguments are left out and
        recorded in :attr:`errors`.
        """
        calls: list[ToolCall] = []
        self.errors = []
        for index in sorted(self._pending):
            partial = self._pending[index]
            if not partial.name:
                self._reject(index, "missing tool name", None)
                continue
            arguments = partial.arguments if partial.arguments.strip() else "{}"
            try:
                parsed = json.loads(arguments)
            except json.JSONDecodeError as e:
                self._reject(index, f"invalid arguments JSON ({e})", partial.name)
                continue
            if not isinstance(parsed, dict):
                self._reject(index, "arguments are not a JSON object", partial.name)
                continue
            calls.append(ToolCall(
                id=partial.id or f"call_{index}_{uuid.uuid4().hex[:8]}",
                name=partial.name,
                arguments=arguments,
            ))
        return calls

    def _reject(self, index: int, reason: str, name: str | None) -> None:
        error = ToolCallDecodeError(index=index, reason=reason, name=name)
        logger.warning(str(error))
        self.errors.append(error)
