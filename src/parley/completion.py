import inspect
import logging
import os
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field

import httpx
from openai import APIError, APIStatusError, AsyncOpenAI

from parley.config import ParleySettings
from parley.errors import CompletionError, ToolCallDecodeError
from parley.message import Message, ToolCall
from parley.streaming import (
    TOOL_CALLS_FINISH_REASON,
    ContentFragment,
    FinishReason,
    StreamDecoder,
    StreamEnd,
    ToolCallAccumulator,
    ToolCallFragment,
)

logger = logging.getLogger(__name__)


@dataclass
class TurnResolution:
    """How one streamed completion ended.

    ``tool_calls`` is only populated when the model finished with
    ``tool_calls``; ``decode_errors`` lists calls that were streamed but
    could not be reassembled.
    """

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    decode_errors: list[ToolCallDecodeError] = field(default_factory=list)
    finish_reason: str | None = None

    @property
    def is_tool_pending(self) -> bool:
        return self.finish_reason == TOOL_CALLS_FINISH_REASON


def _to_wire(message: Message | dict) -> dict:
    if isinstance(message, Message):
        return message.to_wire()
    return message


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class CompletionClient:
    """Streaming client for an OpenAI-compatible chat completion service.

    Every call to :meth:`stream_turn` issues exactly one request and owns
    its own decoder and accumulator.  Retries are disabled; retry policy
    belongs to the caller.

    Args:
        model: Model name sent with every request.
        api_key: Service credential, defaults to ``OPENAI_API_KEY``.
        base_url: Alternative OpenAI-compatible endpoint.
        max_tokens: Completion length cap.
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        debug: Log requests and raw stream records at DEBUG level.
        client: Pre-built ``AsyncOpenAI`` instance, mainly for tests.
    """

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 1500,
        temperature: float = 0.7,
        timeout: float = 600.0,
        debug: bool = False,
        client: AsyncOpenAI | None = None,
    ):
        if client is None:
            if not api_key:
                api_key = os.getenv("OPENAI_API_KEY")
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                max_retries=0,
                timeout=timeout,
            )
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.debug = debug

    @classmethod
    def from_settings(cls, settings: ParleySettings) -> "CompletionClient":
        return cls(
            model=settings.model,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            max_tokens=settings.max_tokens,
            temperature=settings.temperature,
            debug=settings.debug,
        )

    def build_request(
        self,
        messages: Sequence[Message | dict],
        tools: list[dict] | None = None,
    ) -> dict:
        request = {
            "model": self.model,
            "messages": [_to_wire(m) for m in messages],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": True,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"
        return request

    async def stream_turn(
        self,
        messages: Sequence[Message | dict],
        tools: list[dict] | None = None,
    ) -> AsyncIterator[ContentFragment | TurnResolution]:
        """Stream one completion.

        Yields :class:`ContentFragment` events as they arrive, then exactly
        one :class:`TurnResolution`.

        Raises:
            CompletionError: On connection, HTTP status or SDK failures.
                Content already yielded stays yielded.
        """
        request = self.build_request(messages, tools)
        if self.debug:
            logger.debug(
                f"Completion request: model={self.model} "
                f"messages={len(request['messages'])} "
                f"tools={len(tools or [])}"
            )

        decoder = StreamDecoder(debug=self.debug)
        accumulator = ToolCallAccumulator()
        resolution = TurnResolution()
        content_parts: list[str] = []

        try:
            async with self.client.chat.completions.with_streaming_response.create(
                **request
            ) as response:
                ended = False
                async for chunk in response.iter_bytes():
                    for event in decoder.decode(chunk):
                        if isinstance(event, StreamEnd):
                            ended = True
                            break
                        fragment = self._apply(event, accumulator, resolution)
                        if fragment is not None:
                            content_parts.append(fragment.text)
                            yield fragment
                    if ended:
                        break
                if not ended:
                    for event in decoder.close():
                        if isinstance(event, StreamEnd):
                            break
                        fragment = self._apply(event, accumulator, resolution)
                        if fragment is not None:
                            content_parts.append(fragment.text)
                            yield fragment
        except APIStatusError as e:
            logger.error(f"Completion request rejected with HTTP {e.status_code}: {e.message}")
            raise CompletionError(
                f"HTTP {e.status_code}: {e.message}", status_code=e.status_code,
            ) from e
        except (APIError, httpx.HTTPError) as e:
            logger.error(f"Completion request failed: {e}")
            raise CompletionError(f"Completion request failed: {e}") from e

        resolution.content = "".join(content_parts)
        if resolution.is_tool_pending:
            resolution.tool_calls = accumulator.finalize()
            resolution.decode_errors = list(accumulator.errors)
            logger.info(
                f"Turn resolved with {len(resolution.tool_calls)} tool call(s)"
                + (f", {len(resolution.decode_errors)} undecodable" if resolution.decode_errors else "")
            )
        elif accumulator.has_fragments:
            logger.warning(
                f"Discarding streamed tool-call fragments: turn finished with "
                f"{resolution.finish_reason!r}"
            )
        yield resolution

    def _apply(self, event, accumulator, resolution) -> ContentFragment | None:
        if isinstance(event, ContentFragment):
            return event
        if isinstance(event, ToolCallFragment):
            accumulator.apply(event)
        elif isinstance(event, FinishReason):
            resolution.finish_reason = event.reason
        return None

    async def complete(
        self,
        messages: Sequence[Message | dict],
        tools: list[dict] | None = None,
        *,
        on_content: Callable[[str], object] | None = None,
        on_tool_calls: Callable[[list[ToolCall]], object] | None = None,
        on_complete: Callable[[TurnResolution], object] | None = None,
        on_error: Callable[[BaseException], object] | None = None,
    ) -> TurnResolution | None:
        """Callback-channel variant of :meth:`stream_turn`.

        Exactly one of ``on_complete`` / ``on_error`` fires.  Tool calls are
        handed to ``on_tool_calls`` all at once, before ``on_complete``.
        Returns the resolution, or ``None`` when the request failed.
        """
        try:
            resolution = None
            async for item in self.stream_turn(messages, tools):
                if isinstance(item, TurnResolution):
                    resolution = item
                elif on_content is not None:
                    await _maybe_await(on_content(item.text))
        except CompletionError as e:
            if on_error is not None:
                await _maybe_await(on_error(e))
            return None

        if resolution.is_tool_pending and on_tool_calls is not None:
            await _maybe_await(on_tool_calls(list(resolution.tool_calls)))
        if on_complete is not None:
            await _maybe_await(on_complete(resolution))
        return resolution
