"""Optional OpenTelemetry tracing for parley.

Call ``parley.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; every span helper is a
no-op otherwise.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "parley") -> None:
    """Enable OpenTelemetry tracing for turns, completions, tools and
    tool-protocol requests.

    Configure a TracerProvider first; ``pip install parley[otel]``
    provides the API package.

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install parley[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be discarded"
        )
    else:
        logger.info("Parley instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def turn_span(thread_id: str, model: str):
    """Wrap one orchestrated turn (all of its rounds)."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        "conversation_turn",
        attributes={
            "gen_ai.operation.name": "invoke_agent",
            "gen_ai.conversation.id": thread_id,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def completion_span(model: str, round_index: int):
    """Wrap one streamed completion request."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"chat {model}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.request.model": model,
            "parley.round": round_index,
        },
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str):
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}",
        attributes={
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    ) as span:
        yield span


@asynccontextmanager
async def session_span(method: str, request_id: int):
    """Wrap one tool-protocol JSON-RPC request."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"rpc {method}",
        kind=SpanKind.CLIENT,
        attributes={
            "rpc.system": "jsonrpc",
            "rpc.method": method,
            "rpc.jsonrpc.request_id": request_id,
        },
    ) as span:
        yield span


def record_tool_calls(span, count: int, decode_errors: int = 0) -> None:
    if span is None:
        return
    span.set_attribute("parley.tool_calls", count)
    if decode_errors:
        span.set_attribute("parley.tool_call_decode_errors", decode_errors)


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )
