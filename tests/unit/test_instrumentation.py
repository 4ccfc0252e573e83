"""Unit tests for the optional tracing layer.

OTel interactions go through ``unittest.mock``; ``opentelemetry-api`` is a
test dependency so ``SpanKind`` and ``StatusCode`` can be compared
directly.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.trace import SpanKind, StatusCode

import parley.instrumentation as inst
from parley.errors import CompletionError
from parley.instrumentation import (
    completion_span,
    record_error,
    record_tool_calls,
    session_span,
    tool_span,
    turn_span,
    uninstrument,
)
from parley.orchestrator import ToolOrchestrator
from tests.conftest import (
    ScriptedCompletionClient,
    ScriptedExecutor,
    make_text_turn,
    make_tool_call_turn,
)


@pytest.fixture(autouse=True)
def _reset_tracer():
    inst._tracer = None
    yield
    inst._tracer = None


def _patched_otel(mock_trace):
    return (
        patch("importlib.util.find_spec", return_value=MagicMock()),
        patch.dict("sys.modules", {
            "opentelemetry": MagicMock(trace=mock_trace),
            "opentelemetry.trace": mock_trace,
        }),
    )


def _mock_tracer():
    span = MagicMock()
    tracer = MagicMock()
    tracer.start_as_current_span.return_value.__enter__ = MagicMock(return_value=span)
    tracer.start_as_current_span.return_value.__exit__ = MagicMock(return_value=False)
    return tracer, span


# -------------------------------------------------------------------
# instrument() / uninstrument()
# -------------------------------------------------------------------


class TestInstrument:
    def test_requires_otel(self):
        with patch("importlib.util.find_spec", return_value=None):
            with pytest.raises(ImportError, match="parley\\[otel\\]"):
                inst.instrument()

    def test_default_tracer_name(self):
        tracer = MagicMock()
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = tracer
        mock_trace.NoOpTracer = type("NoOpTracer", (), {})

        p1, p2 = _patched_otel(mock_trace)
        with p1, p2:
            inst.instrument()

        assert inst._tracer is tracer
        mock_trace.get_tracer.assert_called_once_with("parley")

    def test_noop_tracer_logged(self, caplog):
        NoOpTracer = type("NoOpTracer", (), {})
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = NoOpTracer()
        mock_trace.NoOpTracer = NoOpTracer

        p1, p2 = _patched_otel(mock_trace)
        with p1, p2, caplog.at_level(logging.INFO, logger="parley.instrumentation"):
            inst.instrument(tracer_name="host-app")

        mock_trace.get_tracer.assert_called_once_with("host-app")
        assert any("No TracerProvider configured" in r.message for r in caplog.records)

    def test_uninstrument(self):
        inst._tracer = MagicMock()
        uninstrument()
        assert inst._tracer is None


# -------------------------------------------------------------------
# Span helpers
# -------------------------------------------------------------------


class TestSpans:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "span_fn,args",
        [
            (turn_span, ("thread-1", "m")),
            (completion_span, ("m", 0)),
            (tool_span, ("web_search", "call_1")),
            (session_span, ("tools/call", 3)),
        ],
        ids=["turn", "completion", "tool", "session"],
    )
    async def test_yield_none_when_disabled(self, span_fn, args):
        async with span_fn(*args) as span:
            assert span is None

    @pytest.mark.asyncio
    async def test_turn_span_attributes(self):
        tracer, span = _mock_tracer()
        inst._tracer = tracer

        async with turn_span("thread-1", "gpt-4o") as s:
            assert s is span

        tracer.start_as_current_span.assert_called_once_with(
            "conversation_turn",
            attributes={
                "gen_ai.operation.name": "invoke_agent",
                "gen_ai.conversation.id": "thread-1",
                "gen_ai.request.model": "gpt-4o",
            },
        )

    @pytest.mark.asyncio
    async def test_completion_span_attributes(self):
        tracer, _ = _mock_tracer()
        inst._tracer = tracer

        async with completion_span("gpt-4o", 2):
            pass

        tracer.start_as_current_span.assert_called_once_with(
            "chat gpt-4o",
            kind=SpanKind.CLIENT,
            attributes={
                "gen_ai.operation.name": "chat",
                "gen_ai.request.model": "gpt-4o",
                "parley.round": 2,
            },
        )

    @pytest.mark.asyncio
    async def test_session_span_attributes(self):
        tracer, _ = _mock_tracer()
        inst._tracer = tracer

        async with session_span("tools/list", 7):
            pass

        tracer.start_as_current_span.assert_called_once_with(
            "rpc tools/list",
            kind=SpanKind.CLIENT,
            attributes={
                "rpc.system": "jsonrpc",
                "rpc.method": "tools/list",
                "rpc.jsonrpc.request_id": 7,
            },
        )


# -------------------------------------------------------------------
# Recording helpers
# -------------------------------------------------------------------


class TestRecording:
    def test_tool_call_counts(self):
        span = MagicMock()
        record_tool_calls(span, 2, 1)

        span.set_attribute.assert_any_call("parley.tool_calls", 2)
        span.set_attribute.assert_any_call("parley.tool_call_decode_errors", 1)

    def test_zero_decode_errors_not_recorded(self):
        span = MagicMock()
        record_tool_calls(span, 3)
        span.set_attribute.assert_called_once_with("parley.tool_calls", 3)

    def test_helpers_ignore_missing_span(self):
        record_tool_calls(None, 1)
        record_error(None, RuntimeError("x"))

    def test_record_error(self):
        span = MagicMock()
        error = CompletionError("HTTP 502: bad gateway", status_code=502)
        record_error(span, error)

        span.set_status.assert_called_once_with(StatusCode.ERROR, "HTTP 502: bad gateway")
        span.record_exception.assert_called_once_with(error)
        span.set_attribute.assert_called_once_with("error.type", "CompletionError")


# -------------------------------------------------------------------
# Spans opened by a turn
# -------------------------------------------------------------------


class TestTurnTracing:
    @pytest.mark.asyncio
    async def test_turn_opens_turn_and_completion_spans(self):
        tracer, _ = _mock_tracer()
        inst._tracer = tracer

        completion = ScriptedCompletionClient()
        completion.turns = [
            make_tool_call_turn("lookup", {"q": "x"}),
            make_text_turn("answer"),
        ]

        async def lookup(q):
            return {"q": q}

        orchestrator = ToolOrchestrator(completion, ScriptedExecutor({"lookup": lookup}))
        await orchestrator.run_turn(orchestrator.new_thread(), "question")

        names = [c.args[0] for c in tracer.start_as_current_span.call_args_list]
        assert names == ["conversation_turn", "chat mock-model", "chat mock-model"]
