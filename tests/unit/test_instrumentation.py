"""Unit tests for the instrumentation module.

Tests use unittest.mock for OTel interactions.  ``opentelemetry-api``
is a test dependency so we can import ``SpanKind`` / ``StatusCode``
directly for assertion accuracy.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.trace import SpanKind, StatusCode

import genstream.instrumentation as inst
from genstream.instrumentation import (
    chat_turn_span,
    end_span,
    generate_span,
    record_error,
    record_usage,
    start_stream_span,
    uninstrument,
)
from genstream.model import GenerativeModel
from genstream.response import GenerateContentResponse, UsageMetadata

from tests.conftest import FakeTransport, ScriptedStream, make_chunk, sse_bytes


@pytest.fixture(autouse=True)
def _reset_tracer():
    """Ensure _tracer is reset to None before and after each test."""
    inst._tracer = None
    yield
    inst._tracer = None


# -------------------------------------------------------------------
# instrument()
# -------------------------------------------------------------------


class TestInstrument:
    def test_raises_without_otel_installed(self):
        with patch(
            "importlib.util.find_spec", return_value=None
        ):
            with pytest.raises(
                ImportError, match="pip install"
            ):
                inst.instrument()

    def _mock_otel(self, mock_trace):
        """Patch find_spec + sys.modules for a mock OTel env."""
        return (
            patch(
                "importlib.util.find_spec",
                return_value=MagicMock(),
            ),
            patch.dict(
                "sys.modules",
                {
                    "opentelemetry": MagicMock(
                        trace=mock_trace
                    ),
                    "opentelemetry.trace": mock_trace,
                },
            ),
        )

    def test_sets_global_tracer(self):
        mock_tracer = MagicMock()
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = mock_tracer
        mock_trace.NoOpTracer = type("NoOpTracer", (), {})

        p1, p2 = self._mock_otel(mock_trace)
        with p1, p2:
            inst.instrument()

        assert inst._tracer is mock_tracer
        mock_trace.get_tracer.assert_called_once_with(
            "genstream"
        )

    def test_custom_tracer_name(self):
        mock_tracer = MagicMock()
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = mock_tracer
        mock_trace.NoOpTracer = type("NoOpTracer", (), {})

        p1, p2 = self._mock_otel(mock_trace)
        with p1, p2:
            inst.instrument(tracer_name="my-app")

        mock_trace.get_tracer.assert_called_once_with(
            "my-app"
        )

    def test_logs_info_for_noop_tracer(self, caplog):
        NoOpTracer = type("NoOpTracer", (), {})
        noop = NoOpTracer()
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = noop
        mock_trace.NoOpTracer = NoOpTracer

        p1, p2 = self._mock_otel(mock_trace)
        with p1, p2:
            with caplog.at_level(
                logging.INFO,
                logger="genstream.instrumentation",
            ):
                inst.instrument()

        assert any(
            "No TracerProvider configured" in r.message
            for r in caplog.records
        )


# -------------------------------------------------------------------
# uninstrument()
# -------------------------------------------------------------------


class TestUninstrument:
    def test_clears_tracer(self):
        inst._tracer = MagicMock()
        uninstrument()
        assert inst._tracer is None

    def test_noop_when_already_none(self):
        uninstrument()
        assert inst._tracer is None


# -------------------------------------------------------------------
# Span helpers, uninstrumented (default)
# -------------------------------------------------------------------


class TestSpansUninstrumented:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "span_fn,args",
        [
            (generate_span, ("m",)),
            (chat_turn_span, ("m", 1)),
        ],
        ids=["generate_span", "chat_turn_span"],
    )
    async def test_span_yields_none_without_tracer(
        self, span_fn, args
    ):
        async with span_fn(*args) as s:
            assert s is None

    def test_stream_span_is_none_without_tracer(self):
        assert start_stream_span("m") is None
        end_span(None)  # should not raise


# -------------------------------------------------------------------
# Span helpers, instrumented
# -------------------------------------------------------------------


class TestSpansInstrumented:
    @pytest.fixture(autouse=True)
    def _set_mock_tracer(self):
        self.mock_span = MagicMock()
        self.mock_tracer = MagicMock()
        self.mock_tracer.start_as_current_span.return_value.__enter__ = (
            MagicMock(return_value=self.mock_span)
        )
        self.mock_tracer.start_as_current_span.return_value.__exit__ = (
            MagicMock(return_value=False)
        )
        self.mock_tracer.start_span.return_value = self.mock_span
        inst._tracer = self.mock_tracer

    @pytest.mark.asyncio
    async def test_generate_span_creates_span(self):
        async with generate_span("gemini-2.0-flash") as s:
            assert s is self.mock_span

        self.mock_tracer.start_as_current_span.assert_called_once_with(
            "generate_content gemini-2.0-flash",
            kind=SpanKind.CLIENT,
            attributes={
                "gen_ai.operation.name": "generate_content",
                "gen_ai.provider.name": "gemini",
                "gen_ai.request.model": "gemini-2.0-flash",
                "genstream.stream": False,
            },
        )

    @pytest.mark.asyncio
    async def test_chat_turn_span_creates_span(self):
        async with chat_turn_span("m", 3) as s:
            assert s is self.mock_span

        self.mock_tracer.start_as_current_span.assert_called_once_with(
            "chat m",
            attributes={
                "gen_ai.operation.name": "chat",
                "gen_ai.request.model": "m",
                "genstream.chat.turn": 3,
            },
        )

    def test_stream_span_not_made_current(self):
        span = start_stream_span("m")
        assert span is self.mock_span
        self.mock_tracer.start_as_current_span.assert_not_called()
        _, kwargs = self.mock_tracer.start_span.call_args
        assert kwargs["attributes"]["genstream.stream"] is True

    def test_end_span_records_usage(self):
        response = GenerateContentResponse(
            usage_metadata=UsageMetadata(prompt_token_count=4, candidates_token_count=2),
            model_version="m-001",
        )
        end_span(self.mock_span, response=response)

        self.mock_span.set_attribute.assert_any_call("gen_ai.usage.input_tokens", 4)
        self.mock_span.set_attribute.assert_any_call("gen_ai.usage.output_tokens", 2)
        self.mock_span.end.assert_called_once()

    def test_end_span_records_error(self):
        end_span(self.mock_span, error=RuntimeError("boom"))
        self.mock_span.set_status.assert_called_once_with(StatusCode.ERROR, "boom")
        self.mock_span.end.assert_called_once()

    @pytest.mark.asyncio
    async def test_stream_ends_span_when_sealed(self):
        transport = FakeTransport()
        transport.streams = [ScriptedStream(sse_bytes(make_chunk("hi", usage={"promptTokenCount": 1})))]
        model = GenerativeModel("m", transport=transport)

        stream = await model.generate_content_stream("hello")
        self.mock_span.end.assert_not_called()
        await stream.get_response()
        self.mock_span.end.assert_called_once()


# -------------------------------------------------------------------
# record_usage
# -------------------------------------------------------------------


class TestRecordUsage:
    def test_noop_on_none_span(self):
        record_usage(None, UsageMetadata(prompt_token_count=10))

    def test_sets_token_counts_and_response_model(self):
        span = MagicMock()
        usage = UsageMetadata(prompt_token_count=100, candidates_token_count=50)
        record_usage(span, usage, response_model="gemini-2.0-flash-001")

        span.set_attribute.assert_any_call(
            "gen_ai.usage.input_tokens", 100
        )
        span.set_attribute.assert_any_call(
            "gen_ai.usage.output_tokens", 50
        )
        span.set_attribute.assert_any_call(
            "gen_ai.response.model", "gemini-2.0-flash-001"
        )

    def test_handles_missing_usage(self):
        span = MagicMock()
        record_usage(span, None)
        record_usage(span, UsageMetadata())
        span.set_attribute.assert_not_called()


# -------------------------------------------------------------------
# record_error
# -------------------------------------------------------------------


class TestRecordError:
    def test_sets_status_and_records_exception(self):
        span = MagicMock()
        exc = RuntimeError("boom")
        record_error(span, exc)

        span.set_status.assert_called_once_with(
            StatusCode.ERROR, "boom"
        )
        span.record_exception.assert_called_once_with(exc)
        span.set_attribute.assert_called_once_with(
            "error.type", "RuntimeError"
        )

    def test_noop_on_none_span(self):
        record_error(None, RuntimeError("boom"))
