"""Optional OpenTelemetry instrumentation for genstream.

Call ``genstream.instrument()`` once at startup to enable tracing.
Requires ``opentelemetry-api`` to be installed; the library
works identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "genstream") -> None:
    """Enable OpenTelemetry tracing for all genstream requests.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install genstream[otel]``

    Each generation call gets a ``generate_content {model}`` client span;
    for streams it stays open until the stream seals or fails. Each chat
    turn commit gets a ``chat {model}`` span.

    Example: explicit SDK setup::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
        )

        provider = TracerProvider()
        provider.add_span_processor(
            BatchSpanProcessor(ConsoleSpanExporter())
        )
        trace.set_tracer_provider(provider)

        import genstream
        genstream.instrument()

    Example: zero-code via ``opentelemetry-instrument``::

        $ pip install opentelemetry-distro opentelemetry-exporter-otlp
        $ opentelemetry-bootstrap -a install
        $ OTEL_SERVICE_NAME=my-chat-app \\
          OTEL_EXPORTER_OTLP_ENDPOINT=http://localhost:4317 \\
          opentelemetry-instrument python my_app.py

        # The distro configures the TracerProvider; my_app.py only needs:
        import genstream
        genstream.instrument()

    See also:
        - `OTel Python SDK <https://opentelemetry.io/docs/languages/python/>`_
        - `GenAI Semantic Conventions <https://opentelemetry.io/docs/specs/semconv/gen-ai/>`_
        - `Zero-code instrumentation <https://opentelemetry.io/docs/zero-code/python/>`_

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install genstream[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("genstream instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing.

    Subsequent requests will not emit spans.
    """
    global _tracer
    _tracer = None


def _generate_attributes(model: str, stream: bool) -> dict:
    return {
        "gen_ai.operation.name": "generate_content",
        "gen_ai.provider.name": "gemini",
        "gen_ai.request.model": model,
        "genstream.stream": stream,
    }


@asynccontextmanager
async def generate_span(model: str):
    """Wrap a non-streaming ``generateContent`` call in a client span."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"generate_content {model}",
        kind=SpanKind.CLIENT,
        attributes=_generate_attributes(model, stream=False),
    ) as span:
        yield span


def start_stream_span(model: str):
    """Start a span that lives until the stream seals or fails.

    The span is not made current: a stream outlives the call that
    opened it. End it with :func:`end_span`.
    """
    if _tracer is None:
        return None
    from opentelemetry.trace import SpanKind

    return _tracer.start_span(
        f"generate_content {model}",
        kind=SpanKind.CLIENT,
        attributes=_generate_attributes(model, stream=True),
    )


def end_span(span, response=None, error: BaseException | None = None) -> None:
    """Record the outcome of a stream and end its span."""
    if span is None:
        return
    if error is not None:
        record_error(span, error)
    elif response is not None:
        record_usage(span, response.usage_metadata, response.model_version)
    span.end()


@asynccontextmanager
async def chat_turn_span(model: str, turn: int):
    """Wrap the commit of one chat turn in a ``chat`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"chat {model}",
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.request.model": model,
            "genstream.chat.turn": turn,
        },
    ) as span:
        yield span


def record_usage(
    span, usage, response_model: str | None = None
):
    """Set token-usage and response-model attributes on a span."""
    if span is None:
        return
    if usage is not None:
        if usage.prompt_token_count is not None:
            span.set_attribute(
                "gen_ai.usage.input_tokens",
                usage.prompt_token_count,
            )
        if usage.candidates_token_count is not None:
            span.set_attribute(
                "gen_ai.usage.output_tokens",
                usage.candidates_token_count,
            )
    if response_model:
        span.set_attribute(
            "gen_ai.response.model", response_model
        )


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    Sets ``error.type`` per GenAI semantic conventions.
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
