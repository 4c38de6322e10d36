"""Streaming chat example.

Demonstrates:
- Streaming a reply and printing cumulative snapshots
- Sending the next message before the previous reply has finished
- Cutting a reply short with an AbortSignal once it gets too long
- Reading the ordered chat history afterwards

Usage:
    uv run --env-file=.env examples/chat_stream_example.py --model gemini-2.0-flash --trace
    uv run --env-file=.env examples/chat_stream_example.py --max-chars 200 --timeout 30
"""

import argparse
import asyncio

from genstream.config import ClientConfig, RequestOptions
from genstream.errors import AbortedError, BlockedContentError, GenerativeError
from genstream.model import GenerativeModel
from genstream.signals import AbortSignal
from genstream.transport import HttpTransport


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from genstream.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


async def print_reply(stream, signal: AbortSignal | None = None, max_chars: int | None = None) -> None:
    printed = 0
    async for snapshot in stream:
        try:
            text = snapshot.text
        except BlockedContentError:
            break
        print(text[printed:], end="", flush=True)
        printed = len(text)
        if signal is not None and max_chars is not None and printed > max_chars:
            signal.abort(f"Stopped after {max_chars} characters")
    print()


async def main():
    parser = argparse.ArgumentParser(description="Streaming chat")
    parser.add_argument("--model", default="gemini-2.0-flash")
    parser.add_argument("--max-chars", type=int, default=None)
    parser.add_argument("--timeout", type=float, default=None)
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    if args.trace:
        setup_tracing("chat-stream")

    transport = HttpTransport(ClientConfig.from_env())
    async with GenerativeModel(
        args.model,
        transport=transport,
        system_instruction="You are a concise, friendly assistant.",
    ) as model:
        chat = model.start_chat()

        # Two turns in flight at once; history still lists the story first.
        story = await chat.send_message_stream("Tell me a short story about a lighthouse.")
        joke = asyncio.ensure_future(chat.send_message("Now give me a one-line joke."))
        print("Assistant: ", end="")
        await print_reply(story)
        print(f"Assistant: {(await joke).text}\n")

        print("Chat\n")
        while True:
            try:
                user_input = input("You: ")
            except (KeyboardInterrupt, EOFError):
                print("\nGoodbye!")
                break

            signal = AbortSignal()
            try:
                stream = await chat.send_message_stream(
                    user_input, RequestOptions(signal=signal, timeout=args.timeout),
                )
                print("Assistant: ", end="")
                await print_reply(stream, signal, args.max_chars)
                await stream.get_response()
            except AbortedError as e:
                print(f"[{e.reason}]")
            except GenerativeError as e:
                print(f"\n[error: {e}]")

        history = await chat.get_history()
        print(f"{len(history)} history entries")


if __name__ == "__main__":
    asyncio.run(main())
