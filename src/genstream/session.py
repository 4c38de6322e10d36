"""Multi-turn chat with ordered history.

A caller may send a new message before the previous one has finished
streaming. Each send starts its network call right away, but commits to
history are chained: every turn waits for the turn submitted before it to
settle before appending its own entries. History therefore always follows
submission order, whatever order the responses arrive in.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Sequence
from typing import TYPE_CHECKING, Any

from genstream import instrumentation
from genstream.config import (
    GenerateContentRequest,
    GenerationConfig,
    RequestOptions,
    SafetySetting,
)
from genstream.content import Content, HistoryEntry, Role
from genstream.errors import AbortedError, BlockedContentError, GenerativeError
from genstream.formatting import (
    ContentInput,
    PartLike,
    format_new_content,
    format_system_instruction,
    validate_chat_history,
)
from genstream.response import GenerateContentResponse
from genstream.streaming import GenerateContentStream

if TYPE_CHECKING:
    from genstream.model import GenerativeModel

logger = logging.getLogger(__name__)


class ChatStream:
    """Streamed chat turn.

    Iterating yields the turn's cumulative snapshots. :meth:`get_response`
    resolves once the turn has been committed to history (or failed).
    """

    def __init__(self, stream: GenerateContentStream, turn: asyncio.Task):
        self.stream = stream
        self._turn = turn

    def __aiter__(self) -> AsyncIterator[GenerateContentResponse]:
        return self.stream.__aiter__()

    async def get_response(self) -> GenerateContentResponse:
        """Return the sealed response of this turn.

        Raises:
            BlockedContentError: The prompt or the candidate was blocked;
                nothing was committed.
            AbortedError: The turn was aborted. ``half_committed`` tells
                whether its user entry was committed.
        """
        return await asyncio.shield(self._turn)


class ChatSession:
    """A conversation with one model.

    Args:
        model: Model the session sends to.
        history: Initial turns; validated before use.
        generation_config, safety_settings, system_instruction, tools,
        tool_config: Session-level request settings. They take precedence
            over the model's own and are sent with every turn.
        request_options: Defaults for every turn of this session.

    Example::

        chat = model.start_chat()
        first = await chat.send_message_stream("Tell me a long story")
        second = await chat.send_message("And a short one")
        async for snapshot in first:
            print(snapshot.text)
        history = await chat.get_history()  # story turn first
    """

    def __init__(
        self,
        model: GenerativeModel,
        history: Sequence[Content | dict] | None = None,
        generation_config: GenerationConfig | dict | None = None,
        safety_settings: Sequence[SafetySetting | dict] | None = None,
        system_instruction: str | Content | Sequence[PartLike] | None = None,
        tools: list[dict[str, Any]] | None = None,
        tool_config: dict[str, Any] | None = None,
        request_options: RequestOptions | None = None,
    ):
        self.model = model
        if isinstance(generation_config, dict):
            generation_config = GenerationConfig.model_validate(generation_config)
        self.generation_config = generation_config
        self.safety_settings = [
            SafetySetting.model_validate(s) if isinstance(s, dict) else s
            for s in safety_settings or []
        ] or None
        self.system_instruction = format_system_instruction(system_instruction)
        self.tools = tools
        self.tool_config = tool_config
        self.request_options = request_options or RequestOptions()
        self._history: list[HistoryEntry] = validate_chat_history(history or [])
        # Last scheduled turn. Each new turn chains its commit after it.
        self._pending: asyncio.Task | None = None
        self._turns = 0

    @property
    def history(self) -> tuple[HistoryEntry, ...]:
        """Turns committed so far. Blocked or failed turns never appear."""
        return tuple(self._history)

    async def get_history(self) -> tuple[HistoryEntry, ...]:
        """Wait for every turn sent so far to settle, then return history."""
        while self._pending is not None and not self._pending.done():
            await asyncio.wait({self._pending})
        return self.history

    async def send_message(
        self,
        request: ContentInput,
        options: RequestOptions | None = None,
    ) -> GenerateContentResponse:
        """Send a message and return the model's response.

        The request carries the history committed at the time of the
        call. Returns after this turn has been committed.

        Raises:
            BlockedContentError: The response was blocked.
            TransportError: The request failed.
            AbortedError: The request was aborted or timed out.
        """
        user_content = format_new_content(request)
        prepared = self._prepare(user_content)
        network = asyncio.ensure_future(
            self.model.send_request(prepared, self.request_options.merged(options))
        )
        turn = self._schedule(user_content, network)
        return await asyncio.shield(turn)

    async def send_message_stream(
        self,
        request: ContentInput,
        options: RequestOptions | None = None,
    ) -> ChatStream:
        """Send a message and return its streamed response.

        Raises:
            TransportError: The service rejected the request.
            AbortedError: The request was aborted before the stream opened.
        """
        user_content = format_new_content(request)
        prepared = self._prepare(user_content)
        opening = asyncio.ensure_future(
            self.model.open_stream(prepared, self.request_options.merged(options))
        )
        turn = self._schedule(user_content, self._drain(opening))
        stream = await asyncio.shield(opening)
        return ChatStream(stream, turn)

    # ------------------------------------------------------------------
    # Ordering chain
    # ------------------------------------------------------------------

    def _prepare(self, user_content: Content) -> GenerateContentRequest:
        request = GenerateContentRequest(
            contents=[*self._history, user_content],
            generation_config=self.generation_config,
            safety_settings=self.safety_settings,
            system_instruction=self.system_instruction,
            tools=self.tools,
            tool_config=self.tool_config,
        )
        # Fills in model settings only where the session left them unset.
        return self.model.build_request(request)

    @staticmethod
    async def _drain(opening: asyncio.Future) -> GenerateContentResponse:
        stream = await opening
        return await stream.get_response()

    def _schedule(
        self,
        user_content: Content,
        outcome: Awaitable[GenerateContentResponse],
    ) -> asyncio.Task:
        # No await between reading and replacing _pending: submission
        # order is the order in which sends reach this point.
        preceding = self._pending
        self._turns += 1
        turn = asyncio.ensure_future(
            self._run_turn(preceding, user_content, outcome, self._turns)
        )
        turn.add_done_callback(self._turn_settled)
        self._pending = turn
        return turn

    async def _run_turn(
        self,
        preceding: asyncio.Task | None,
        user_content: Content,
        outcome: Awaitable[GenerateContentResponse],
        number: int,
    ) -> GenerateContentResponse:
        outcome = asyncio.ensure_future(outcome)
        try:
            if preceding is not None:
                # Waits for the previous turn to settle without raising
                # its error here.
                await asyncio.wait({preceding})
        except asyncio.CancelledError:
            outcome.cancel()
            raise

        async with instrumentation.chat_turn_span(self.model.model, number) as span:
            try:
                response = await outcome
            except AbortedError as e:
                if e.partial is not None:
                    # The stream had started: the prompt reached the model.
                    self._history.append(user_content)
                    e.half_committed = True
                    logger.warning(
                        f"Chat turn {number} was aborted mid-stream; "
                        "its user message was committed without a model reply."
                    )
                instrumentation.record_error(span, e)
                raise
            except GenerativeError as e:
                instrumentation.record_error(span, e)
                raise

            if response.blocked:
                message = response.block_message()
                logger.warning(
                    f"Chat turn {number} was unsuccessful. {message}. "
                    "Inspect the error's response for details."
                )
                error = BlockedContentError(message, response=response)
                instrumentation.record_error(span, error)
                raise error

            if not response.candidates:
                logger.warning(
                    f"Chat turn {number} returned no candidates; "
                    "nothing was committed to history."
                )
                instrumentation.record_usage(span, response.usage_metadata, response.model_version)
                return response

            self._history.append(user_content)
            self._history.append(self._model_entry(response))
            instrumentation.record_usage(span, response.usage_metadata, response.model_version)
            logger.debug(f"Committed chat turn {number}; history has {len(self._history)} entries")
        return response

    @staticmethod
    def _model_entry(response: GenerateContentResponse) -> HistoryEntry:
        content = response.candidates[0].content if response.candidates else None
        if content is None:
            return Content(role=Role.MODEL, parts=[])
        if content.role is None:
            return content.model_copy(update={"role": Role.MODEL})
        return content

    def _turn_settled(self, turn: asyncio.Task) -> None:
        if turn.cancelled():
            logger.debug("Chat turn was cancelled")
            return
        error = turn.exception()
        if error is not None:
            logger.debug(f"Chat turn failed: {error!r}")
