"""Chat session: serialized streaming sends over a validated history."""

import asyncio
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

from chatloom.config import Config, get_config
from chatloom.context_budget import ContextBudgetManager
from chatloom.exceptions import LLMAPIError, StreamAbortedError
from chatloom.history import ChatHistory
from chatloom.llm import (
    Candidate,
    Content,
    ContentGenerator,
    FinishReason,
    GenerateContentConfig,
    GenerateContentRequest,
    Part,
    ResponseChunk,
    is_function_response,
    parts_to_text,
    user_content,
)
from chatloom.logging import bind_send_context, ensure_logging, get_logger
from chatloom.models import token_limit
from chatloom.recording import ChatRecorder
from chatloom.retry import (
    ChunkEvent,
    RetryEvent,
    RetryFallbackController,
    StreamEvent,
    StreamEventType,
)
from chatloom.stream_validation import StreamAccumulator, StreamValidator
from chatloom.tools.registry import ToolRegistry, cancel_task, has_cycle_in_schema

log = get_logger(__name__)

__all__ = [
    "ChatSession",
    "ChunkEvent",
    "MutatorTruncatingStream",
    "RetryEvent",
    "StreamEvent",
    "StreamEventType",
]

_THOUGHT_SUBJECT_RE = re.compile(r"\*\*(.*?)\*\*", re.DOTALL)


def is_schema_depth_error(message: str) -> bool:
    return "maximum schema depth exceeded" in message


def is_invalid_argument_error(message: str) -> bool:
    return "Request contains an invalid argument" in message


class _ChunkTimeout(Exception):
    pass


class MutatorTruncatingStream:
    """Pass chunks through until a second state-changing tool call shows up.

    The first mutating call passes untouched. On the second one the chunk is
    cut just before it, re-emitted with a STOP finish reason, and the upstream
    iterator is closed; nothing after it is pulled.
    """

    def __init__(
        self,
        upstream: AsyncIterator[ResponseChunk],
        is_mutator: Callable[[str], bool],
    ):
        self._upstream = upstream
        self._is_mutator = is_mutator
        self._seen_mutator = False
        self._closed = False
        self.truncated = False

    def __aiter__(self) -> "MutatorTruncatingStream":
        return self

    async def __anext__(self) -> ResponseChunk:
        if self._closed:
            raise StopAsyncIteration
        try:
            chunk = await self._upstream.__anext__()
        except StopAsyncIteration:
            self._closed = True
            raise

        candidate = chunk.first_candidate
        if candidate is None or candidate.content is None or not candidate.content.parts:
            return chunk

        kept: list[Part] = []
        for part in candidate.content.parts:
            call = part.function_call
            if call is not None and self._is_mutator(call.name):
                if self._seen_mutator:
                    log.info("Truncating stream before second mutating tool call", tool=call.name)
                    self.truncated = True
                    await self.aclose()
                    return ResponseChunk(
                        candidates=[
                            Candidate(
                                content=Content(role=candidate.content.role, parts=kept),
                                finish_reason=FinishReason.STOP,
                                index=candidate.index,
                            )
                        ],
                        usage_metadata=chunk.usage_metadata,
                    )
                self._seen_mutator = True
            kept.append(part)
        return chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        closer = getattr(self._upstream, "aclose", None)
        if closer is not None:
            await closer()


@dataclass
class _SendState:
    committed: bool = False


class ChatSession:
    """One conversation with a model.

    Sends are serialized: a send holds the session lock from its first
    iteration until its event stream is exhausted or closed. History is only
    written after a stream drains and validates; a send that never commits
    a model turn removes its own user turn again.
    """

    def __init__(
        self,
        content_generator: ContentGenerator,
        tool_registry: ToolRegistry,
        config: Config | None = None,
        generation_config: GenerateContentConfig | None = None,
        history: list[Content] | None = None,
        recorder: ChatRecorder | None = None,
        fallback_controller: RetryFallbackController | None = None,
    ):
        self.content_generator = content_generator
        self.tool_registry = tool_registry
        self.config = config or get_config()
        ensure_logging(self.config)
        self.generation_config = generation_config or GenerateContentConfig()
        self.history = ChatHistory(history)
        self._recorder = recorder
        self.fallback_controller = fallback_controller or RetryFallbackController(self.config)
        self.budget = ContextBudgetManager(self.config.context)
        self.last_prompt_token_count = 0
        self._send_lock = asyncio.Lock()

    @property
    def recorder(self) -> ChatRecorder | None:
        return self._recorder

    @property
    def _is_local(self) -> bool:
        return self.config.model.auth_type == "local"

    def get_history(self, curated: bool = False) -> list[Content]:
        return self.history.get_history(curated=curated)

    def clear_history(self) -> None:
        self.history.clear()

    def add_history(self, content: Content) -> None:
        self.history.append(content)

    def set_history(self, history: list[Content]) -> None:
        self.history.set_history(history)

    def strip_thoughts_from_history(self) -> None:
        self.history.strip_thought_signatures()

    def set_system_instruction(self, system_instruction: str | None) -> None:
        self.generation_config.system_instruction = system_instruction

    def set_tools(self, tools: list[dict[str, Any]] | None) -> None:
        self.generation_config.tools = tools

    def maybe_include_schema_depth_context(self, message: str) -> str:
        """Append the tools with cyclic parameter schemas to schema-related API errors."""
        if not (is_schema_depth_error(message) or is_invalid_argument_error(message)):
            return message
        cyclic = [
            tool.display_name or tool.name
            for tool in self.tool_registry.get_all_tools()
            if tool.parameters and has_cycle_in_schema(tool.parameters)
        ]
        if not cyclic:
            return message
        return (
            f"{message}\n\nThis error was probably caused by cyclic schema references in one of "
            "the following tools, try removing them from the tool registry:\n\n - "
            + "\n - ".join(cyclic)
            + "\n"
        )

    def _chunk_timeout(self, first: bool) -> float:
        stream = self.config.stream
        if first:
            if self._is_local:
                return stream.local_first_chunk_timeout_seconds
            return stream.first_chunk_timeout_seconds
        if self.fallback_controller.in_fallback_mode:
            return stream.fallback_chunk_timeout_seconds
        return stream.chunk_timeout_seconds

    async def _next_chunk(
        self,
        stream: AsyncIterator[ResponseChunk],
        timeout: float,
        abort_event: asyncio.Event | None,
    ) -> ResponseChunk | None:
        """Pull one chunk, racing the abort event and the read timeout.

        Returns None at end of stream.
        """

        async def pull() -> ResponseChunk | None:
            try:
                return await stream.__anext__()
            except StopAsyncIteration:
                return None

        next_task: asyncio.Task[ResponseChunk | None] = asyncio.create_task(pull())
        abort_task: asyncio.Task[bool] | None = None
        if abort_event is not None:
            abort_task = asyncio.create_task(abort_event.wait())
        try:
            waiters = {next_task} if abort_task is None else {next_task, abort_task}
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if abort_task is not None and abort_task in done:
                raise StreamAbortedError("Send aborted while waiting for the model")
            if next_task in done:
                return next_task.result()
            raise _ChunkTimeout()
        finally:
            await cancel_task(next_task)
            await cancel_task(abort_task)

    async def _record_chunk(self, chunk: ResponseChunk) -> None:
        usage = chunk.usage_metadata
        if usage is not None:
            if usage.prompt_token_count is not None:
                self.last_prompt_token_count = usage.prompt_token_count
            if self._recorder is not None:
                await self._recorder.record_message_tokens(usage)

        if self._recorder is None:
            return
        for part in chunk.parts:
            if not part.thought or not part.text:
                continue
            match = _THOUGHT_SUBJECT_RE.search(part.text)
            subject = match.group(1).strip() if match else ""
            description = _THOUGHT_SUBJECT_RE.sub("", part.text, count=1).strip()
            await self._recorder.record_thought(subject, description)

    async def _attempt(
        self,
        attempt: int,
        model: str,
        contents: list[Content],
        generation_config: GenerateContentConfig,
        prompt_id: str,
        abort_event: asyncio.Event | None,
        state: _SendState,
    ) -> AsyncIterator[ResponseChunk]:
        """One model call: open, drain with timeouts, validate, commit."""
        controller = self.fallback_controller
        effective_model = controller.effective_model(model)

        async def api_call(target_model: str) -> AsyncIterator[ResponseChunk]:
            nonlocal effective_model
            effective_model = target_model
            request = GenerateContentRequest(model=target_model, contents=contents, config=generation_config)
            return await self.content_generator.generate_content_stream(request, prompt_id)

        log.debug("Starting model attempt", model=model, attempt=attempt + 1, prompt_id=prompt_id)
        validator = StreamValidator(local_server=self._is_local)
        accumulator = StreamAccumulator()
        stalled = False
        try:
            upstream = await controller.open_stream(api_call, model)
            stream = MutatorTruncatingStream(upstream, self.tool_registry.is_mutator)
            try:
                while True:
                    if abort_event is not None and abort_event.is_set():
                        raise StreamAbortedError("Send aborted")
                    first = accumulator.chunk_count == 0
                    timeout = self._chunk_timeout(first)
                    try:
                        chunk = await self._next_chunk(stream, timeout, abort_event)
                    except _ChunkTimeout:
                        stalled = True
                        log.warning(
                            "Model stream stalled",
                            model=effective_model,
                            first_chunk=first,
                            timeout_seconds=timeout,
                            chunks=accumulator.chunk_count,
                        )
                        break
                    if chunk is None:
                        break
                    accumulator.add(chunk)
                    await self._record_chunk(chunk)
                    yield chunk
                    if accumulator.chunk_count >= self.config.stream.max_chunks:
                        log.warning(
                            "Chunk limit reached; ending stream",
                            model=effective_model,
                            max_chunks=self.config.stream.max_chunks,
                        )
                        break
            finally:
                await stream.aclose()
        except LLMAPIError as e:
            message = self.maybe_include_schema_depth_context(str(e))
            if message != str(e):
                raise LLMAPIError(message, status_code=e.status_code) from e
            raise

        verdict = validator.classify_accumulated(accumulator, controller.in_fallback_mode, stalled=stalled)
        if not verdict.is_valid:
            log.warning(
                "Invalid model stream",
                model=effective_model,
                status=verdict.status.value,
                kind=verdict.kind.value if verdict.kind else None,
                finish_reason=verdict.finish_reason.value if verdict.finish_reason else None,
                chunks=accumulator.chunk_count,
            )
        validator.raise_for(verdict)

        parts = accumulator.consolidated_parts()
        self.history.append(Content(role="model", parts=parts))
        state.committed = True
        if self._recorder is not None:
            await self._recorder.record_message(effective_model, "model", parts_to_text(parts))

    async def send_message_stream(
        self,
        model: str,
        message: "str | Part | list[str | Part]",
        prompt_id: str,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Send a message and stream the model's reply as events.

        Yields ChunkEvent for content and RetryEvent for failed attempts; a
        RetryEvent with ``terminal=True`` ends the stream with the final
        failure. Model-output failures are never raised.
        """
        async with self._send_lock:
            with bind_send_context(prompt_id, model):
                user_turn = user_content(message)
                self.history.append(user_turn)
                state = _SendState()
                try:
                    if self._recorder is not None and not is_function_response(user_turn):
                        await self._recorder.record_message(model, "user", parts_to_text(user_turn.parts))

                    generation_config = self.generation_config.merged(None)
                    trim = self.budget.check_and_trim(
                        self.history.get_history(curated=True),
                        generation_config.system_instruction,
                        generation_config.tools,
                        token_limit(model, self.config.context.token_limit),
                    )
                    if trim.warning:
                        log.warning(trim.warning, breakdown=trim.breakdown)
                    contents = trim.trimmed_history

                    async for event in self.fallback_controller.run(
                        lambda attempt: self._attempt(
                            attempt,
                            model,
                            contents,
                            generation_config,
                            prompt_id,
                            abort_event,
                            state,
                        ),
                        abort_event,
                    ):
                        yield event
                finally:
                    if not state.committed and self.history.pop_if_last(user_turn):
                        log.info("Removed uncommitted user turn")
