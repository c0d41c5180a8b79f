"""Turn loop: stream a reply, run its tool calls, feed results back."""

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator

from chatloom.chat import ChatSession
from chatloom.llm import Content, Part
from chatloom.logging import get_logger
from chatloom.retry import RetryEvent
from chatloom.scheduler import ToolCall, ToolCallRequest, ToolCallResponse, ToolScheduler

log = get_logger(__name__)


class TurnEventType(str, Enum):
    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESPONSE = "tool_call_response"
    RETRY = "retry"
    ERROR = "error"
    ABORTED = "aborted"
    FINISHED = "finished"
    MAX_ITERATIONS = "max_iterations"


@dataclass
class TurnEvent:
    type: TurnEventType
    text: str | None = None
    request: ToolCallRequest | None = None
    response: ToolCallResponse | None = None


class TurnRunner:
    """Drive one user prompt to completion across model/tool round trips.

    Function calls seen before a retry notice are discarded with the failed
    attempt. Each completed call of a batch is sent back exactly once; call
    ids are model-supplied and may repeat across turns, so they are never
    used to decide whether a response was already sent.
    """

    def __init__(self, chat: ChatSession, scheduler: ToolScheduler, max_iterations: int = 10):
        self.chat = chat
        self.scheduler = scheduler
        self.max_iterations = max_iterations

    async def run(
        self,
        model: str,
        message: "str | Part | list[str | Part]",
        prompt_id: str,
        abort_event: asyncio.Event | None = None,
    ) -> AsyncIterator[TurnEvent]:
        next_message: "str | Part | list[str | Part]" = message
        for iteration in range(self.max_iterations):
            requests: list[ToolCallRequest] = []
            failed = False
            async for event in self.chat.send_message_stream(model, next_message, prompt_id, abort_event):
                if isinstance(event, RetryEvent):
                    requests.clear()
                    if event.terminal:
                        failed = True
                        yield TurnEvent(TurnEventType.ERROR, text=event.error)
                    else:
                        yield TurnEvent(TurnEventType.RETRY, text=event.error)
                    continue

                chunk = event.value
                for part in chunk.parts:
                    if part.thought and part.text:
                        yield TurnEvent(TurnEventType.THOUGHT, text=part.text)
                if chunk.text:
                    yield TurnEvent(TurnEventType.CONTENT, text=chunk.text)
                for call in chunk.function_calls:
                    request = ToolCallRequest(
                        call_id=call.id or f"{call.name}-{uuid.uuid4().hex[:12]}",
                        name=call.name,
                        args=dict(call.args),
                        prompt_id=prompt_id,
                    )
                    requests.append(request)
                    yield TurnEvent(TurnEventType.TOOL_CALL_REQUEST, request=request)

            if failed:
                return
            if abort_event is not None and abort_event.is_set():
                yield TurnEvent(TurnEventType.ABORTED)
                return
            if not requests:
                yield TurnEvent(TurnEventType.FINISHED)
                return

            completed = await self._run_tools(requests, abort_event)
            parts: list[Part] = []
            submitted: set[int] = set()
            for call in completed:
                if id(call) in submitted or call.response is None:
                    continue
                submitted.add(id(call))
                parts.extend(call.response.response_parts)
                yield TurnEvent(TurnEventType.TOOL_CALL_RESPONSE, request=call.request, response=call.response)

            if abort_event is not None and abort_event.is_set():
                if parts:
                    # Keep the model's calls paired with their (cancelled) results.
                    self.chat.add_history(Content(role="user", parts=parts))
                yield TurnEvent(TurnEventType.ABORTED)
                return
            if not parts:
                log.warning("Tool batch produced no new responses", prompt_id=prompt_id, iteration=iteration + 1)
                yield TurnEvent(TurnEventType.FINISHED)
                return
            next_message = parts

        log.warning("Turn stopped at iteration limit", prompt_id=prompt_id, max_iterations=self.max_iterations)
        yield TurnEvent(TurnEventType.MAX_ITERATIONS)

    async def _run_tools(
        self,
        requests: list[ToolCallRequest],
        abort_event: asyncio.Event | None,
    ) -> list[ToolCall]:
        await self.scheduler.schedule(requests, abort_event)
        completed = await self.scheduler.wait_for_completion()
        recorder = self.chat.recorder
        if recorder is not None and completed:
            await recorder.record_tool_calls([call.to_record() for call in completed])
        return completed
