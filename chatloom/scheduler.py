"""Tool call scheduling: validation, approval, execution and lifecycle events."""

import asyncio
import copy
import dataclasses
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from chatloom.config import Config, get_config
from chatloom.exceptions import ToolConfirmationError, ToolError, ToolExecutionError
from chatloom.llm import FunctionResponse, Part
from chatloom.logging import get_logger
from chatloom.pending import PendingToolCalls
from chatloom.tools.registry import Tool, ToolConfirmationDetails, ToolRegistry

log = get_logger(__name__)


class ToolCallStatus(str, Enum):
    VALIDATING = "validating"
    SCHEDULED = "scheduled"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ToolCallStatus.SUCCESS, ToolCallStatus.ERROR, ToolCallStatus.CANCELLED})


class ToolConfirmationOutcome(str, Enum):
    PROCEED_ONCE = "proceed_once"
    PROCEED_ALWAYS = "proceed_always"
    PROCEED_ALWAYS_TOOL = "proceed_always_tool"
    CANCEL = "cancel"
    MODIFY_WITH_EDITOR = "modify_with_editor"


class ApprovalMode(str, Enum):
    DEFAULT = "default"
    AUTO_EDIT = "auto_edit"
    YOLO = "yolo"


@dataclass
class ToolCallRequest:
    call_id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    prompt_id: str = ""


@dataclass
class ToolCallResponse:
    call_id: str
    response_parts: list[Part] = field(default_factory=list)
    error: str | None = None
    result_display: str | None = None


@dataclass
class ToolCall:
    """Snapshot of one call's lifecycle."""

    request: ToolCallRequest
    status: ToolCallStatus = ToolCallStatus.VALIDATING
    tool: Tool | None = None
    confirmation_details: ToolConfirmationDetails | None = None
    response: ToolCallResponse | None = None
    outcome: ToolConfirmationOutcome | None = None
    start_time: float = field(default_factory=time.monotonic)
    end_time: float | None = None

    @property
    def call_id(self) -> str:
        return self.request.call_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_ms(self) -> int | None:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time) * 1000)

    def to_record(self) -> dict[str, Any]:
        """Plain dict for recording sinks."""
        return {
            "call_id": self.call_id,
            "name": self.request.name,
            "args": self.request.args,
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "error": self.response.error if self.response else None,
            "result_display": self.response.result_display if self.response else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class OutputUpdate:
    """Live output from an executing call."""

    call_id: str
    output: str


@dataclass
class ToolCallsUpdate:
    """Status snapshot of the whole batch after any change."""

    calls: list[ToolCall]


@dataclass
class AllToolCallsComplete:
    """Every call in the batch reached a terminal status."""

    calls: list[ToolCall]


ToolEvent = OutputUpdate | ToolCallsUpdate | AllToolCallsComplete
ToolEventHandler = Callable[[ToolEvent], Awaitable[None]]
Editor = Callable[[ToolCall], Awaitable[str | None]]


def convert_to_function_response(name: str, call_id: str, output: str) -> list[Part]:
    """Wrap tool output in the function-response part sent back to the model."""
    return [Part(function_response=FunctionResponse(name=name, response={"output": output}, id=call_id))]


def _error_parts(name: str, call_id: str, message: str) -> list[Part]:
    return [Part(function_response=FunctionResponse(name=name, response={"error": message}, id=call_id))]


class ToolScheduler:
    """Runs one batch of tool calls at a time.

    validating -> (awaiting_approval ->) scheduled -> executing -> success |
    error | cancelled. Execution starts once no call in the batch is still
    validating or awaiting approval; scheduled calls then run concurrently.
    Requests are copied on entry and never modified in place.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        on_event: ToolEventHandler | None = None,
        config: Config | None = None,
        approval_mode: ApprovalMode | str | None = None,
        editor: Editor | None = None,
    ):
        self.registry = registry
        self.config = config or get_config()
        self.approval_mode = ApprovalMode(approval_mode or self.config.tools.approval_mode)
        self.on_event = on_event
        self.editor = editor
        self.pending = PendingToolCalls()
        self._calls: list[ToolCall] = []
        self._allowed_tools: set[str] = set()
        self._batch_abort: asyncio.Event | None = None
        self._abort_watcher: asyncio.Task[None] | None = None
        self._completion: asyncio.Future[list[ToolCall]] | None = None

    @property
    def is_running(self) -> bool:
        return bool(self._calls)

    @property
    def calls(self) -> list[ToolCall]:
        return [dataclasses.replace(call) for call in self._calls]

    def awaiting_approval(self) -> list[ToolCall]:
        return [
            dataclasses.replace(call)
            for call in self._calls
            if call.status == ToolCallStatus.AWAITING_APPROVAL
        ]

    def allow_tool(self, name: str) -> None:
        """Skip confirmation for ``name`` for the rest of the session."""
        self._allowed_tools.add(name)

    async def _emit(self, event: ToolEvent) -> None:
        if self.on_event is not None:
            await self.on_event(event)

    async def _emit_update(self) -> None:
        await self._emit(ToolCallsUpdate(self.calls))

    def _find(self, call_id: str) -> ToolCall | None:
        for call in self._calls:
            if call.call_id == call_id:
                return call
        return None

    def _set_status(self, call: ToolCall, status: ToolCallStatus) -> None:
        if call.is_terminal:
            return
        call.status = status
        if status in TERMINAL_STATUSES:
            call.end_time = time.monotonic()
            self.pending.resolve(call.call_id)
        else:
            self.pending.register(call.call_id, status.value)

    def _succeed(self, call: ToolCall, output: str, display: str | None) -> None:
        if call.is_terminal:
            return
        call.response = ToolCallResponse(
            call_id=call.call_id,
            response_parts=convert_to_function_response(call.request.name, call.call_id, output),
            result_display=display,
        )
        self._set_status(call, ToolCallStatus.SUCCESS)

    def _fail(self, call: ToolCall, message: str) -> None:
        if call.is_terminal:
            return
        call.response = ToolCallResponse(
            call_id=call.call_id,
            response_parts=_error_parts(call.request.name, call.call_id, message),
            error=message,
            result_display=message,
        )
        self._set_status(call, ToolCallStatus.ERROR)

    def _cancel(self, call: ToolCall, reason: str) -> None:
        if call.is_terminal:
            return
        call.response = ToolCallResponse(
            call_id=call.call_id,
            response_parts=_error_parts(call.request.name, call.call_id, f"[Operation Cancelled] Reason: {reason}"),
            error=reason,
            result_display=reason,
        )
        self._set_status(call, ToolCallStatus.CANCELLED)

    def _skips_confirmation(self, call: ToolCall, details: ToolConfirmationDetails) -> bool:
        if call.request.name in self._allowed_tools:
            return True
        return self.approval_mode == ApprovalMode.AUTO_EDIT and details.kind == "edit"

    async def schedule(
        self,
        requests: list[ToolCallRequest],
        abort_event: asyncio.Event | None = None,
    ) -> None:
        """Validate a batch and run whatever needs no approval.

        Returns once every call is terminal or waiting for approval.

        Raises:
            ToolError if another batch is still active
        """
        if self.is_running:
            raise ToolError("Cannot schedule new tool calls while other tool calls are running")

        self._batch_abort = asyncio.Event()
        self._completion = asyncio.get_running_loop().create_future()
        self._calls = [
            ToolCall(request=dataclasses.replace(request, args=copy.deepcopy(request.args)))
            for request in requests
        ]
        log.info("Scheduling tool calls", calls=[call.request.name for call in self._calls])
        if not self._calls:
            self._batch_abort = None
            self._completion.set_result([])
            await self._emit(AllToolCallsComplete([]))
            return
        for call in self._calls:
            self.pending.register(call.call_id, call.status.value)
            call.tool = self.registry.get_tool(call.request.name)
            if call.tool is None:
                self._fail(call, f'Tool "{call.request.name}" not found in registry.')
        await self._emit_update()

        if abort_event is not None:
            if abort_event.is_set():
                await self.cancel_all("Tool calls aborted before execution")
                return
            self._abort_watcher = asyncio.create_task(self._watch_abort(abort_event))

        for call in list(self._calls):
            if call.status != ToolCallStatus.VALIDATING:
                continue
            await self._validate(call)
        await self._emit_update()

        if self.approval_mode == ApprovalMode.YOLO:
            for call in self.awaiting_approval():
                log.info("Auto-approving tool call", call_id=call.call_id, tool=call.request.name)
                await self.handle_confirmation_response(call.call_id, ToolConfirmationOutcome.PROCEED_ONCE)

        await self._attempt_execution()

    async def _validate(self, call: ToolCall) -> None:
        tool = call.tool
        try:
            tool.validate_arguments(call.request.args)
            args = await tool.prepare_request(call.request.args)
            call.request = dataclasses.replace(call.request, args=args)
            details = await tool.get_confirmation_details(args)
        except Exception as e:
            log.warning("Tool call failed validation", call_id=call.call_id, tool=call.request.name, error=str(e))
            self._fail(call, str(e))
            return

        if details is None or self._skips_confirmation(call, details):
            self._set_status(call, ToolCallStatus.SCHEDULED)
            return
        call.confirmation_details = details
        self._set_status(call, ToolCallStatus.AWAITING_APPROVAL)

    async def handle_confirmation_response(
        self,
        call_id: str,
        outcome: ToolConfirmationOutcome | str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Apply the user's answer to a call awaiting approval.

        ``payload`` may carry ``new_content`` for the modify flow; without
        it the injected editor is asked for the new content.
        """
        call = self._find(call_id)
        if call is None or call.status != ToolCallStatus.AWAITING_APPROVAL:
            log.warning("Confirmation for unknown or settled tool call", call_id=call_id)
            return

        outcome = ToolConfirmationOutcome(outcome)
        try:
            call.outcome = outcome
            if outcome == ToolConfirmationOutcome.CANCEL:
                self._cancel(call, "User did not allow tool call")
            elif outcome == ToolConfirmationOutcome.MODIFY_WITH_EDITOR:
                await self._modify(call, payload)
                await self._emit_update()
                return
            else:
                if outcome == ToolConfirmationOutcome.PROCEED_ALWAYS_TOOL:
                    self.allow_tool(call.request.name)
                elif outcome == ToolConfirmationOutcome.PROCEED_ALWAYS:
                    if call.confirmation_details and call.confirmation_details.kind == "edit":
                        self.approval_mode = ApprovalMode.AUTO_EDIT
                    else:
                        self.allow_tool(call.request.name)
                self._set_status(call, ToolCallStatus.SCHEDULED)
                self._approve_compatible()
        except Exception as e:
            error = e if isinstance(e, ToolConfirmationError) else ToolConfirmationError(call_id, str(e))
            log.error("Tool confirmation failed", call_id=call_id, error=str(error))
            self._fail(call, str(error))

        await self._emit_update()
        await self._attempt_execution()

    async def _modify(self, call: ToolCall, payload: dict[str, Any] | None) -> None:
        new_content = (payload or {}).get("new_content")
        if new_content is None:
            if self.editor is None:
                raise ToolConfirmationError(call.call_id, "No editor available to modify the proposed change")
            new_content = await self.editor(dataclasses.replace(call))
        if new_content is None:
            return
        args = await call.tool.apply_modification(copy.deepcopy(call.request.args), new_content)
        call.request = dataclasses.replace(call.request, args=args)
        call.confirmation_details = await call.tool.get_confirmation_details(args) or call.confirmation_details
        log.info("Tool call modified by user", call_id=call.call_id, tool=call.request.name)

    def _approve_compatible(self) -> None:
        """Schedule other waiting calls that a new allow rule now covers."""
        for call in self._calls:
            if call.status != ToolCallStatus.AWAITING_APPROVAL or call.confirmation_details is None:
                continue
            if self._skips_confirmation(call, call.confirmation_details):
                call.outcome = ToolConfirmationOutcome.PROCEED_ALWAYS
                self._set_status(call, ToolCallStatus.SCHEDULED)

    async def _attempt_execution(self) -> None:
        if not self._calls:
            return
        if any(
            call.status in (ToolCallStatus.VALIDATING, ToolCallStatus.AWAITING_APPROVAL)
            for call in self._calls
        ):
            return
        scheduled = [call for call in self._calls if call.status == ToolCallStatus.SCHEDULED]
        if scheduled:
            for call in scheduled:
                self._set_status(call, ToolCallStatus.EXECUTING)
            await self._emit_update()
            await asyncio.gather(*(self._execute(call) for call in scheduled))
        await self._check_all_complete()

    async def _execute(self, call: ToolCall) -> None:
        batch_abort = self._batch_abort

        async def on_output(output: str) -> None:
            await self._emit(OutputUpdate(call.call_id, output))

        try:
            result = await self.registry.execute(
                call.request.name,
                call.request.args,
                abort_event=batch_abort,
                on_output=on_output,
            )
        except ToolExecutionError as e:
            if batch_abort is not None and batch_abort.is_set():
                self._cancel(call, "Tool call cancelled")
            else:
                self._fail(call, str(e))
        except ToolError as e:
            self._fail(call, str(e))
        else:
            if result.success:
                self._succeed(call, result.content, result.display or result.content)
            else:
                self._fail(call, result.error or "Tool execution failed")
        if any(current is call for current in self._calls):
            await self._emit_update()

    async def _check_all_complete(self) -> None:
        if not self._calls or not all(call.is_terminal for call in self._calls):
            return
        completed = self.calls
        self._calls = []
        self._batch_abort = None
        watcher, self._abort_watcher = self._abort_watcher, None
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
        log.info(
            "Tool calls complete",
            results={call.call_id: call.status.value for call in completed},
        )
        if self._completion is not None and not self._completion.done():
            self._completion.set_result(completed)
        await self._emit(AllToolCallsComplete(completed))

    async def wait_for_completion(self) -> list[ToolCall]:
        """Wait for the current (or last) batch and return its terminal calls."""
        if self._completion is None:
            return []
        return await asyncio.shield(self._completion)

    async def _watch_abort(self, abort_event: asyncio.Event) -> None:
        await abort_event.wait()
        await self.cancel_all("Tool calls aborted")

    async def cancel_all(self, reason: str = "Tool calls cancelled") -> None:
        """Settle every unfinished call as cancelled and reject pending waiters."""
        self.pending.cancel_all(reason)
        if self._batch_abort is not None:
            self._batch_abort.set()
        changed = False
        for call in self._calls:
            if not call.is_terminal:
                self._cancel(call, reason)
                changed = True
        if changed:
            await self._emit_update()
        await self._check_all_complete()
