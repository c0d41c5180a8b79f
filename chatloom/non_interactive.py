"""Run a single tool call outside the interactive UI."""

import asyncio
from typing import Awaitable, Callable

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from chatloom.config import Config, get_config
from chatloom.logging import get_logger
from chatloom.scheduler import (
    ToolCall,
    ToolCallRequest,
    ToolCallResponse,
    ToolConfirmationOutcome,
    ToolScheduler,
)
from chatloom.tools.registry import ToolRegistry

log = get_logger(__name__)

ApprovalPrompt = Callable[[ToolCall], Awaitable[ToolConfirmationOutcome]]

_CHOICES = {
    "y": ToolConfirmationOutcome.PROCEED_ONCE,
    "a": ToolConfirmationOutcome.PROCEED_ALWAYS,
    "n": ToolConfirmationOutcome.CANCEL,
}


def _describe(call: ToolCall) -> str:
    lines = [f"[bold]Tool:[/bold] {call.request.name}"]
    details = call.confirmation_details
    if details is not None:
        if details.title:
            lines.append(f"[bold]{details.title}[/bold]")
        if details.file_path:
            lines.append(f"File: {details.file_path}")
        if details.prompt:
            lines.append("")
            lines.append(details.prompt)
    lines.extend([
        "",
        "  y - Proceed once",
        "  a - Proceed always (auto-approve this tool for the session)",
        "  n - Cancel (reject this tool call)",
    ])
    return "\n".join(lines)


async def prompt_for_approval(call: ToolCall, console: Console | None = None) -> ToolConfirmationOutcome:
    """Ask on the terminal whether a waiting tool call may run."""
    out = console or Console()
    out.print(Panel(_describe(call), title="Tool Approval Required", border_style="yellow"))
    choice = await asyncio.to_thread(
        Prompt.ask,
        "Your choice",
        choices=list(_CHOICES),
        default="n",
        console=out,
    )
    outcome = _CHOICES.get(choice.strip().lower(), ToolConfirmationOutcome.CANCEL)
    if outcome == ToolConfirmationOutcome.CANCEL:
        out.print("[red]✗ Cancelled[/red]")
    else:
        out.print("[green]✓ Approved[/green]")
    return outcome


async def execute_tool_call(
    registry: ToolRegistry,
    request: ToolCallRequest,
    abort_event: asyncio.Event | None = None,
    config: Config | None = None,
    prompt: ApprovalPrompt = prompt_for_approval,
) -> ToolCallResponse:
    """Schedule one request, answer its approval prompt, and return its response."""
    scheduler = ToolScheduler(registry, config=config or get_config())
    await scheduler.schedule([request], abort_event)
    for call in scheduler.awaiting_approval():
        outcome = await prompt(call)
        log.info("Tool approval answered", call_id=call.call_id, outcome=outcome.value)
        await scheduler.handle_confirmation_response(call.call_id, outcome)

    completed = await scheduler.wait_for_completion()
    for call in completed:
        if call.call_id == request.call_id and call.response is not None:
            return call.response
    raise RuntimeError(f"No response recorded for tool call {request.call_id}")
